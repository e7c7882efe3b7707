from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

from fulfillment.core.logger import LOGGER_NAME, setup_logging


def test_setup_logging_is_idempotent(tmp_path):
    log_dir = str(tmp_path / "logs")
    lg = setup_logging(log_dir)
    n = len(lg.handlers)
    assert setup_logging(log_dir) is lg
    assert len(lg.handlers) == n
    assert lg.name == LOGGER_NAME
    assert sum(isinstance(h, RotatingFileHandler) for h in lg.handlers) == 1

    lg.info("hello")
    for h in lg.handlers:
        h.flush()
    assert os.path.exists(os.path.join(log_dir, "fulfillment.log"))
    assert logging.getLogger(LOGGER_NAME) is lg
