from __future__ import annotations

from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from fulfillment.core.config.io import atomic_write_json, quarantine_corrupt, read_json_file
from fulfillment.core.config.models import FulfillmentConfig, default_config_dict
from fulfillment.core.config.paths import ConfigFsPaths
from fulfillment.core.errors import ValidationError


class ConfigManager:
    def __init__(self, *, fs: Optional[ConfigFsPaths] = None, logger: Any = None, read_only: bool = False):
        self.fs = fs or ConfigFsPaths(".")
        self.logger = logger
        self.read_only = read_only
        self._cfg: Optional[FulfillmentConfig] = None

    def load(self) -> FulfillmentConfig:
        rr = read_json_file(self.fs.fulfillment)
        if not rr.ok:
            if rr.error and rr.error != "missing":
                moved = quarantine_corrupt(self.fs.fulfillment, self.fs.backups_dir)
                if self.logger:
                    self.logger.warning(f"Config file unreadable ({rr.error}); moved to {moved}, using defaults.")
            data = default_config_dict()
            if not self.read_only:
                atomic_write_json(self.fs.fulfillment, data)
        else:
            data = rr.data
        try:
            cfg = FulfillmentConfig.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid fulfillment.json: {e}", path=self.fs.fulfillment) from e
        self._cfg = cfg
        return cfg

    def get(self) -> FulfillmentConfig:
        if self._cfg is None:
            return self.load()
        return self._cfg

    def save(self, cfg: FulfillmentConfig) -> None:
        if self.read_only:
            raise ValidationError("Config manager is read-only.")
        atomic_write_json(self.fs.fulfillment, cfg.model_dump())
        self._cfg = cfg
        if self.logger:
            self.logger.info("Saved fulfillment.json")

    def db_path(self) -> str:
        return self.fs.resolve(self.get().db_path)

    def log_dir(self) -> str:
        return self.fs.resolve(self.get().log_dir)
