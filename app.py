from __future__ import annotations

import argparse
import json
import os
import sys
import time
from typing import List, Optional

from fulfillment.core.config import ConfigFsPaths, ConfigManager
from fulfillment.core.engine import FulfillmentEngine
from fulfillment.core.execution import AutomatedExecutor, TaskWorkerPool
from fulfillment.core.logger import setup_logging
from fulfillment.core.scheduler import SweepScheduler
from fulfillment.core.scope import Scope


def _build(root: str):
    fs = ConfigFsPaths(root)
    boot_cfg = ConfigManager(fs=fs, read_only=True).load()
    logger = setup_logging(fs.resolve(boot_cfg.log_dir))
    cfg = ConfigManager(fs=fs, logger=logger).load()

    engine = FulfillmentEngine.from_config(cfg, fs=fs, logger=logger)
    return cfg, logger, engine


def _pool(cfg, logger, engine: FulfillmentEngine) -> TaskWorkerPool:
    executor = AutomatedExecutor(machine=engine.machine, default_timeout_seconds=cfg.http_timeout_seconds, logger=logger)
    return TaskWorkerPool(executor=executor, max_workers=cfg.worker_threads, logger=logger)


def _scopes(tenants: List[str]):
    if not tenants:
        return None
    return lambda: [Scope(tenant_id=t) for t in tenants]


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Data-subject request task fulfillment engine")
    ap.add_argument("--root", default=os.getcwd(), help="Directory holding config/ and runtime data.")
    sub = ap.add_subparsers(dest="command", required=True)

    p_sweep = sub.add_parser("sweep", help="Run one retry/timeout/dispatch sweep and exit.")
    p_sweep.add_argument("--tenant", action="append", default=[], help="Limit to tenant (repeatable).")

    p_run = sub.add_parser("run", help="Run the sweep scheduler until interrupted.")
    p_run.add_argument("--tenant", action="append", default=[], help="Limit to tenant (repeatable).")

    p_sum = sub.add_parser("summary", help="Print the task summary of a request.")
    p_sum.add_argument("--tenant", required=True)
    p_sum.add_argument("--request", required=True)

    args = ap.parse_args(argv)
    cfg, logger, engine = _build(args.root)

    if args.command == "summary":
        summary = engine.summarize(Scope(tenant_id=args.tenant), args.request)
        print(json.dumps(summary.model_dump(mode="json"), indent=2, sort_keys=True))
        return 0

    pool = _pool(cfg, logger, engine)
    scheduler = SweepScheduler(
        store=engine.store,
        machine=engine.machine,
        pool=pool,
        scopes=_scopes(args.tenant),
        interval_seconds=cfg.sweep_interval_seconds,
        batch_limit=cfg.sweep_batch_limit,
        default_callback_window_minutes=cfg.default_callback_window_minutes,
        logger=logger,
    )

    if args.command == "sweep":
        totals = scheduler.run_once()
        pool.shutdown(wait=True)
        print(json.dumps(totals, sort_keys=True))
        return 0

    logger.info(f"Sweep scheduler running every {cfg.sweep_interval_seconds}s (Ctrl+C to stop).")
    scheduler.start()
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("Stopping sweep scheduler.")
    finally:
        scheduler.stop()
        pool.shutdown(wait=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
