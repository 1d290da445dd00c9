from __future__ import annotations

import argparse
import logging
from typing import List, Optional

from fleet_telemetry.data_processing.reconstruct_fleet import reconstruct_fleet
from fleet_telemetry.utils.config import ensure_dirs, load_config, validate_config
from fleet_telemetry.utils.logging import setup_logging

log = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Reconstruct per-channel equipment state from fleet AVL event logs.")
    p.add_argument("--config", required=True, help="Path to YAML config (supports extends).")
    p.add_argument("--n-jobs", type=int, default=None, help="Override processing.n_jobs (entities in parallel).")
    p.add_argument("--log-level", default=None, help="Override logging.level (DEBUG, INFO, ...).")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    cfg = load_config(args.config)

    if args.n_jobs is not None:
        cfg.setdefault("processing", {})["n_jobs"] = args.n_jobs

    validate_config(cfg)
    ensure_dirs(cfg)
    setup_logging(level=args.log_level or cfg.get("logging", {}).get("level", "INFO"))

    result = reconstruct_fleet(cfg)
    log.info("Wrote %s", result["states_path"])


if __name__ == "__main__":
    main()
