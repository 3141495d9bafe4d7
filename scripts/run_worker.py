#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from company_intel.bootstrap import build_orchestrator_from_env
from company_intel.queue_backend import create_queue_from_env
from company_intel.worker_runtime import create_worker_runtime_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the resident enrichment worker loop.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    runtime = create_worker_runtime_from_env(
        orchestrator=build_orchestrator_from_env(),
        queue_backend=create_queue_from_env(),
    )
    try:
        stats = runtime.run_forever(stop_after_iterations=args.iterations if args.iterations > 0 else None)
    finally:
        runtime.close()
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
