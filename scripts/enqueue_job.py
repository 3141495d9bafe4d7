#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from company_intel.orchestrator import EnrichmentJob
from company_intel.queue_backend import create_queue_from_env
from company_intel.worker_runtime import enqueue_enrichment_job


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Enqueue one enrichment job (use a sqlite or redis INTEL_QUEUE_BACKEND to reach a worker)."
    )
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--thread-key", required=True)
    parser.add_argument("--message", required=True, help="user message text")
    parser.add_argument("--origin", default="", help="origin context as a JSON object")
    args = parser.parse_args()

    origin = json.loads(args.origin) if args.origin.strip() else None
    job = EnrichmentJob(
        tenant_id=args.tenant_id,
        thread_key=args.thread_key,
        user_message=args.message,
        origin=origin,
    )
    msg = enqueue_enrichment_job(create_queue_from_env(), job)
    print(
        json.dumps(
            {"job_id": job.job_id, "message_id": msg.message_id, "duplicate": msg.duplicate},
            ensure_ascii=True,
            sort_keys=True,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
