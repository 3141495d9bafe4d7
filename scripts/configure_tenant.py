#!/usr/bin/env python3
"""Load a tenant's connector configs and LLM provider chain from a JSON file.

File shape:
  {"connectors": [{"type": "SLACK", "enabled": true, "config": {...}}],
   "providers": [{"provider": "openai", "model": "gpt-5-mini", "apiKey": "...", "priority": 1}]}

Without "providers", a tenant that has no chain yet is seeded with the
disabled default entries.
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from company_intel.credential_store import create_credential_store_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Store encrypted connector and provider settings for a tenant.")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--file", required=True, help="path to the tenant settings JSON")
    args = parser.parse_args()

    settings = json.loads(Path(args.file).read_text(encoding="utf-8"))
    credentials = create_credential_store_from_env()

    saved = [
        credentials.upsert_connector(
            tenant_id=args.tenant_id,
            connector_type=str(item["type"]),
            config=dict(item.get("config") or {}),
            enabled=bool(item.get("enabled", True)),
            connector_id=item.get("connector_id"),
        )
        for item in settings.get("connectors", [])
    ]
    providers = list(settings.get("providers", []))
    if providers:
        credentials.set_provider_chain(tenant_id=args.tenant_id, providers=providers)
    else:
        providers = credentials.ensure_provider_chain(tenant_id=args.tenant_id)

    print(
        json.dumps(
            {"tenant_id": args.tenant_id, "connectors": saved, "providers": len(providers)},
            ensure_ascii=True,
            sort_keys=True,
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
