#!/usr/bin/env python3
"""
Run one outbox drain pass and print a JSON summary.
Usage: python3 scripts/run_outbox.py [--client-id X] [--limit 50] [--dry-run]
"""
import argparse
import asyncio
import json
import sys

from dispatch_api.config import get_settings
from dispatch_api.database import SessionLocal, init_db
from dispatch_api.logging_config import setup_logging
from dispatch_api.services.drain_service import drain_outbox
from dispatch_api.services.stores import build_stores
from dispatch_api.services.transport import get_transport


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Drain due WhatsApp outbox entries once")
    parser.add_argument("--client-id", default=None, help="Only drain this tenant")
    parser.add_argument("--limit", type=int, default=None, help="Batch size (default: OUTBOX_PROCESS_LIMIT)")
    parser.add_argument("--dry-run", action="store_true", help="Mark due entries sent without calling the channel")
    return parser.parse_args(argv)


async def run(args) -> dict:
    settings = get_settings()
    db = SessionLocal() if settings.storage_backend == "db" else None
    try:
        if db is not None:
            init_db()
        result = await drain_outbox(
            build_stores(db, settings),
            get_transport(settings),
            client_id=args.client_id,
            limit=args.limit or settings.outbox_process_limit,
            dry_run=args.dry_run or settings.outbox_dry_run,
        )
        return result.model_dump()
    finally:
        if db is not None:
            db.close()


def main(argv=None) -> int:
    setup_logging()
    args = parse_args(argv)
    summary = asyncio.run(run(args))
    print(json.dumps(summary, ensure_ascii=False))
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
