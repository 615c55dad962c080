"""Standalone entitlement maintenance runner (cron or one-off container)."""

import asyncio
import logging

from config import settings
from services.maintenance import run_maintenance


def main():
    logging.basicConfig(level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO))
    result = asyncio.run(run_maintenance())
    print(
        f"🧹 Maintenance complete: expired_plans={result['expired_plans']} "
        f"purged_usage_rows={result['purged_usage_rows']}"
    )


if __name__ == "__main__":
    main()
