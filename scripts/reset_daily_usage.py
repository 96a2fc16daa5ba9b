#!/usr/bin/env python3
"""
Reset the daily conversation counter of every free user.

Same job as POST /api/cron/daily-reset, for schedulers that run a process
instead of calling the API. Safe to run more than once a day.

Run from project root with DATABASE_URL set:
  python scripts/reset_daily_usage.py
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv
load_dotenv(project_root / ".env")

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)],
)

from app.core.errors import BillingError
from app.db.session import SessionLocal
from app.services.usage_accountant import reset_all_free_tier_counters


def main() -> int:
    if not os.getenv("DATABASE_URL"):
        print("ERROR: DATABASE_URL not set. Add it to .env or export it.")
        return 1

    db = SessionLocal()
    try:
        reset_count = reset_all_free_tier_counters(db)
        print(f"Daily usage reset completed for {reset_count} free user(s).")
        return 0
    except BillingError as e:
        print(f"ERROR: daily usage reset failed: {e}")
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
