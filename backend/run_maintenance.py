"""Purge expired auth records (sessions, revoked jtis, artifacts, attempt rows).

Meant for cron or a scheduled job:

  python run_maintenance.py          # one pass
  python run_maintenance.py --loop   # every MAINTENANCE_INTERVAL_SECONDS
"""

import logging
import sys
import time

from nutriclinic.config import settings
from nutriclinic.core.database import SessionLocal
from nutriclinic.services.account_service import account_service

logger = logging.getLogger("nutriclinic.maintenance")


def run_once() -> dict:
    db = SessionLocal()
    try:
        counts = account_service.purge_expired(db)
    finally:
        db.close()
    logger.info("Maintenance pass purged %s", counts)
    return counts


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    if "--loop" not in sys.argv[1:]:
        run_once()
        return
    try:
        while True:
            run_once()
            time.sleep(settings.MAINTENANCE_INTERVAL_SECONDS)
    except KeyboardInterrupt:
        logger.info("Maintenance loop stopped")


if __name__ == "__main__":
    main()
