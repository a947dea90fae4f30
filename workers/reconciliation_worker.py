import asyncio
import logging

from config import settings
from database import SessionLocal
from services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)


def run_reconciliation_once() -> dict:
    """One full batch on a fresh session. Blocking; call from a worker thread."""
    db = SessionLocal()
    try:
        return ReconciliationService(db).run_batch()
    finally:
        db.close()


async def reconciliation_worker(interval_seconds: int = None):
    interval = interval_seconds or settings.RECONCILE_INTERVAL_SECONDS
    logger.info(f"🔁 Reconciliation worker started (every {interval}s)")

    while True:
        await asyncio.sleep(interval)
        try:
            summary = await asyncio.to_thread(run_reconciliation_once)
            if summary["drifted"] or summary["failed"]:
                logger.warning(
                    f"Reconciliation run: {len(summary['drifted'])} corrected, {len(summary['failed'])} failed"
                )
        except asyncio.CancelledError:
            raise
        except Exception:
            # Next tick retries from scratch
            logger.exception("Reconciliation worker run failed")
