"""
Settlement Sweep Job

Periodic housekeeping for the check-in core:
- expire ACTIVE check-in sessions past their TTL
- expire PENDING points past theirs
- settle pending entries whose evidence arrived without a customer request
  (return visits, purchases, and the TIME_ELAPSED fallback)

Every step is an idempotent conditional update, so overlapping runs are safe.

Run command:
    python -m citycircle.jobs.settlement_sweep
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..db import SessionLocal
from ..errors import CollaboratorUnavailableError
from ..services.checkin_orchestrator import DEFAULT_SETTLEMENT_TRIGGERS, CheckInOrchestrator

logger = logging.getLogger(__name__)


def run_settlement_sweep(
    db: Session,
    orchestrator: Optional[CheckInOrchestrator] = None,
    batch_size: Optional[int] = None,
):
    orchestrator = orchestrator or CheckInOrchestrator()
    batch_size = batch_size or settings.SETTLEMENT_SWEEP_BATCH_SIZE

    expired_sessions = orchestrator.sessions.expire_stale(db)
    logger.info(f"Expired {expired_sessions} stale check-in sessions")

    expired_entries = orchestrator.ledger.expire_stale(db)
    logger.info(f"Expired {expired_entries} pending points entries")

    pairs = orchestrator.ledger.pending_store_pairs(db, limit=batch_size)
    unlocked = 0
    credited = 0
    failed_pairs = 0
    for user_id, store_id in pairs:
        try:
            result = orchestrator.engine.evaluate_all(
                db, user_id, store_id, DEFAULT_SETTLEMENT_TRIGGERS, {"requested_by": "sweep"}
            )
        except CollaboratorUnavailableError as e:
            # Retryable; the next run picks the pair up again
            db.rollback()
            failed_pairs += 1
            logger.warning(f"Settlement for user {user_id} at store {store_id} deferred: {e.message}")
            continue
        unlocked += len(result.unlocked_entries)
        credited += result.total_credited

    logger.info(
        f"Settled {unlocked} entries ({credited} Loops) across {len(pairs)} customer/store pairs, "
        f"{failed_pairs} deferred"
    )

    return {
        "expired_sessions": expired_sessions,
        "expired_pending_points": expired_entries,
        "pairs_evaluated": len(pairs),
        "entries_unlocked": unlocked,
        "loops_credited": credited,
        "pairs_deferred": failed_pairs,
    }


def main():
    """Main entry point for the settlement sweep job"""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    db = SessionLocal()
    try:
        logger.info("Starting settlement sweep job...")
        results = run_settlement_sweep(db)
        logger.info(f"Settlement sweep job completed: {results}")
    except Exception as e:
        logger.error(f"Settlement sweep job failed: {e}", exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
