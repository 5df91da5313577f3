"""
Pending Points Ledger

Provisional Loops grants recorded at check-in and settled later (Deferred
Validation Settlement). Entries move PENDING → UNLOCKED (settlement engine) or
PENDING → EXPIRED (sweep or expiry-on-read). Both are terminal.

unlock() is the one operation that must be exactly-once under concurrency. It
is a single conditional UPDATE ... WHERE status = 'PENDING' AND
expires_at > now; whoever gets rowcount 1 owns the transition, everyone else
gets InvalidStateError.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from math import isfinite
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.clock import Clock, utcnow
from ..core.config import settings
from ..errors import InvalidArgumentError, InvalidStateError, NotFoundError
from ..models import PendingPointsEntry, PendingPointsStatus, SettlementTrigger, SettlementTriggerType

logger = logging.getLogger(__name__)

# Share of the granted Loops kept once the visit's CIV is known
CIV_TIERS = (
    (0.8, 1.0),
    (0.6, 0.7),
)
LOW_CIV_SHARE = 0.3


@dataclass
class UnlockResult:
    entry: PendingPointsEntry
    delta: int


def civ_adjusted_loops(loops: int, civ_score: float) -> int:
    """Scale a grant by confidence tier, never below 1 Loop."""
    share = LOW_CIV_SHARE
    for threshold, tier_share in CIV_TIERS:
        if civ_score >= threshold:
            share = tier_share
            break
    return max(1, int(round(loops * share)))


def _validate_civ(civ_score) -> float:
    if isinstance(civ_score, bool) or not isinstance(civ_score, (int, float)):
        raise InvalidArgumentError(f"civ_score must be a number, got {civ_score!r}")
    if not isfinite(civ_score) or civ_score < 0 or civ_score > 1:
        raise InvalidArgumentError(f"civ_score must be within [0, 1], got {civ_score!r}")
    return float(civ_score)


class PendingPointsLedger:
    """Records, lists, unlocks and expires pending Loops grants."""

    def __init__(self, clock: Clock = utcnow, ttl: Optional[timedelta] = None):
        self.clock = clock
        self.ttl = ttl or settings.pending_points_ttl

    def grant(
        self,
        db: Session,
        user_id: int,
        store_id: int,
        session_id: Optional[str],
        loops_pending: int,
        civ_score: float = 0.5,
        *,
        auto_commit: bool = True,
    ) -> PendingPointsEntry:
        if isinstance(loops_pending, bool) or not isinstance(loops_pending, int) or loops_pending <= 0:
            raise InvalidArgumentError(
                f"loops_pending must be a positive integer, got {loops_pending!r}",
                loops_pending=loops_pending,
            )
        civ_score = _validate_civ(civ_score)

        now = self.clock()
        entry = PendingPointsEntry(
            user_id=user_id,
            store_id=store_id,
            session_id=session_id,
            loops_pending=loops_pending,
            loops_unlocked=0,
            civ_score=civ_score,
            status=PendingPointsStatus.PENDING,
            created_at=now,
            expires_at=now + self.ttl,
        )
        db.add(entry)
        if auto_commit:
            db.commit()
            db.refresh(entry)
        else:
            db.flush()

        logger.info(
            f"Granted {loops_pending} pending Loops to user {user_id} at store {store_id} "
            f"(entry {entry.id}, session {session_id})"
        )
        return entry

    def get(self, db: Session, entry_id: str) -> PendingPointsEntry:
        entry = db.query(PendingPointsEntry).filter(PendingPointsEntry.id == entry_id).first()
        if not entry:
            raise NotFoundError(f"Pending points entry {entry_id} not found", entry_id=entry_id)
        return entry

    # ─── Expiry ───────────────────────────────────────────────────────

    def _expire_query(self, db: Session, now: datetime):
        return db.query(PendingPointsEntry).filter(
            PendingPointsEntry.status == PendingPointsStatus.PENDING,
            PendingPointsEntry.expires_at <= now,
        )

    def _apply_expiry(self, query) -> int:
        return query.update(
            {PendingPointsEntry.status: PendingPointsStatus.EXPIRED},
            synchronize_session=False,
        )

    def expire_stale(self, db: Session) -> int:
        """Expire every PENDING entry past expires_at. Idempotent."""
        count = self._apply_expiry(self._expire_query(db, self.clock()))
        db.commit()
        if count:
            logger.info(f"Expired {count} pending points entries")
        return count

    # ─── Listing ──────────────────────────────────────────────────────

    def _list_pending(self, db: Session, now: datetime, *criteria) -> List[PendingPointsEntry]:
        # Expire and read in one transaction so the result never includes an
        # entry this same call considers expired.
        self._apply_expiry(self._expire_query(db, now).filter(*criteria))
        entries = db.query(PendingPointsEntry).filter(
            PendingPointsEntry.status == PendingPointsStatus.PENDING,
            PendingPointsEntry.expires_at > now,
            *criteria,
        ).order_by(PendingPointsEntry.created_at.asc()).populate_existing().all()
        db.commit()
        return entries

    def list_pending_for_user(self, db: Session, user_id: int) -> List[PendingPointsEntry]:
        return self._list_pending(db, self.clock(), PendingPointsEntry.user_id == user_id)

    def list_pending_for_store(self, db: Session, store_id: int) -> List[PendingPointsEntry]:
        return self._list_pending(db, self.clock(), PendingPointsEntry.store_id == store_id)

    def list_pending_for(self, db: Session, user_id: int, store_id: int) -> List[PendingPointsEntry]:
        return self._list_pending(
            db,
            self.clock(),
            PendingPointsEntry.user_id == user_id,
            PendingPointsEntry.store_id == store_id,
        )

    def pending_store_pairs(self, db: Session, limit: Optional[int] = None) -> List[Tuple[int, int]]:
        """Distinct (user_id, store_id) pairs with unexpired PENDING entries."""
        query = db.query(PendingPointsEntry.user_id, PendingPointsEntry.store_id).filter(
            PendingPointsEntry.status == PendingPointsStatus.PENDING,
            PendingPointsEntry.expires_at > self.clock(),
        ).distinct().order_by(PendingPointsEntry.user_id, PendingPointsEntry.store_id)
        if limit:
            query = query.limit(limit)
        return [(row[0], row[1]) for row in query.all()]

    def pending_store_ids_for_user(self, db: Session, user_id: int) -> List[int]:
        rows = db.query(PendingPointsEntry.store_id).filter(
            PendingPointsEntry.user_id == user_id,
            PendingPointsEntry.status == PendingPointsStatus.PENDING,
            PendingPointsEntry.expires_at > self.clock(),
        ).distinct().order_by(PendingPointsEntry.store_id).all()
        return [row[0] for row in rows]

    def triggers_for(self, db: Session, entry_id: str) -> List[SettlementTrigger]:
        return db.query(SettlementTrigger).filter(
            SettlementTrigger.pending_points_id == entry_id
        ).order_by(SettlementTrigger.created_at.asc()).all()

    # ─── Transitions ──────────────────────────────────────────────────

    def unlock(
        self,
        db: Session,
        entry_id: str,
        trigger_type: SettlementTriggerType,
        trigger_data: Optional[Dict[str, Any]] = None,
        *,
        as_of: Optional[datetime] = None,
        credited_loops: Optional[int] = None,
        auto_commit: bool = True,
    ) -> UnlockResult:
        """
        PENDING → UNLOCKED, recording the trigger. Returns the Loops to credit.

        Not idempotent: a second call raises InvalidStateError. With
        auto_commit=False the caller must commit (or roll back) so the unlock
        can share a transaction with the balance credit.

        A caller that credited a remote balance before unlocking passes the
        time the credit started as `as_of` (expiry is judged at that instant)
        and the amount it credited as `credited_loops`, which becomes both
        loops_pending and loops_unlocked.
        """
        now = self.clock()
        trigger_type = SettlementTriggerType(trigger_type)
        unlockable_at = as_of or now
        loops = PendingPointsEntry.loops_pending if credited_loops is None else credited_loops
        values = {
            PendingPointsEntry.status: PendingPointsStatus.UNLOCKED,
            PendingPointsEntry.loops_unlocked: loops,
            PendingPointsEntry.unlocked_at: now,
            PendingPointsEntry.unlock_trigger: trigger_type,
        }
        if credited_loops is not None:
            values[PendingPointsEntry.loops_pending] = credited_loops

        # The conditional UPDATE is the first statement so concurrent callers
        # serialize on the row write, not on an earlier read.
        updated = db.query(PendingPointsEntry).filter(
            PendingPointsEntry.id == entry_id,
            PendingPointsEntry.status == PendingPointsStatus.PENDING,
            PendingPointsEntry.expires_at > unlockable_at,
        ).update(values, synchronize_session=False)

        if updated == 0:
            db.rollback()
            entry = self.get(db, entry_id)
            if entry.status == PendingPointsStatus.PENDING and entry.expires_at <= now:
                self._apply_expiry(self._expire_query(db, now).filter(PendingPointsEntry.id == entry_id))
                db.commit()
                db.refresh(entry)
            raise InvalidStateError(
                f"Pending points entry {entry_id} is {entry.status.value}",
                entry_id=entry_id,
                status=entry.status.value,
            )

        trigger = SettlementTrigger(
            pending_points_id=entry_id,
            trigger_type=trigger_type,
            trigger_data=trigger_data or {},
            created_at=now,
        )
        db.add(trigger)
        db.flush()

        entry = db.query(PendingPointsEntry).filter(
            PendingPointsEntry.id == entry_id
        ).populate_existing().one()

        if auto_commit:
            db.commit()
            db.refresh(entry)

        logger.info(
            f"Unlocked pending points entry {entry_id} ({entry.loops_unlocked} Loops, "
            f"trigger {trigger_type.value})"
        )
        return UnlockResult(entry=entry, delta=entry.loops_unlocked)

    def apply_civ_score(
        self, db: Session, session_id: str, civ_score: float, *, auto_commit: bool = True
    ) -> List[PendingPointsEntry]:
        """
        Record a completed session's CIV on its PENDING entries.

        With CIV_ADJUST_PENDING_LOOPS enabled the grant is also scaled by
        confidence tier (>= 0.8 keeps 100%, >= 0.6 keeps 70%, otherwise 30%).
        """
        civ_score = _validate_civ(civ_score)
        now = self.clock()
        entries = db.query(PendingPointsEntry).filter(
            PendingPointsEntry.session_id == session_id,
            PendingPointsEntry.status == PendingPointsStatus.PENDING,
            PendingPointsEntry.expires_at > now,
        ).populate_existing().all()

        adjusted_entries = []
        for entry in entries:
            values = {PendingPointsEntry.civ_score: civ_score}
            if settings.CIV_ADJUST_PENDING_LOOPS:
                adjusted = civ_adjusted_loops(entry.loops_pending, civ_score)
                if adjusted != entry.loops_pending:
                    logger.info(
                        f"Adjusting pending entry {entry.id} from {entry.loops_pending} to {adjusted} Loops "
                        f"(CIV {civ_score:.3f})"
                    )
                values[PendingPointsEntry.loops_pending] = adjusted

            # An entry unlocked meanwhile keeps what it was credited
            updated = db.query(PendingPointsEntry).filter(
                PendingPointsEntry.id == entry.id,
                PendingPointsEntry.status == PendingPointsStatus.PENDING,
            ).update(values, synchronize_session=False)
            if updated:
                adjusted_entries.append(entry)

        if auto_commit:
            db.commit()
        else:
            db.flush()
        for entry in adjusted_entries:
            db.refresh(entry)
        return adjusted_entries
