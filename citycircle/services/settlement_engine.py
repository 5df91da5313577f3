"""
Settlement Engine

Decides which pending entries a trigger confirms and settles them: unlock the
entry and credit the customer's durable Loops balance.

Each SettlementTriggerType has one rule. A rule looks at a single entry and
returns the evidence that qualified it (recorded as the trigger's data) or
None. Not qualifying is a normal outcome, never an error.

Crediting depends on where the balance lives:

- transactional (same database): unlock and credit share one transaction. A
  credit failure rolls back the unlock too.
- remote: credit first, idempotently keyed by entry id and retried, then
  unlock as the last durable step. A retry after a crash re-credits with the
  same key, which the balance service deduplicates. An entry that was
  unexpired when its credit started is still unlocked if the credit call runs
  past expires_at.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from ..core.clock import Clock, utcnow
from ..core.config import settings
from ..errors import InvalidStateError
from ..models import CheckInSession, CheckInSessionStatus, PendingPointsEntry, SettlementTriggerType
from .checkin_session_manager import CheckInSessionManager
from .collaborators import (
    BalanceLedger,
    SqlBalanceLedger,
    SqlStoreDirectory,
    SqlTransactionLog,
    StoreDirectory,
    TransactionLog,
)
from .pending_points_ledger import PendingPointsLedger, UnlockResult

logger = logging.getLogger(__name__)

Evidence = Optional[Dict[str, Any]]


@dataclass
class SettlementResult:
    unlocked_entries: List[PendingPointsEntry] = field(default_factory=list)
    total_credited: int = 0

    def add(self, unlocked: UnlockResult) -> None:
        self.unlocked_entries.append(unlocked.entry)
        self.total_credited += unlocked.delta

    def merge(self, other: "SettlementResult") -> "SettlementResult":
        self.unlocked_entries.extend(other.unlocked_entries)
        self.total_credited += other.total_credited
        return self


def idempotency_key_for(entry_id: str) -> str:
    return f"pending-points:{entry_id}"


class SettlementEngine:
    """Evaluates settlement triggers against a customer's pending entries at a store."""

    def __init__(
        self,
        ledger: Optional[PendingPointsLedger] = None,
        sessions: Optional[CheckInSessionManager] = None,
        balance: Optional[BalanceLedger] = None,
        transactions: Optional[TransactionLog] = None,
        store_directory: Optional[StoreDirectory] = None,
        clock: Clock = utcnow,
    ):
        self.clock = clock
        self.ledger = ledger or PendingPointsLedger(clock=clock)
        self.store_directory = store_directory or SqlStoreDirectory()
        self.sessions = sessions or CheckInSessionManager(store_directory=self.store_directory, clock=clock)
        self.balance = balance or SqlBalanceLedger(clock=clock)
        self.transactions = transactions or SqlTransactionLog()

        self.return_visit_cooldown = timedelta(minutes=settings.RETURN_VISIT_COOLDOWN_MINUTES)
        self.manual_check_min_civ = settings.MANUAL_CHECK_MIN_CIV
        self.time_elapsed_grace = timedelta(hours=settings.TIME_ELAPSED_GRACE_HOURS)
        self.time_elapsed_min_civ = settings.TIME_ELAPSED_MIN_CIV

        self._rules: Dict[SettlementTriggerType, Callable[[Session, PendingPointsEntry, datetime], Evidence]] = {
            SettlementTriggerType.RETURN_VISIT: self._qualifies_return_visit,
            SettlementTriggerType.NEW_TRANSACTION: self._qualifies_new_transaction,
            SettlementTriggerType.MANUAL_CHECK: self._qualifies_manual_check,
            SettlementTriggerType.TIME_ELAPSED: self._qualifies_time_elapsed,
        }

    # ─── Rules ────────────────────────────────────────────────────────

    def _qualifies_return_visit(self, db: Session, entry: PendingPointsEntry, now: datetime) -> Evidence:
        # The visit that created the entry never counts as its own return
        visit = self.sessions.has_visit_after(
            db,
            entry.user_id,
            entry.store_id,
            entry.created_at + self.return_visit_cooldown,
            exclude_session_id=entry.session_id,
        )
        if not visit:
            return None
        return {"return_session_id": visit.id, "return_opened_at": visit.opened_at.isoformat()}

    def _qualifies_new_transaction(self, db: Session, entry: PendingPointsEntry, now: datetime) -> Evidence:
        purchase = self.transactions.purchase_after(db, entry.user_id, entry.store_id, entry.created_at)
        if not purchase:
            return None
        return {
            "transaction_id": purchase.transaction_id,
            "amount_cents": purchase.amount_cents,
            "occurred_at": purchase.occurred_at.isoformat(),
        }

    def _qualifies_manual_check(self, db: Session, entry: PendingPointsEntry, now: datetime) -> Evidence:
        if entry.civ_score < self.manual_check_min_civ:
            return None
        return {"civ_score": entry.civ_score, "threshold": self.manual_check_min_civ}

    def _qualifies_time_elapsed(self, db: Session, entry: PendingPointsEntry, now: datetime) -> Evidence:
        age = now - entry.created_at
        if age < self.time_elapsed_grace:
            return None
        if entry.civ_score < self.time_elapsed_min_civ:
            return None
        if self.store_directory.is_blocked(db, entry.store_id, entry.user_id):
            return None
        if entry.session_id:
            session = db.query(CheckInSession).filter(CheckInSession.id == entry.session_id).first()
            # An abandoned visit is not "unchallenged"
            if not session or session.status != CheckInSessionStatus.COMPLETED:
                return None
        return {"age_hours": round(age.total_seconds() / 3600, 2), "civ_score": entry.civ_score}

    # ─── Settlement ───────────────────────────────────────────────────

    def _settle(
        self,
        db: Session,
        entry: PendingPointsEntry,
        trigger_type: SettlementTriggerType,
        trigger_data: Dict[str, Any],
    ) -> Optional[UnlockResult]:
        entry_id = entry.id
        user_id = entry.user_id
        key = idempotency_key_for(entry_id)
        meta = {
            "source": "pending_points",
            "pending_points_id": entry_id,
            "store_id": entry.store_id,
            "trigger": trigger_type.value,
        }

        if self.balance.transactional:
            try:
                unlocked = self.ledger.unlock(db, entry_id, trigger_type, trigger_data, auto_commit=False)
            except InvalidStateError as e:
                logger.info(f"Pending entry {entry_id} already settled or expired: {e.message}")
                return None
            try:
                self.balance.credit(db, user_id, unlocked.delta, key, meta)
                db.commit()
            except Exception:
                db.rollback()
                logger.error(f"Credit for pending entry {entry_id} failed; unlock rolled back")
                raise
            db.refresh(unlocked.entry)
            return unlocked

        # Remote balance: credit first, unlock last. The unlock is judged as of
        # the moment the credit started and records exactly what was credited.
        started_at = self.clock()
        amount = entry.loops_pending
        self.balance.credit(db, user_id, amount, key, meta)
        try:
            return self.ledger.unlock(
                db, entry_id, trigger_type, trigger_data, as_of=started_at, credited_loops=amount
            )
        except InvalidStateError as e:
            logger.info(f"Pending entry {entry_id} settled concurrently after credit (key {key}): {e.message}")
            return None

    def evaluate(
        self,
        db: Session,
        user_id: int,
        store_id: int,
        trigger_type: SettlementTriggerType,
        trigger_data: Optional[Dict[str, Any]] = None,
    ) -> SettlementResult:
        """
        Apply one trigger to every PENDING, unexpired entry for (user, store).

        Returns the entries unlocked and the Loops credited; zero of each when
        nothing qualifies.
        """
        trigger_type = SettlementTriggerType(trigger_type)
        rule = self._rules[trigger_type]
        result = SettlementResult()

        for entry in self.ledger.list_pending_for(db, user_id, store_id):
            now = self.clock()
            evidence = rule(db, entry, now)
            if evidence is None:
                continue
            data = dict(trigger_data or {})
            data.update(evidence)
            unlocked = self._settle(db, entry, trigger_type, data)
            if unlocked:
                result.add(unlocked)

        if result.unlocked_entries:
            logger.info(
                f"Settlement {trigger_type.value} for user {user_id} at store {store_id}: "
                f"unlocked {len(result.unlocked_entries)} entries, credited {result.total_credited} Loops"
            )
        return result

    def evaluate_all(
        self,
        db: Session,
        user_id: int,
        store_id: int,
        trigger_types: Iterable[SettlementTriggerType],
        trigger_data: Optional[Dict[str, Any]] = None,
    ) -> SettlementResult:
        """Run several triggers in order; entries unlocked by one are skipped by the next."""
        result = SettlementResult()
        for trigger_type in trigger_types:
            result.merge(self.evaluate(db, user_id, store_id, trigger_type, trigger_data))
        return result
