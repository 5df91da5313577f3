"""
Check-in Orchestrator

The façade the API layer calls. Sequences the session manager, the pending
points ledger and the settlement engine; business rules live in those.

Sessions and entries belonging to another customer are reported as not found
so ids cannot be probed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.clock import Clock, utcnow
from ..errors import BlockedError, CheckInError, InvalidArgumentError, NotFoundError
from ..models import CheckInSession, CheckInSessionStatus, PendingPointsEntry, SettlementTriggerType
from .checkin_session_manager import CheckInSessionManager
from .civ_scorer import LocationFix
from .collaborators import (
    BalanceLedger,
    StoreDirectory,
    SqlStoreDirectory,
    TransactionLog,
    build_balance_ledger,
    build_transaction_log,
)
from .loops_calculator import loops_for_checkin
from .pending_points_ledger import PendingPointsLedger
from .settlement_engine import SettlementEngine, SettlementResult

logger = logging.getLogger(__name__)

# Evidence-based triggers run by a plain settlement check. MANUAL_CHECK only
# runs when asked for explicitly.
DEFAULT_SETTLEMENT_TRIGGERS = (
    SettlementTriggerType.RETURN_VISIT,
    SettlementTriggerType.NEW_TRANSACTION,
    SettlementTriggerType.TIME_ELAPSED,
)


@dataclass
class CheckInResult:
    session_id: str
    store_id: int
    pending_points_id: str
    loops_pending: int
    expires_at: datetime
    # Older entries at this store settled by this visit
    settlement: Optional[SettlementResult] = None


@dataclass
class LocationAck:
    session_id: str
    status: CheckInSessionStatus
    accepted: bool
    sample_count: int


@dataclass
class CompletionResult:
    session_id: str
    civ_score: float
    loops_pending: int


class CheckInOrchestrator:
    def __init__(
        self,
        store_directory: Optional[StoreDirectory] = None,
        balance: Optional[BalanceLedger] = None,
        transactions: Optional[TransactionLog] = None,
        clock: Clock = utcnow,
    ):
        self.clock = clock
        self.store_directory = store_directory or SqlStoreDirectory()
        self.balance = balance or build_balance_ledger()
        self.transactions = transactions or build_transaction_log()
        self.sessions = CheckInSessionManager(store_directory=self.store_directory, clock=clock)
        self.ledger = PendingPointsLedger(clock=clock)
        self.engine = SettlementEngine(
            ledger=self.ledger,
            sessions=self.sessions,
            balance=self.balance,
            transactions=self.transactions,
            store_directory=self.store_directory,
            clock=clock,
        )

    def _owned_session(self, db: Session, user_id: int, session_id: str) -> CheckInSession:
        session = self.sessions.get(db, session_id)
        if session.user_id != user_id:
            raise NotFoundError(f"Check-in session {session_id} not found", session_id=session_id)
        return session

    def check_in(
        self,
        db: Session,
        user_id: int,
        scanned_code: str,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        accuracy_m: Optional[float] = None,
    ) -> CheckInResult:
        """
        Start a visit from a scanned store code.

        Opens the session, records the optional first location fix, grants
        pending Loops and lets this visit settle older entries at the store as
        a return visit.
        """
        if (lat is None) != (lng is None):
            raise InvalidArgumentError("lat and lng must be provided together")

        store = self.store_directory.resolve_code(db, scanned_code)
        if self.store_directory.is_blocked(db, store.store_id, user_id):
            logger.warning(f"Blocked check-in attempt by user {user_id} at store {store.store_id}")
            raise BlockedError(
                "You are not allowed to check in at this store",
                store_id=store.store_id,
            )

        initial_fix = None
        if lat is not None:
            initial_fix = self.sessions.normalize_fix(LocationFix(lat=lat, lng=lng, accuracy_m=accuracy_m), self.clock())

        loops = loops_for_checkin(db, self.balance, self.transactions, user_id, store.store_id)

        session = self.sessions.open(db, user_id, store.store_id, auto_commit=False)
        if initial_fix is not None:
            self.sessions.append_sample(db, session.id, initial_fix, auto_commit=False)
        entry = self.ledger.grant(db, user_id, store.store_id, session.id, loops, auto_commit=False)
        db.commit()
        db.refresh(session)
        db.refresh(entry)

        result = CheckInResult(
            session_id=session.id,
            store_id=store.store_id,
            pending_points_id=entry.id,
            loops_pending=entry.loops_pending,
            expires_at=session.expires_at,
        )
        # The visit is already recorded; settling older entries can wait for the
        # sweep or the next settlement check
        try:
            result.settlement = self.engine.evaluate(
                db,
                user_id,
                store.store_id,
                SettlementTriggerType.RETURN_VISIT,
                {"session_id": session.id},
            )
        except CheckInError as e:
            db.rollback()
            logger.warning(
                f"Return-visit settlement after check-in {session.id} deferred "
                f"(user {user_id}, store {store.store_id}): {e.message}"
            )
        return result

    def update_location(
        self,
        db: Session,
        user_id: int,
        session_id: str,
        lat: float,
        lng: float,
        accuracy_m: Optional[float] = None,
        captured_at: Optional[datetime] = None,
    ) -> LocationAck:
        """Record a fix. A completed or expired session just reports its state."""
        session = self._owned_session(db, user_id, session_id)
        if session.is_terminal:
            return LocationAck(
                session_id=session_id,
                status=session.status,
                accepted=False,
                sample_count=self.sessions.sample_count(db, session_id),
            )

        fix = LocationFix(lat=lat, lng=lng, accuracy_m=accuracy_m, captured_at=captured_at)
        self.sessions.append_sample(db, session_id, fix)
        return LocationAck(
            session_id=session_id,
            status=CheckInSessionStatus.ACTIVE,
            accepted=True,
            sample_count=self.sessions.sample_count(db, session_id),
        )

    def complete_check_in(self, db: Session, user_id: int, session_id: str) -> CompletionResult:
        self._owned_session(db, user_id, session_id)
        civ = self.sessions.complete(db, session_id, auto_commit=False)
        entries = self.ledger.apply_civ_score(db, session_id, civ, auto_commit=False)
        db.commit()
        return CompletionResult(
            session_id=session_id,
            civ_score=civ,
            loops_pending=sum(entry.loops_pending for entry in entries),
        )

    def list_pending_points(self, db: Session, user_id: int) -> List[PendingPointsEntry]:
        return self.ledger.list_pending_for_user(db, user_id)

    def check_settlement(
        self,
        db: Session,
        user_id: int,
        store_id: Optional[int] = None,
        trigger_type: Optional[SettlementTriggerType] = None,
    ) -> SettlementResult:
        """
        Settle whatever the available evidence supports.

        Without a store, every store where the customer has pending entries is
        checked. Without a trigger type, RETURN_VISIT, NEW_TRANSACTION and
        TIME_ELAPSED are tried in that order.
        """
        trigger_types = [SettlementTriggerType(trigger_type)] if trigger_type else list(DEFAULT_SETTLEMENT_TRIGGERS)
        if store_id is not None:
            store_ids = [store_id]
        else:
            store_ids = self.ledger.pending_store_ids_for_user(db, user_id)

        result = SettlementResult()
        for sid in store_ids:
            result.merge(self.engine.evaluate_all(db, user_id, sid, trigger_types, {"requested_by": "customer"}))
        return result

    def record_purchase(
        self,
        db: Session,
        store_id: int,
        user_id: int,
        amount_cents: int,
    ) -> SettlementResult:
        """Log a purchase made at the store and settle entries it confirms."""
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise InvalidArgumentError(f"amount_cents must be a positive integer, got {amount_cents!r}")
        self.store_directory.get_store(db, store_id)

        purchase = self.transactions.record_purchase(db, user_id, store_id, amount_cents, self.clock())
        db.commit()
        logger.info(f"Recorded purchase {purchase.transaction_id} of {amount_cents} cents by user {user_id} at store {store_id}")

        return self.engine.evaluate(
            db,
            user_id,
            store_id,
            SettlementTriggerType.NEW_TRANSACTION,
            {"recorded_transaction_id": purchase.transaction_id},
        )


_checkin_orchestrator: Optional[CheckInOrchestrator] = None


def get_checkin_orchestrator() -> CheckInOrchestrator:
    """Get singleton check-in orchestrator."""
    global _checkin_orchestrator
    if _checkin_orchestrator is None:
        _checkin_orchestrator = CheckInOrchestrator()
    return _checkin_orchestrator
