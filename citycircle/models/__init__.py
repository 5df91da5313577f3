"""
Models package - organized by domain
"""
from .store import Store, StoreBlacklist
from .checkin_session import (
    CheckInSession,
    CheckInSessionStatus,
    LocationSample,
    TERMINAL_SESSION_STATUSES,
)
from .pending_points import (
    PendingPointsEntry,
    PendingPointsStatus,
    SettlementTrigger,
    SettlementTriggerType,
)
from .loops_wallet import LoopsWallet, LoopsLedgerEntry, PurchaseTransaction

__all__ = [
    "Store",
    "StoreBlacklist",
    "CheckInSession",
    "CheckInSessionStatus",
    "LocationSample",
    "TERMINAL_SESSION_STATUSES",
    "PendingPointsEntry",
    "PendingPointsStatus",
    "SettlementTrigger",
    "SettlementTriggerType",
    "LoopsWallet",
    "LoopsLedgerEntry",
    "PurchaseTransaction",
]
