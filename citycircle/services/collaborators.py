"""
Collaborators consumed by the check-in core.

Three seams sit outside the check-in engine proper:

- StoreDirectory resolves a scanned code to a store and its coordinates and
  knows which customers a store has blocked.
- BalanceLedger holds the durable Loops balance.
- TransactionLog answers "did this customer buy something at this store after T".

Each has a SQL-backed default living in the same database as the check-in
tables. BalanceLedger and TransactionLog also have httpx clients for
deployments where those services run elsewhere. The SQL balance ledger shares
the caller's transaction (transactional = True); the remote one cannot, which
changes how the settlement engine orders credit and unlock.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

import httpx
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.clock import utcnow
from ..core.config import settings
from ..core.retry import retry_sync_with_backoff
from ..errors import CollaboratorUnavailableError, InvalidArgumentError, NotFoundError
from ..models import LoopsLedgerEntry, LoopsWallet, PurchaseTransaction, Store, StoreBlacklist

logger = logging.getLogger(__name__)

STORE_CODE_PREFIX = "STORE"


@dataclass(frozen=True)
class StoreInfo:
    store_id: int
    name: str
    lat: Optional[float]
    lng: Optional[float]
    geofence_radius_m: float


@dataclass(frozen=True)
class CreditReceipt:
    user_id: int
    amount: int
    idempotency_key: str
    balance_after: Optional[int] = None
    duplicate: bool = False


@dataclass(frozen=True)
class CustomerProfile:
    plan: Optional[str] = None
    total_loops_earned: int = 0


@dataclass(frozen=True)
class PurchaseRef:
    transaction_id: str
    store_id: int
    amount_cents: int
    occurred_at: datetime


class StoreDirectory(Protocol):
    def resolve_code(self, db: Session, code: str) -> StoreInfo: ...

    def get_store(self, db: Session, store_id: int) -> StoreInfo: ...

    def is_blocked(self, db: Session, store_id: int, user_id: int) -> bool: ...


class BalanceLedger(Protocol):
    transactional: bool

    def credit(
        self,
        db: Session,
        user_id: int,
        amount: int,
        idempotency_key: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> CreditReceipt: ...

    def get_profile(self, db: Session, user_id: int) -> CustomerProfile: ...


class TransactionLog(Protocol):
    def purchase_after(self, db: Session, user_id: int, store_id: int, after: datetime) -> Optional[PurchaseRef]: ...

    def average_purchase_cents(self, db: Session, user_id: int, store_id: int) -> Optional[int]: ...

    def store_average_purchase_cents(self, db: Session, store_id: int) -> Optional[int]: ...

    def record_purchase(
        self, db: Session, user_id: int, store_id: int, amount_cents: int, occurred_at: datetime
    ) -> PurchaseRef: ...


def parse_store_code(code: str) -> int:
    """
    Extract the store id from a scanned code.

    Accepted format: STORE:<id> optionally followed by :<nonce>.
    """
    if not isinstance(code, str) or not code.strip():
        raise InvalidArgumentError("Scanned code is empty")

    parts = code.strip().split(":")
    if len(parts) not in (2, 3) or parts[0].upper() != STORE_CODE_PREFIX:
        raise InvalidArgumentError("Unrecognized store code format", code=code)
    if not parts[1].isdigit():
        raise InvalidArgumentError("Store code does not contain a numeric store id", code=code)
    return int(parts[1])


# ─── SQL-backed defaults ──────────────────────────────────────────────

class SqlStoreDirectory:
    """Store directory over the stores and store_customer_blacklist tables."""

    def __init__(self, default_radius_m: Optional[float] = None):
        self.default_radius_m = default_radius_m or settings.STORE_GEOFENCE_RADIUS_M

    def _to_info(self, store: Store) -> StoreInfo:
        return StoreInfo(
            store_id=store.id,
            name=store.name,
            lat=store.lat,
            lng=store.lng,
            geofence_radius_m=store.geofence_radius_m or self.default_radius_m,
        )

    def get_store(self, db: Session, store_id: int) -> StoreInfo:
        store = db.query(Store).filter(Store.id == store_id).first()
        if not store:
            raise NotFoundError(f"Store {store_id} not found", store_id=store_id)
        return self._to_info(store)

    def resolve_code(self, db: Session, code: str) -> StoreInfo:
        return self.get_store(db, parse_store_code(code))

    def is_blocked(self, db: Session, store_id: int, user_id: int) -> bool:
        return db.query(StoreBlacklist.id).filter(
            StoreBlacklist.store_id == store_id,
            StoreBlacklist.user_id == user_id,
        ).first() is not None


class SqlBalanceLedger:
    """
    Loops balance kept in loops_wallets / loops_ledger.

    Never commits: the caller owns the transaction so that crediting and
    unlocking a pending entry land together or not at all.
    """

    transactional = True

    def __init__(self, clock=utcnow):
        self.clock = clock

    def get_wallet(self, db: Session, user_id: int) -> LoopsWallet:
        """Get or create the customer's wallet"""
        wallet = db.query(LoopsWallet).filter(LoopsWallet.user_id == user_id).first()
        if not wallet:
            wallet = LoopsWallet(user_id=user_id, loops_balance=0, total_loops_earned=0)
            db.add(wallet)
            db.flush()
        return wallet

    def get_profile(self, db: Session, user_id: int) -> CustomerProfile:
        wallet = db.query(LoopsWallet).filter(LoopsWallet.user_id == user_id).first()
        if not wallet:
            return CustomerProfile()
        return CustomerProfile(plan=wallet.plan, total_loops_earned=wallet.total_loops_earned or 0)

    def credit(
        self,
        db: Session,
        user_id: int,
        amount: int,
        idempotency_key: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> CreditReceipt:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidArgumentError(f"Credit amount must be a positive integer, got {amount!r}")

        existing = db.query(LoopsLedgerEntry).filter(
            LoopsLedgerEntry.idempotency_key == idempotency_key
        ).first()
        if existing:
            logger.info(f"Idempotent Loops credit: returning existing ledger entry {existing.id}")
            return CreditReceipt(
                user_id=existing.user_id,
                amount=existing.amount,
                idempotency_key=idempotency_key,
                balance_after=existing.balance_after,
                duplicate=True,
            )

        wallet = self.get_wallet(db, user_id)
        now = self.clock()

        # Atomic increment; concurrent credits for one user must not lose updates
        db.query(LoopsWallet).filter(LoopsWallet.user_id == user_id).update(
            {
                LoopsWallet.loops_balance: LoopsWallet.loops_balance + amount,
                LoopsWallet.total_loops_earned: LoopsWallet.total_loops_earned + amount,
                LoopsWallet.updated_at: now,
            },
            synchronize_session=False,
        )
        db.refresh(wallet)

        entry = LoopsLedgerEntry(
            user_id=user_id,
            change_type="EARN",
            amount=amount,
            balance_after=wallet.loops_balance,
            idempotency_key=idempotency_key,
            meta=meta or {},
            created_at=now,
        )
        db.add(entry)
        db.flush()

        logger.info(f"Credited {amount} Loops to user {user_id} (idempotency_key: {idempotency_key})")
        return CreditReceipt(
            user_id=user_id,
            amount=amount,
            idempotency_key=idempotency_key,
            balance_after=wallet.loops_balance,
        )


class SqlTransactionLog:
    """Purchases recorded in the transactions table."""

    def purchase_after(self, db: Session, user_id: int, store_id: int, after: datetime) -> Optional[PurchaseRef]:
        txn = db.query(PurchaseTransaction).filter(
            PurchaseTransaction.user_id == user_id,
            PurchaseTransaction.store_id == store_id,
            PurchaseTransaction.created_at > after,
        ).order_by(PurchaseTransaction.created_at.asc()).first()
        if not txn:
            return None
        return PurchaseRef(
            transaction_id=txn.id,
            store_id=txn.store_id,
            amount_cents=txn.amount_cents,
            occurred_at=txn.created_at,
        )

    def average_purchase_cents(self, db: Session, user_id: int, store_id: int) -> Optional[int]:
        avg = db.query(func.avg(PurchaseTransaction.amount_cents)).filter(
            PurchaseTransaction.user_id == user_id,
            PurchaseTransaction.store_id == store_id,
        ).scalar()
        return int(round(avg)) if avg is not None else None

    def store_average_purchase_cents(self, db: Session, store_id: int) -> Optional[int]:
        avg = db.query(func.avg(PurchaseTransaction.amount_cents)).filter(
            PurchaseTransaction.store_id == store_id,
        ).scalar()
        return int(round(avg)) if avg is not None else None

    def record_purchase(
        self, db: Session, user_id: int, store_id: int, amount_cents: int, occurred_at: datetime
    ) -> PurchaseRef:
        txn = PurchaseTransaction(
            user_id=user_id,
            store_id=store_id,
            amount_cents=amount_cents,
            created_at=occurred_at,
        )
        db.add(txn)
        db.flush()
        return PurchaseRef(
            transaction_id=txn.id,
            store_id=store_id,
            amount_cents=amount_cents,
            occurred_at=occurred_at,
        )


# ─── Remote (HTTP) collaborators ──────────────────────────────────────

class _HttpCollaborator:
    """Shared plumbing: bearer auth, timeout, bounded retries, error mapping."""

    service_name = "collaborator"

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        client: Optional[httpx.Client] = None,
        sleep=None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token if api_token is not None else settings.COLLABORATOR_API_TOKEN
        self.timeout = timeout or settings.COLLABORATOR_TIMEOUT_SECONDS
        self.max_attempts = max_attempts or settings.COLLABORATOR_MAX_ATTEMPTS
        self._client = client
        self._sleep = sleep

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        if extra:
            headers.update(extra)
        return headers

    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        if self._client is not None:
            response = self._client.request(method, url, timeout=self.timeout, **kwargs)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        retry_kwargs = {"max_attempts": self.max_attempts}
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep
        try:
            response = retry_sync_with_backoff(self._send, method, path, **retry_kwargs, **kwargs)
        except httpx.HTTPStatusError as e:
            logger.error(f"{self.service_name} {method} {path} failed: HTTP {e.response.status_code}")
            raise CollaboratorUnavailableError(
                f"{self.service_name} returned HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            )
        except httpx.HTTPError as e:
            logger.error(f"{self.service_name} {method} {path} unavailable: {e!r}")
            raise CollaboratorUnavailableError(f"{self.service_name} unavailable: {e}")
        if not response.content:
            return {}
        return response.json()


class HttpBalanceLedger(_HttpCollaborator):
    """Balance service client. Credits are idempotent on the key server-side."""

    service_name = "Balance service"
    transactional = False

    def credit(
        self,
        db: Session,
        user_id: int,
        amount: int,
        idempotency_key: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> CreditReceipt:
        data = self._request(
            "POST",
            f"/v1/balances/{user_id}/credits",
            json={"amount": amount, "idempotency_key": idempotency_key, "meta": meta or {}},
            headers=self._headers({"Idempotency-Key": idempotency_key}),
        )
        return CreditReceipt(
            user_id=user_id,
            amount=amount,
            idempotency_key=idempotency_key,
            balance_after=data.get("balance_after"),
            duplicate=bool(data.get("duplicate", False)),
        )

    def get_profile(self, db: Session, user_id: int) -> CustomerProfile:
        data = self._request("GET", f"/v1/balances/{user_id}", headers=self._headers())
        return CustomerProfile(
            plan=data.get("plan"),
            total_loops_earned=int(data.get("total_loops_earned") or 0),
        )


class HttpTransactionLog(_HttpCollaborator):
    """Transaction log client."""

    service_name = "Transaction log"

    @staticmethod
    def _to_ref(data: Dict[str, Any]) -> PurchaseRef:
        return PurchaseRef(
            transaction_id=str(data["id"]),
            store_id=int(data["store_id"]),
            amount_cents=int(data["amount_cents"]),
            occurred_at=datetime.fromisoformat(data["created_at"].replace("Z", "")),
        )

    def purchase_after(self, db: Session, user_id: int, store_id: int, after: datetime) -> Optional[PurchaseRef]:
        data = self._request(
            "GET",
            "/v1/transactions/first-after",
            params={"user_id": user_id, "store_id": store_id, "after": after.isoformat()},
            headers=self._headers(),
        )
        txn = data.get("transaction")
        return self._to_ref(txn) if txn else None

    def average_purchase_cents(self, db: Session, user_id: int, store_id: int) -> Optional[int]:
        data = self._request(
            "GET",
            "/v1/transactions/average",
            params={"user_id": user_id, "store_id": store_id},
            headers=self._headers(),
        )
        value = data.get("average_cents")
        return int(value) if value is not None else None

    def store_average_purchase_cents(self, db: Session, store_id: int) -> Optional[int]:
        data = self._request(
            "GET",
            "/v1/transactions/average",
            params={"store_id": store_id},
            headers=self._headers(),
        )
        value = data.get("average_cents")
        return int(value) if value is not None else None

    def record_purchase(
        self, db: Session, user_id: int, store_id: int, amount_cents: int, occurred_at: datetime
    ) -> PurchaseRef:
        data = self._request(
            "POST",
            "/v1/transactions",
            json={
                "user_id": user_id,
                "store_id": store_id,
                "amount_cents": amount_cents,
                "created_at": occurred_at.isoformat(),
            },
            headers=self._headers(),
        )
        return self._to_ref(data)


def build_balance_ledger() -> BalanceLedger:
    if settings.BALANCE_SERVICE_URL:
        return HttpBalanceLedger(settings.BALANCE_SERVICE_URL)
    return SqlBalanceLedger()


def build_transaction_log() -> TransactionLog:
    if settings.TRANSACTION_LOG_URL:
        return HttpTransactionLog(settings.TRANSACTION_LOG_URL)
    return SqlTransactionLog()
