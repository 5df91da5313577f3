"""
Tests for the store directory, balance ledger and transaction log collaborators.

The HTTP clients are exercised against httpx.MockTransport; no network access.
"""
import json
from datetime import timedelta

import httpx
import pytest

from citycircle.errors import CollaboratorUnavailableError, InvalidArgumentError, NotFoundError
from citycircle.models import LoopsLedgerEntry, LoopsWallet
from citycircle.services.collaborators import (
    HttpBalanceLedger,
    HttpTransactionLog,
    SqlBalanceLedger,
    SqlStoreDirectory,
    SqlTransactionLog,
    parse_store_code,
)
from tests.helpers.checkin_helpers import T0, block_customer, make_store

USER_ID = 606


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def _no_sleep(_delay):
    return None


class TestParseStoreCode:
    @pytest.mark.parametrize("code,expected", [
        ("STORE:42", 42),
        ("STORE:42:n0nce", 42),
        ("store:7:abc", 7),
        ("  STORE:9  ", 9),
    ])
    def test_valid_codes(self, code, expected):
        assert parse_store_code(code) == expected

    @pytest.mark.parametrize("code", [None, "", "   ", "42", "STORE:", "STORE:-1", "STORE:1:2:3", "QR:1"])
    def test_invalid_codes(self, code):
        with pytest.raises(InvalidArgumentError):
            parse_store_code(code)


class TestSqlStoreDirectory:
    def test_resolve_code(self, db, store):
        info = SqlStoreDirectory().resolve_code(db, f"STORE:{store.id}:x")

        assert info.store_id == store.id
        assert info.lat == store.lat
        assert info.geofence_radius_m == 50

    def test_store_radius_overrides_default(self, db):
        mall = make_store(db, name="Mall", geofence_radius_m=300)

        assert SqlStoreDirectory().get_store(db, mall.id).geofence_radius_m == 300
        assert SqlStoreDirectory(default_radius_m=80).get_store(db, mall.id).geofence_radius_m == 300

    def test_unknown_store(self, db):
        with pytest.raises(NotFoundError):
            SqlStoreDirectory().get_store(db, 123456)

    def test_is_blocked(self, db, store):
        directory = SqlStoreDirectory()
        block_customer(db, store.id, USER_ID)

        assert directory.is_blocked(db, store.id, USER_ID) is True
        assert directory.is_blocked(db, store.id, USER_ID + 1) is False


class TestSqlBalanceLedger:
    def test_credit_creates_wallet_and_ledger_entry(self, db, clock):
        ledger = SqlBalanceLedger(clock=clock)

        receipt = ledger.credit(db, USER_ID, 20, "pending-points:abc", {"store_id": 1})
        db.commit()

        assert receipt.balance_after == 20
        assert receipt.duplicate is False
        wallet = db.query(LoopsWallet).filter(LoopsWallet.user_id == USER_ID).one()
        assert wallet.loops_balance == 20
        assert wallet.total_loops_earned == 20
        entry = db.query(LoopsLedgerEntry).filter(LoopsLedgerEntry.idempotency_key == "pending-points:abc").one()
        assert entry.change_type == "EARN"
        assert entry.meta == {"store_id": 1}

    def test_credit_is_idempotent_on_key(self, db, clock):
        ledger = SqlBalanceLedger(clock=clock)
        ledger.credit(db, USER_ID, 20, "pending-points:abc")
        db.commit()

        again = ledger.credit(db, USER_ID, 20, "pending-points:abc")
        db.commit()

        assert again.duplicate is True
        assert again.balance_after == 20
        db.expire_all()
        assert db.query(LoopsWallet).filter(LoopsWallet.user_id == USER_ID).one().loops_balance == 20

    def test_credits_accumulate(self, db, clock):
        ledger = SqlBalanceLedger(clock=clock)
        ledger.credit(db, USER_ID, 20, "k1")
        receipt = ledger.credit(db, USER_ID, 15, "k2")

        assert receipt.balance_after == 35

    @pytest.mark.parametrize("amount", [0, -3, 1.5, True])
    def test_rejects_bad_amounts(self, db, clock, amount):
        with pytest.raises(InvalidArgumentError):
            SqlBalanceLedger(clock=clock).credit(db, USER_ID, amount, "k")

    def test_profile_defaults_without_wallet(self, db, clock):
        profile = SqlBalanceLedger(clock=clock).get_profile(db, USER_ID)

        assert profile.plan is None
        assert profile.total_loops_earned == 0


class TestSqlTransactionLog:
    def test_purchase_after_is_strict_and_earliest_first(self, db, store):
        log = SqlTransactionLog()
        at_boundary = log.record_purchase(db, USER_ID, store.id, 500, T0)
        later = log.record_purchase(db, USER_ID, store.id, 700, T0 + timedelta(hours=2))
        log.record_purchase(db, USER_ID, store.id, 900, T0 + timedelta(hours=1))
        db.commit()

        first = log.purchase_after(db, USER_ID, store.id, T0)

        assert first.amount_cents == 900
        assert first.transaction_id not in (at_boundary.transaction_id, later.transaction_id)
        assert log.purchase_after(db, USER_ID, store.id, T0 + timedelta(hours=2)) is None
        assert log.purchase_after(db, USER_ID + 1, store.id, T0 - timedelta(days=1)) is None

    def test_averages(self, db, store):
        log = SqlTransactionLog()
        log.record_purchase(db, USER_ID, store.id, 500, T0)
        log.record_purchase(db, USER_ID, store.id, 1000, T0)
        log.record_purchase(db, USER_ID + 1, store.id, 3000, T0)

        assert log.average_purchase_cents(db, USER_ID, store.id) == 750
        assert log.store_average_purchase_cents(db, store.id) == 1500
        assert log.average_purchase_cents(db, USER_ID + 2, store.id) is None


class TestHttpBalanceLedger:
    def test_credit_sends_idempotency_key(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"balance_after": 120, "duplicate": False})

        ledger = HttpBalanceLedger("http://balance.test/", api_token="secret", client=_client(handler))
        receipt = ledger.credit(None, USER_ID, 20, "pending-points:abc", {"store_id": 3})

        assert receipt.balance_after == 120
        assert receipt.duplicate is False
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == f"/v1/balances/{USER_ID}/credits"
        assert request.headers["Idempotency-Key"] == "pending-points:abc"
        assert request.headers["Authorization"] == "Bearer secret"
        assert json.loads(request.content) == {
            "amount": 20,
            "idempotency_key": "pending-points:abc",
            "meta": {"store_id": 3},
        }

    def test_transient_failures_are_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"balance_after": 20, "duplicate": True})

        ledger = HttpBalanceLedger(
            "http://balance.test", max_attempts=3, client=_client(handler), sleep=_no_sleep
        )

        assert ledger.credit(None, USER_ID, 20, "k").duplicate is True
        assert len(attempts) == 3
        assert {r.headers["Idempotency-Key"] for r in attempts} == {"k"}

    def test_timeouts_become_unavailable(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectTimeout("timed out", request=request)

        ledger = HttpBalanceLedger(
            "http://balance.test", max_attempts=2, client=_client(handler), sleep=_no_sleep
        )

        with pytest.raises(CollaboratorUnavailableError):
            ledger.credit(None, USER_ID, 20, "k")
        assert len(attempts) == 2

    def test_client_errors_are_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(422, json={"detail": "bad amount"})

        ledger = HttpBalanceLedger(
            "http://balance.test", max_attempts=3, client=_client(handler), sleep=_no_sleep
        )

        with pytest.raises(CollaboratorUnavailableError) as exc_info:
            ledger.credit(None, USER_ID, 20, "k")
        assert exc_info.value.context["status_code"] == 422
        assert len(attempts) == 1

    def test_get_profile(self):
        def handler(request):
            assert request.url.path == f"/v1/balances/{USER_ID}"
            return httpx.Response(200, json={"plan": "PLUS", "total_loops_earned": 640})

        profile = HttpBalanceLedger("http://balance.test", client=_client(handler)).get_profile(None, USER_ID)

        assert profile.plan == "PLUS"
        assert profile.total_loops_earned == 640


class TestHttpTransactionLog:
    def test_purchase_after(self):
        def handler(request):
            assert request.url.path == "/v1/transactions/first-after"
            assert request.url.params["after"] == T0.isoformat()
            return httpx.Response(200, json={"transaction": {
                "id": "txn-9",
                "store_id": 3,
                "amount_cents": 1250,
                "created_at": "2026-03-03T09:30:00Z",
            }})

        log = HttpTransactionLog("http://txlog.test", client=_client(handler))
        purchase = log.purchase_after(None, USER_ID, 3, T0)

        assert purchase.transaction_id == "txn-9"
        assert purchase.amount_cents == 1250
        assert purchase.occurred_at == T0 + timedelta(hours=21, minutes=30)

    def test_no_purchase(self):
        log = HttpTransactionLog(
            "http://txlog.test", client=_client(lambda request: httpx.Response(200, json={"transaction": None}))
        )

        assert log.purchase_after(None, USER_ID, 3, T0) is None

    def test_averages(self):
        def handler(request):
            if "user_id" in request.url.params:
                return httpx.Response(200, json={"average_cents": 880})
            return httpx.Response(200, json={"average_cents": None})

        log = HttpTransactionLog("http://txlog.test", client=_client(handler))

        assert log.average_purchase_cents(None, USER_ID, 3) == 880
        assert log.store_average_purchase_cents(None, 3) is None

    def test_outage(self):
        log = HttpTransactionLog(
            "http://txlog.test",
            max_attempts=2,
            client=_client(lambda request: httpx.Response(502)),
            sleep=_no_sleep,
        )

        with pytest.raises(CollaboratorUnavailableError):
            log.purchase_after(None, USER_ID, 3, T0)
