# tests/test_orders.py
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select

from loyalty.errors import InvalidOrderNumber, OrderConflict, StorageError, ValidationError
from loyalty.models import AdmissionResult, Order, OrderState
from loyalty.services.orders import OrderService
from loyalty.store import LedgerStore
from tests.conftest import USER_A, USER_B, headers, luhn_complete


def _order_count(database):
    with database.SessionLocal() as db:
        return db.execute(select(func.count()).select_from(Order)).scalar_one()


def test_same_user_resubmission_is_idempotent(store, database):
    svc = OrderService(store)

    assert svc.admit(USER_A, "79927398713") is AdmissionResult.ACCEPTED
    assert svc.admit(USER_A, "79927398713") is AdmissionResult.ALREADY_OWNED_BY_CALLER

    assert _order_count(database) == 1
    [order] = svc.list_orders(USER_A)
    assert order.number == "79927398713"
    assert order.state == OrderState.NEW
    assert order.accrual is None


def test_other_users_order_is_a_conflict(store):
    svc = OrderService(store)
    svc.admit(USER_A, "79927398713")

    assert store.add_order(USER_B, "79927398713") is AdmissionResult.OWNED_BY_OTHER
    with pytest.raises(OrderConflict):
        svc.admit(USER_B, "79927398713")

    assert [o.number for o in svc.list_orders(USER_A)] == ["79927398713"]
    assert svc.list_orders(USER_B) == []


def test_bad_checksum_rejected_before_any_write(store, database):
    svc = OrderService(store)
    with pytest.raises(ValidationError) as exc:
        svc.admit(USER_A, "1234")
    assert isinstance(exc.value, InvalidOrderNumber)
    assert _order_count(database) == 0


def test_surrounding_whitespace_is_ignored(store):
    svc = OrderService(store)
    assert svc.admit(USER_A, " 2377225624\n") is AdmissionResult.ACCEPTED
    assert [o.number for o in svc.list_orders(USER_A)] == ["2377225624"]


def test_orders_listed_oldest_first(store):
    svc = OrderService(store)
    for n in ["2377225624", "79927398713", "12345678903"]:
        svc.admit(USER_A, n)
    assert [o.number for o in svc.list_orders(USER_A)] == ["2377225624", "79927398713", "12345678903"]


def test_concurrent_admission_by_two_users_registers_once(store, database):
    numbers = [luhn_complete(f"4400{i}") for i in range(6)]
    barrier = threading.Barrier(2)

    def admit(args):
        user, number = args
        barrier.wait()
        return store.add_order(user, number)

    for number in numbers:
        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(admit, [(USER_A, number), (USER_B, number)]))
        assert sorted(r.value for r in results) == ["ACCEPTED", "OWNED_BY_OTHER"]

    assert _order_count(database) == len(numbers)


def test_concurrent_admission_by_same_user_registers_once(store, database):
    barrier = threading.Barrier(4)

    def admit(_):
        barrier.wait()
        return store.add_order(USER_A, "79927398713")

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(admit, range(4)))

    assert results.count(AdmissionResult.ACCEPTED) == 1
    assert results.count(AdmissionResult.ALREADY_OWNED_BY_CALLER) == 3
    assert _order_count(database) == 1


def test_lost_insert_race_is_classified_against_the_winner(store, database, monkeypatch):
    lookups = {"n": 0}

    def racing_lookup(db, number, *, for_update=False):
        lookups["n"] += 1
        if lookups["n"] == 1:
            # another request registers the number between our lookup and our insert
            with database.SessionLocal.begin() as other:
                other.add(Order(number=number, user_id=USER_B, state=OrderState.NEW))
            return None
        return LedgerStore.get_order(db, number, for_update=for_update)

    monkeypatch.setattr(store, "get_order", racing_lookup)

    assert store.add_order(USER_A, "79927398713") is AdmissionResult.OWNED_BY_OTHER
    assert lookups["n"] == 2
    assert _order_count(database) == 1
    assert OrderService(store).list_orders(USER_A) == []


def test_non_integrity_storage_error_is_not_retried(store, monkeypatch):
    calls = {"n": 0}

    def down(user_id, number):
        calls["n"] += 1
        raise StorageError("connection refused")

    monkeypatch.setattr(store, "_add_order", down)
    with pytest.raises(StorageError):
        store.add_order(USER_A, "79927398713")
    assert calls["n"] == 1


# --- HTTP ---

def test_upload_order_status_codes(client):
    r1 = client.post("/api/user/orders", content="79927398713", headers=headers(USER_A))
    assert r1.status_code == 202
    assert r1.json() == {"number": "79927398713", "result": "ACCEPTED"}

    r2 = client.post("/api/user/orders", content="79927398713", headers=headers(USER_A))
    assert r2.status_code == 200
    assert r2.json()["result"] == "ALREADY_OWNED_BY_CALLER"

    r3 = client.post("/api/user/orders", content="79927398713", headers=headers(USER_B))
    assert r3.status_code == 409

    r4 = client.post("/api/user/orders", content="1234", headers=headers(USER_A))
    assert r4.status_code == 422

    r5 = client.post("/api/user/orders", content="", headers=headers(USER_A))
    assert r5.status_code == 400


def test_identity_header_is_required(client):
    assert client.post("/api/user/orders", content="79927398713").status_code == 401
    assert client.get("/api/user/orders", headers={"X-User-ID": "not-a-uuid"}).status_code == 401


def test_list_orders_empty_then_filled(client):
    r = client.get("/api/user/orders", headers=headers(USER_A))
    assert r.status_code == 204

    client.post("/api/user/orders", content="79927398713", headers=headers(USER_A))
    r = client.get("/api/user/orders", headers=headers(USER_A))
    assert r.status_code == 200
    [row] = r.json()
    assert row["number"] == "79927398713"
    assert row["status"] == "NEW"
    assert "accrual" not in row
    assert row["uploaded_at"]
