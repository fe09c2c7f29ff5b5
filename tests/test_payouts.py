import uuid

from sqlalchemy import select

from ride_ledger import ledger
from ride_ledger.database import session_scope
from ride_ledger.models import Transaction
from ride_ledger.payouts import available_balance

from .utils import auth_headers, make_user, wallet_balance


def _driver_with_earnings(amount_cents: int = 8000):
    driver = make_user("driver")
    with session_scope() as db:
        ledger.post_entry(db, ledger.LedgerLeg(user_id=driver, amount_cents=amount_cents, type="credit"))
    return driver


def _add_method(client, driver) -> str:
    r = client.post(
        "/payouts/methods",
        headers=auth_headers(driver),
        json={"type": "upi", "label": "Primary", "details": {"upi_id": "driver@upi"}},
    )
    assert r.status_code == 200, r.text
    return r.json()["data"]["id"]


def _payout_entries(payout_id: str):
    with session_scope() as db:
        return [
            (tx.type, tx.status, tx.amount_cents)
            for tx in db.execute(select(Transaction).where(Transaction.payout_id == uuid.UUID(payout_id))).scalars()
        ]


def test_request_defaults_to_available_balance(client):
    admin = make_user("admin")
    driver = _driver_with_earnings(8000)
    method_id = _add_method(client, driver)

    r = client.post("/payouts/request", headers=auth_headers(driver), json={"method_id": method_id, "period": "2026-W42"})
    assert r.status_code == 200, r.text
    payout = r.json()["data"]
    assert payout["amount_cents"] == 8000
    assert payout["status"] == "pending"
    assert payout["kind"] == "request"
    assert payout["destination"]["upi_id"] == "driver@upi"
    assert _payout_entries(payout["id"]) == [("payout", "pending", 8000)]

    r = client.post("/payouts/request", headers=auth_headers(driver), json={"method_id": method_id})
    assert r.status_code == 400
    assert r.json()["error"] == "insufficient_balance"
    assert wallet_balance(client, admin, driver) == 8000


def test_request_cannot_exceed_available(client):
    driver = _driver_with_earnings(5000)
    method_id = _add_method(client, driver)
    h = auth_headers(driver)
    assert client.post("/payouts/request", headers=h, json={"method_id": method_id, "amount_cents": 3000}).status_code == 200
    r = client.post("/payouts/request", headers=h, json={"method_id": method_id, "amount_cents": 2500})
    assert r.status_code == 400
    assert r.json()["details"]["available_cents"] == 2000
    with session_scope() as db:
        assert available_balance(db, driver) == 2000


def test_process_is_idempotent_and_never_moves_wallets(client):
    admin = make_user("admin")
    driver = _driver_with_earnings(8000)
    method_id = _add_method(client, driver)
    payout_id = client.post("/payouts/request", headers=auth_headers(driver), json={"method_id": method_id}).json()["data"]["id"]
    ha = auth_headers(admin)

    r = client.post(f"/payouts/admin/payouts/{payout_id}/approve", headers=ha)
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "approved"

    r = client.post(f"/payouts/admin/payouts/{payout_id}/process", headers=ha, json={"action": "processed"})
    assert r.status_code == 200
    first = r.json()["data"]
    assert first["status"] == "processed"
    assert first["processed_at"] is not None
    assert _payout_entries(payout_id) == [("payout", "completed", 8000)]

    r = client.post(f"/payouts/admin/payouts/{payout_id}/process", headers=ha, json={"action": "processed"})
    assert r.status_code == 200
    assert r.json()["data"]["processed_at"] == first["processed_at"]
    assert wallet_balance(client, admin, driver) == 8000

    r = client.post(f"/payouts/admin/payouts/{payout_id}/process", headers=ha, json={"action": "failed"})
    assert r.status_code == 409
    assert r.json()["error"] == "payout_already_final"
    r = client.post(f"/payouts/admin/payouts/{payout_id}/approve", headers=ha)
    assert r.status_code == 409


def test_failed_payout_records_reason_and_frees_balance(client):
    admin = make_user("admin")
    driver = _driver_with_earnings(6000)
    method_id = _add_method(client, driver)
    r = client.post("/payouts/request", headers=auth_headers(driver), json={"method_id": method_id, "amount_cents": 6000, "notes": "weekly"})
    payout_id = r.json()["data"]["id"]

    r = client.post(
        f"/payouts/admin/payouts/{payout_id}/process",
        headers=auth_headers(admin),
        json={"action": "failed", "failure_reason": "bank rejected"},
    )
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["status"] == "failed"
    assert data["notes"] == "weekly\nFailure: bank rejected"
    assert _payout_entries(payout_id) == [("payout", "failed", 6000)]
    with session_scope() as db:
        assert available_balance(db, driver) == 6000


def test_process_validation(client):
    admin = make_user("admin")
    driver = _driver_with_earnings(1000)
    method_id = _add_method(client, driver)
    payout_id = client.post("/payouts/request", headers=auth_headers(driver), json={"method_id": method_id}).json()["data"]["id"]
    ha = auth_headers(admin)

    r = client.post(f"/payouts/admin/payouts/{payout_id}/process", headers=ha, json={"action": "paid"})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_outcome"
    r = client.post(f"/payouts/admin/payouts/{uuid.uuid4()}/process", headers=ha, json={"action": "processed"})
    assert r.status_code == 404
    assert r.json()["error"] == "payout_not_found"
    r = client.post(f"/payouts/admin/payouts/{payout_id}/process", headers=auth_headers(driver), json={"action": "processed"})
    assert r.status_code == 403


def test_admin_payout_listing_filters(client):
    admin = make_user("admin")
    d1, d2 = _driver_with_earnings(1000), _driver_with_earnings(2000)
    for d in (d1, d2):
        m = _add_method(client, d)
        assert client.post("/payouts/request", headers=auth_headers(d), json={"method_id": m}).status_code == 200
    ha = auth_headers(admin)
    r = client.get("/payouts/admin/payouts", headers=ha)
    assert len(r.json()["data"]) == 2
    r = client.get(f"/payouts/admin/payouts?driver_id={d2}", headers=ha)
    assert [p["amount_cents"] for p in r.json()["data"]] == [2000]
    r = client.get("/payouts/admin/payouts?status=processed", headers=ha)
    assert r.json()["data"] == []


def test_manual_payout(client):
    admin = make_user("admin")
    driver = _driver_with_earnings(4000)
    r = client.post(f"/admin/drivers/{driver}/payout", headers=auth_headers(admin), json={"amount_cents": 1500, "notes": "cash"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["status"] == "processed"
    assert data["kind"] == "manual"
    assert _payout_entries(data["id"]) == [("payout", "completed", 1500)]
    with session_scope() as db:
        assert available_balance(db, driver) == 2500

    r = client.post(f"/admin/drivers/{driver}/payout", headers=auth_headers(admin), json={"amount_cents": 9000})
    assert r.status_code == 400


def test_payout_methods_crud_and_ledger_listing(client):
    driver = _driver_with_earnings(700)
    h = auth_headers(driver)
    method_id = _add_method(client, driver)

    r = client.put(f"/payouts/methods/{method_id}", headers=h, json={"label": "Backup"})
    assert r.status_code == 200
    assert r.json()["data"]["label"] == "Backup"
    r = client.put(f"/payouts/methods/{method_id}", headers=h, json={"verified": True})
    assert r.status_code == 200
    assert r.json()["data"]["verified"] is False

    r = client.get("/payouts/methods", headers=h)
    assert [m["id"] for m in r.json()["data"]] == [method_id]
    other = _add_method(client, make_user("driver"))
    assert client.delete(f"/payouts/methods/{other}", headers=h).status_code == 404

    assert client.post("/payouts/request", headers=h, json={"method_id": method_id}).status_code == 200
    r = client.delete(f"/payouts/methods/{method_id}", headers=h)
    assert r.status_code == 409
    assert r.json()["error"] == "method_in_use"

    r = client.get("/payouts/transactions", headers=h)
    assert sorted(t["type"] for t in r.json()["data"]) == ["credit", "payout"]

    assert client.get("/payouts/methods", headers=auth_headers(make_user())).status_code == 403


def test_suspended_driver_cannot_request(client):
    admin = make_user("admin")
    driver = _driver_with_earnings(1000)
    method_id = _add_method(client, driver)
    r = client.post(f"/admin/drivers/{driver}/suspend", headers=auth_headers(admin), json={"reason": "docs expired"})
    assert r.status_code == 200
    assert r.json()["data"]["is_suspended"] is True

    r = client.post("/payouts/request", headers=auth_headers(driver), json={"method_id": method_id})
    assert r.status_code == 403
    assert r.json()["error"] == "driver_suspended"

    r = client.post(f"/admin/drivers/{driver}/unsuspend", headers=auth_headers(admin))
    assert r.json()["data"]["is_suspended"] is False
    assert client.post("/payouts/request", headers=auth_headers(driver), json={"method_id": method_id}).status_code == 200


def test_admin_verifies_payout_method(client):
    admin = make_user("admin")
    driver = make_user("driver")
    method_id = _add_method(client, driver)

    r = client.post(f"/payouts/admin/methods/{method_id}/verify", headers=auth_headers(driver))
    assert r.status_code == 403

    r = client.post(f"/payouts/admin/methods/{method_id}/verify", headers=auth_headers(admin))
    assert r.status_code == 200
    assert r.json()["data"]["verified"] is True
    assert client.post(f"/payouts/admin/methods/{uuid.uuid4()}/verify", headers=auth_headers(admin)).status_code == 404

    # Renaming keeps the check; a new destination needs another one
    h = auth_headers(driver)
    r = client.put(f"/payouts/methods/{method_id}", headers=h, json={"label": "Main"})
    assert r.json()["data"]["verified"] is True
    r = client.put(f"/payouts/methods/{method_id}", headers=h, json={"details": {"upi_id": "new@upi"}})
    assert r.status_code == 200
    assert r.json()["data"]["verified"] is False


def test_failed_payout_without_reason_records_unknown(client):
    admin = make_user("admin")
    driver = _driver_with_earnings(3000)
    method_id = _add_method(client, driver)
    payout_id = client.post("/payouts/request", headers=auth_headers(driver), json={"method_id": method_id}).json()["data"]["id"]

    r = client.post(f"/payouts/admin/payouts/{payout_id}/process", headers=auth_headers(admin), json={"action": "failed"})
    assert r.status_code == 200
    assert r.json()["data"]["notes"] == "Failure: unknown"
