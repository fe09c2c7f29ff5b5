import uuid

from sqlalchemy import select

from ride_ledger.database import session_scope
from ride_ledger.models import Transaction, User

from .utils import assign, auth_headers, make_policy, make_user, request_ride, wallet_balance


def _actors():
    return make_user("admin"), make_user("passenger"), make_user("driver")


def test_full_lifecycle_posts_ledger_pair(client):
    admin, passenger, driver = _actors()
    ride_id = request_ride(client, passenger, fare_cents=10000)

    r = assign(client, admin, ride_id, driver)
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "assigned"
    assert r.json()["data"]["driver_id"] == str(driver)

    r = client.post(f"/rides/{ride_id}/start", headers=auth_headers(driver))
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "in_progress"

    r = client.post(f"/rides/{ride_id}/complete", headers=auth_headers(passenger))
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    data = body["data"]
    assert data["ride"]["status"] == "completed"
    assert data["ride"]["fare_cents"] == 10000
    assert data["fare"]["source"] == "fixed"
    assert data["tx_passenger"]["amount_cents"] == 10000
    assert data["tx_passenger"]["type"] == "debit"
    assert data["tx_passenger"]["status"] == "completed"
    assert data["tx_driver"]["amount_cents"] == 8000
    assert data["tx_driver"]["type"] == "credit"
    assert data["tx_driver"]["pair_id"] == data["tx_passenger"]["pair_id"]
    assert data["platform_share_cents"] == 2000

    assert wallet_balance(client, admin, passenger) == -10000
    assert wallet_balance(client, admin, driver) == 8000

    with session_scope() as db:
        assert db.get(User, driver).current_ride_id is None


def test_complete_twice_posts_one_pair(client):
    admin, passenger, driver = _actors()
    ride_id = request_ride(client, passenger, fare_cents=2500)
    assert assign(client, admin, ride_id, driver).status_code == 200

    assert client.post(f"/rides/{ride_id}/complete", headers=auth_headers(driver)).status_code == 200
    r = client.post(f"/rides/{ride_id}/complete", headers=auth_headers(driver))
    assert r.status_code == 409
    assert r.json()["error"] == "already_completed"

    r = client.get(f"/rides/{ride_id}", headers=auth_headers(passenger))
    assert r.json()["data"]["status"] == "completed"
    with session_scope() as db:
        entries = db.execute(select(Transaction).where(Transaction.ride_id == uuid.UUID(ride_id))).scalars().all()
        assert sorted(e.type for e in entries) == ["credit", "debit"]
    assert wallet_balance(client, admin, passenger) == -2500
    assert wallet_balance(client, admin, driver) == 2000


def test_completion_prices_from_policy(client):
    make_policy(base_cents=500, per_km_cents=100, per_min_cents=20)
    admin, passenger, driver = _actors()
    ride_id = request_ride(client, passenger, distance_km=8.5, duration_min=20)
    assert assign(client, admin, ride_id, driver).status_code == 200
    r = client.post(f"/rides/{ride_id}/complete", headers=auth_headers(admin))
    assert r.status_code == 200
    fare = r.json()["data"]["fare"]
    assert fare["source"] == "policy"
    assert fare["final_amount_cents"] == 500 + 850 + 400
    assert r.json()["data"]["tx_driver"]["amount_cents"] == 1400


def test_completion_without_policy_rolls_back(client):
    admin, passenger, driver = _actors()
    ride_id = request_ride(client, passenger, distance_km=3)
    assert assign(client, admin, ride_id, driver).status_code == 200
    r = client.post(f"/rides/{ride_id}/complete", headers=auth_headers(admin))
    assert r.status_code == 400
    assert r.json()["error"] == "no_policy_configured"
    r = client.get(f"/rides/{ride_id}", headers=auth_headers(admin))
    assert r.json()["data"]["status"] == "assigned"
    with session_scope() as db:
        assert db.get(User, driver).current_ride_id is not None


def test_illegal_transitions_are_conflicts(client):
    admin, passenger, driver = _actors()
    ride_id = request_ride(client, passenger, fare_cents=1000)

    # requested -> in_progress skips assignment
    r = client.post(f"/rides/{ride_id}/start", headers=auth_headers(admin))
    assert r.status_code == 409
    assert r.json()["error"] == "invalid_transition"
    r = client.post(f"/rides/{ride_id}/complete", headers=auth_headers(admin))
    assert r.status_code == 409

    r = client.post(f"/rides/{ride_id}/status", headers=auth_headers(admin), json={"status": "in_progress"})
    assert r.status_code == 409

    assert assign(client, admin, ride_id, driver).status_code == 200
    r = assign(client, admin, ride_id, make_user("driver"))
    assert r.status_code == 409
    assert r.json()["error"] == "invalid_transition"

    assert client.post(f"/rides/{ride_id}/complete", headers=auth_headers(admin)).status_code == 200
    r = client.post(f"/rides/{ride_id}/cancel", headers=auth_headers(passenger), json={"reason": "late"})
    assert r.status_code == 409
    r = client.post(f"/rides/{ride_id}/status", headers=auth_headers(admin), json={"status": "requested"})
    assert r.status_code == 409


def test_status_endpoint_routes_through_operations(client):
    admin, passenger, driver = _actors()
    ride_id = request_ride(client, passenger, fare_cents=1500)
    h = auth_headers(admin)

    r = client.post(f"/rides/{ride_id}/status", headers=h, json={"status": "assigned"})
    assert r.status_code == 400
    assert r.json()["error"] == "assign_required"

    assert assign(client, admin, ride_id, driver).status_code == 200
    r = client.post(f"/rides/{ride_id}/status", headers=h, json={"status": "in_progress"})
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "in_progress"
    r = client.post(f"/rides/{ride_id}/status", headers=h, json={"status": "completed"})
    assert r.status_code == 200
    assert wallet_balance(client, admin, driver) == 1200

    r = client.post(f"/rides/{ride_id}/status", headers=h, json={"status": "bogus"})
    assert r.status_code == 400

    r = client.post(f"/rides/{ride_id}/status", headers=auth_headers(passenger), json={"status": "cancelled"})
    assert r.status_code == 403


def test_complete_by_outsider_is_forbidden(client):
    admin, passenger, driver = _actors()
    ride_id = request_ride(client, passenger, fare_cents=1000)
    assert assign(client, admin, ride_id, driver).status_code == 200
    r = client.post(f"/rides/{ride_id}/complete", headers=auth_headers(make_user()))
    assert r.status_code == 403
    assert r.json()["error"] == "forbidden"


def test_cancel_clears_driver_and_releases_lease(client):
    admin, passenger, driver = _actors()
    ride_id = request_ride(client, passenger, fare_cents=1000)
    assert assign(client, admin, ride_id, driver).status_code == 200

    r = client.post(f"/rides/{ride_id}/cancel", headers=auth_headers(driver), json={"reason": "flat tyre"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["ride"]["status"] == "cancelled"
    assert data["ride"]["driver_id"] is None
    assert data["ride"]["cancel_reason"] == "flat tyre"
    assert data["refunds"] == []

    # Driver is free for the next ride
    other = request_ride(client, passenger, fare_cents=900)
    assert assign(client, admin, other, driver).status_code == 200


def test_cancel_refunds_completed_payments(client):
    admin, passenger, driver = _actors()
    ride_id = request_ride(client, passenger, fare_cents=3000)
    r = client.post(
        "/transactions",
        headers=auth_headers(admin),
        json={"user_id": str(passenger), "amount_cents": 3000, "type": "payment", "ride_id": ride_id, "payment_method": "card"},
    )
    assert r.status_code == 200
    assert wallet_balance(client, admin, passenger) == -3000

    r = client.post(f"/rides/{ride_id}/cancel", headers=auth_headers(passenger))
    assert r.status_code == 200
    refunds = r.json()["data"]["refunds"]
    assert len(refunds) == 1
    assert refunds[0]["type"] == "refund"
    assert refunds[0]["amount_cents"] == 3000
    assert wallet_balance(client, admin, passenger) == 0


def test_suspended_passenger_cannot_request(client):
    passenger = make_user(is_suspended=True)
    r = client.post("/rides", headers=auth_headers(passenger), json={"pickup": {"address": "A"}, "drop": {"address": "B"}})
    assert r.status_code == 403
    assert r.json()["error"] == "user_suspended"


def test_rate_completed_ride_once(client):
    admin, passenger, driver = _actors()
    ride_id = request_ride(client, passenger, fare_cents=1000)
    r = client.post(f"/rides/{ride_id}/rate", headers=auth_headers(passenger), json={"rating": 5})
    assert r.status_code == 409
    assert assign(client, admin, ride_id, driver).status_code == 200
    assert client.post(f"/rides/{ride_id}/complete", headers=auth_headers(driver)).status_code == 200

    assert client.post(f"/rides/{ride_id}/rate", headers=auth_headers(driver), json={"rating": 4}).status_code == 403
    r = client.post(f"/rides/{ride_id}/rate", headers=auth_headers(passenger), json={"rating": 5})
    assert r.status_code == 200
    assert r.json()["data"]["rating"] == 5
    r = client.post(f"/rides/{ride_id}/rate", headers=auth_headers(passenger), json={"rating": 3})
    assert r.status_code == 409
    assert r.json()["error"] == "already_rated"
    assert client.post(f"/rides/{ride_id}/rate", headers=auth_headers(passenger), json={"rating": 6}).status_code == 400


def test_receipt_breakdown(client):
    admin, passenger, driver = _actors()
    ride_id = request_ride(client, passenger, fare_cents=1999)
    assert assign(client, admin, ride_id, driver).status_code == 200
    assert client.post(f"/rides/{ride_id}/complete", headers=auth_headers(driver)).status_code == 200

    r = client.get(f"/rides/{ride_id}/receipt", headers=auth_headers(passenger))
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["fare_cents"] == 1999
    assert data["net_driver_payout_cents"] == 1599
    assert data["platform_commission_cents"] == 400
    assert data["payment"]["amount_cents"] == 1999
    assert data["payout"]["amount_cents"] == 1599

    assert client.get(f"/rides/{ride_id}/receipt", headers=auth_headers(make_user())).status_code == 403


def test_listing_is_scoped_to_participants(client):
    admin, passenger, driver = _actors()
    mine = request_ride(client, passenger, fare_cents=100)
    request_ride(client, make_user(), fare_cents=100)

    r = client.get("/rides", headers=auth_headers(passenger))
    assert [x["id"] for x in r.json()["data"]] == [mine]
    r = client.get("/rides", headers=auth_headers(admin))
    assert len(r.json()["data"]) == 2
    r = client.get("/rides/active", headers=auth_headers(passenger))
    assert [x["id"] for x in r.json()["data"]] == [mine]
    r = client.get("/rides/recent?limit=1", headers=auth_headers(admin))
    assert len(r.json()["data"]) == 1
    assert client.get(f"/rides/{mine}", headers=auth_headers(driver)).status_code == 403
