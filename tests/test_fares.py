from datetime import datetime

import pytest

from ride_ledger.database import session_scope
from ride_ledger.errors import PolicyError
from ride_ledger.fares import price, resolve_policy, round_cents, split_fare
from ride_ledger.models import FarePolicy

from .utils import auth_headers, make_policy, make_user


def test_round_cents_half_away_from_zero():
    assert round_cents(12.5) == 13
    assert round_cents(12.49) == 12
    assert round_cents(-12.5) == -13


def test_price_breakdown_and_clamp():
    policy = FarePolicy(base_cents=500, per_km_cents=120, per_min_cents=25)
    q = price(policy, distance_km=10.25, duration_min=14)
    assert q.base_charge_cents == 500
    assert q.distance_charge_cents == 1230
    assert q.time_charge_cents == 350
    assert q.subtotal_cents == 2080
    assert q.total_cents == 2080

    surged = price(policy, distance_km=10.25, duration_min=14, surge=1.5, discount_cents=100)
    assert surged.total_cents == 3020

    free = price(policy, distance_km=1, duration_min=0, discount_cents=10_000)
    assert free.total_cents == 0


def test_split_fare_sums_to_fare():
    assert split_fare(10000, 8000) == (8000, 2000)
    for fare in (1, 3, 7, 999, 12345, 100001):
        driver, platform = split_fare(fare, 8000)
        assert driver + platform == fare
        assert driver == int((fare * 8 + 5) // 10)
    assert split_fare(0) == (0, 0)


def test_resolve_policy_latest_effective_before_now():
    jan = make_policy(name="jan", effective_from=datetime(2026, 1, 1))
    make_policy(name="mar", effective_from=datetime(2026, 3, 1))
    make_policy(name="inactive", effective_from=datetime(2026, 1, 15), is_active=False)
    with session_scope() as db:
        policy = resolve_policy(db, at=datetime(2026, 2, 1))
        assert policy.id == jan


def test_resolve_policy_without_any_policy():
    with session_scope() as db:
        with pytest.raises(PolicyError):
            resolve_policy(db, at=datetime(2026, 2, 1))


def test_fare_calc_endpoint(client):
    make_policy(base_cents=300, per_km_cents=100, per_min_cents=10)
    user = make_user()
    r = client.post("/fares/calc", headers=auth_headers(user), json={"distance_km": 5, "duration_min": 12})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["estimate_cents"] == 300 + 500 + 120
    assert data["policy_name"] == "standard"


def test_fare_calc_without_policy_is_400(client):
    user = make_user()
    r = client.post("/fares/calc", headers=auth_headers(user), json={"distance_km": 5})
    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False
    assert body["error"] == "no_policy_configured"


def test_policy_crud_requires_admin(client):
    user = make_user()
    r = client.post("/fares", headers=auth_headers(user), json={"name": "x", "base_cents": 100})
    assert r.status_code == 403


def test_referenced_policy_only_toggles_active(client):
    admin = make_user("admin")
    passenger = make_user()
    driver = make_user("driver")
    h = auth_headers(admin)
    r = client.post("/fares", headers=h, json={"name": "city", "base_cents": 200, "per_km_cents": 100, "per_min_cents": 0, "effective_from": "2020-01-01T00:00:00"})
    assert r.status_code == 200
    policy_id = r.json()["data"]["id"]

    # Unreferenced policies can be edited freely
    r = client.put(f"/fares/{policy_id}", headers=h, json={"base_cents": 250})
    assert r.status_code == 200
    assert r.json()["data"]["base_cents"] == 250

    r = client.post("/rides", headers=auth_headers(passenger), json={"pickup": {"address": "A"}, "drop": {"address": "B"}, "distance_km": 2})
    ride_id = r.json()["data"]["id"]
    assert client.post(f"/rides/{ride_id}/assign", headers=h, json={"driver_id": str(driver)}).status_code == 200
    r = client.post(f"/rides/{ride_id}/complete", headers=h)
    assert r.status_code == 200
    assert r.json()["data"]["fare"]["policy_id"] == policy_id
    assert r.json()["data"]["fare"]["final_amount_cents"] == 450

    r = client.put(f"/fares/{policy_id}", headers=h, json={"base_cents": 999})
    assert r.status_code == 409
    assert r.json()["error"] == "policy_in_use"
    assert client.delete(f"/fares/{policy_id}", headers=h).status_code == 409

    r = client.put(f"/fares/{policy_id}", headers=h, json={"is_active": False})
    assert r.status_code == 200
    assert r.json()["data"]["is_active"] is False


def test_delete_unreferenced_policy(client):
    admin = make_user("admin")
    policy_id = make_policy()
    r = client.delete(f"/fares/{policy_id}", headers=auth_headers(admin))
    assert r.status_code == 200
    r = client.get("/fares", headers=auth_headers(admin))
    assert r.json()["data"] == []
