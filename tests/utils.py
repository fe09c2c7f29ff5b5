import uuid
from datetime import datetime, timedelta

from ride_ledger.auth import create_access_token
from ride_ledger.database import session_scope
from ride_ledger.models import FarePolicy, User


def make_user(role: str = "passenger", name: str | None = None, **fields) -> uuid.UUID:
    """Insert a directory user and return its id."""
    with session_scope() as db:
        user = User(
            name=name or f"{role}-{uuid.uuid4().hex[:6]}",
            email=f"{uuid.uuid4().hex[:10]}@example.test",
            role=role,
            **fields,
        )
        db.add(user)
        db.flush()
        return user.id


def auth_headers(user_id) -> dict:
    return {"Authorization": f"Bearer {create_access_token(str(user_id))}"}


def make_policy(
    base_cents: int = 500,
    per_km_cents: int = 100,
    per_min_cents: int = 20,
    effective_from: datetime | None = None,
    name: str = "standard",
    is_active: bool = True,
) -> uuid.UUID:
    with session_scope() as db:
        policy = FarePolicy(
            name=name,
            base_cents=base_cents,
            per_km_cents=per_km_cents,
            per_min_cents=per_min_cents,
            is_active=is_active,
            effective_from=effective_from or datetime.utcnow() - timedelta(days=1),
        )
        db.add(policy)
        db.flush()
        return policy.id


PICKUP = {"address": "MG Road", "lat": 12.975, "lng": 77.606}
DROP = {"address": "Indiranagar", "lat": 12.978, "lng": 77.64}


def request_ride(client, passenger_id, **extra) -> str:
    body = {"pickup": PICKUP, "drop": DROP}
    body.update(extra)
    r = client.post("/rides", headers=auth_headers(passenger_id), json=body)
    assert r.status_code == 200, r.text
    return r.json()["data"]["id"]


def assign(client, admin_id, ride_id, driver_id):
    return client.post(f"/rides/{ride_id}/assign", headers=auth_headers(admin_id), json={"driver_id": str(driver_id)})


def wallet_balance(client, admin_id, user_id) -> int:
    r = client.get(f"/wallet/{user_id}", headers=auth_headers(admin_id))
    assert r.status_code == 200, r.text
    return r.json()["data"]["balance_cents"]
