"""Fare policy resolution, pricing and the driver/platform split."""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .errors import ConflictError, NotFoundError, PolicyError
from .models import FarePolicy, FareSnapshot, Ride


logger = logging.getLogger("ride_ledger.fares")

# Only these may change once a snapshot references the policy
MUTABLE_WHEN_REFERENCED = frozenset({"is_active"})


@dataclass(frozen=True)
class FareQuote:
    policy_id: Optional[object]
    base_charge_cents: int
    distance_charge_cents: int
    time_charge_cents: int
    subtotal_cents: int
    surge_multiplier: float
    discount_cents: int
    total_cents: int


def round_cents(value) -> int:
    """Round to a whole cent, half away from zero."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def resolve_policy(db: Session, at: Optional[datetime] = None) -> FarePolicy:
    at = at or datetime.utcnow()
    policy = db.execute(
        select(FarePolicy)
        .where(FarePolicy.is_active.is_(True), FarePolicy.effective_from <= at)
        .order_by(FarePolicy.effective_from.desc(), FarePolicy.created_at.desc())
        .limit(1)
    ).scalars().first()
    if policy is None:
        raise PolicyError("No active fare policy is configured")
    return policy


def price(
    policy: FarePolicy,
    distance_km: float,
    duration_min: float,
    surge: float = 1.0,
    discount_cents: int = 0,
) -> FareQuote:
    distance_km = max(0.0, float(distance_km or 0))
    duration_min = max(0.0, float(duration_min or 0))
    surge = float(surge or 1.0)
    discount_cents = max(0, int(discount_cents or 0))

    base = int(policy.base_cents or 0)
    distance_charge = round_cents(Decimal(int(policy.per_km_cents or 0)) * Decimal(str(distance_km)))
    time_charge = round_cents(Decimal(int(policy.per_min_cents or 0)) * Decimal(str(duration_min)))
    subtotal = base + distance_charge + time_charge
    total = round_cents(Decimal(subtotal) * Decimal(str(surge))) - discount_cents
    return FareQuote(
        policy_id=policy.id,
        base_charge_cents=base,
        distance_charge_cents=distance_charge,
        time_charge_cents=time_charge,
        subtotal_cents=subtotal,
        surge_multiplier=surge,
        discount_cents=discount_cents,
        total_cents=max(0, total),
    )


def split_fare(fare_cents: int, driver_share_bps: Optional[int] = None) -> tuple[int, int]:
    """Return (driver_cents, platform_cents); the two always sum to the fare."""
    bps = settings.DRIVER_SHARE_BPS if driver_share_bps is None else int(driver_share_bps)
    fare_cents = int(fare_cents or 0)
    driver = int((fare_cents * bps + 5000) // 10000) if fare_cents > 0 else 0
    return driver, fare_cents - driver


def snapshot_for_ride(db: Session, ride: Ride) -> FareSnapshot:
    """Freeze the fare of a ride, pricing it against the current policy if needed.

    A ride that already carries a fare keeps it and gets a ``fixed`` snapshot;
    the policy is only consulted when the ride has no fare yet.
    """
    existing = db.execute(select(FareSnapshot).where(FareSnapshot.ride_id == ride.id)).scalars().first()
    if existing is not None:
        return existing
    if ride.fare_cents is not None:
        fare = int(ride.fare_cents)
        snap = FareSnapshot(
            ride_id=ride.id,
            policy_id=None,
            source="fixed",
            base_charge_cents=fare,
            surge_multiplier=float(ride.surge_multiplier or 1.0),
            discount_cents=0,
            subtotal_cents=fare,
            final_amount_cents=fare,
        )
    else:
        policy = resolve_policy(db)
        quote = price(
            policy,
            ride.distance_km or 0,
            ride.duration_min or 0,
            surge=ride.surge_multiplier or 1.0,
            discount_cents=ride.discount_cents or 0,
        )
        snap = FareSnapshot(
            ride_id=ride.id,
            policy_id=policy.id,
            source="policy",
            base_charge_cents=quote.base_charge_cents,
            distance_charge_cents=quote.distance_charge_cents,
            time_charge_cents=quote.time_charge_cents,
            surge_multiplier=quote.surge_multiplier,
            discount_cents=quote.discount_cents,
            subtotal_cents=quote.subtotal_cents,
            final_amount_cents=quote.total_cents,
        )
        ride.fare_cents = quote.total_cents
    db.add(snap)
    db.flush()
    logger.info("fare snapshot ride=%s source=%s amount=%s", ride.id, snap.source, snap.final_amount_cents)
    return snap


# Policy administration

def _policy_referenced(db: Session, policy_id) -> bool:
    return db.execute(
        select(FareSnapshot.id).where(FareSnapshot.policy_id == policy_id).limit(1)
    ).first() is not None


def get_policy(db: Session, policy_id) -> FarePolicy:
    policy = db.get(FarePolicy, policy_id)
    if policy is None:
        raise NotFoundError("Fare policy not found")
    return policy


def list_policies(db: Session) -> list[FarePolicy]:
    return db.execute(
        select(FarePolicy).order_by(FarePolicy.effective_from.desc(), FarePolicy.created_at.desc())
    ).scalars().all()


def create_policy(db: Session, **fields) -> FarePolicy:
    fields = {k: v for k, v in fields.items() if v is not None}
    policy = FarePolicy(**fields)
    db.add(policy)
    db.flush()
    logger.info("fare policy created id=%s name=%s", policy.id, policy.name)
    return policy


def update_policy(db: Session, policy_id, **changes) -> FarePolicy:
    policy = get_policy(db, policy_id)
    changes = {k: v for k, v in changes.items() if v is not None}
    if set(changes) - MUTABLE_WHEN_REFERENCED and _policy_referenced(db, policy.id):
        raise ConflictError("Fare policy is referenced by completed rides; only is_active may change", code="policy_in_use")
    for key, value in changes.items():
        setattr(policy, key, value)
    policy.updated_at = datetime.utcnow()
    db.flush()
    return policy


def delete_policy(db: Session, policy_id) -> None:
    policy = get_policy(db, policy_id)
    if _policy_referenced(db, policy.id):
        raise ConflictError("Fare policy is referenced by completed rides", code="policy_in_use")
    db.delete(policy)
    db.flush()
    logger.info("fare policy deleted id=%s", policy_id)
