"""Ride state machine.

Every status change is a conditional ``UPDATE ... WHERE status IN (...)``; a
zero row count means another request moved the ride first. Drivers are booked
through a lease on ``users.current_ride_id`` which is taken on assignment and
released on completion or cancellation.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from prometheus_client import Counter
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from . import fares, ledger
from .auth import ActorContext
from .config import settings
from .errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .matching import available_drivers
from .models import (
    ACTIVE_DRIVER_STATUSES,
    RIDE_ASSIGNED,
    RIDE_CANCELLED,
    RIDE_COMPLETED,
    RIDE_IN_PROGRESS,
    RIDE_REQUESTED,
    RIDE_STATUSES,
    FareSnapshot,
    Ride,
    Transaction,
    User,
)
from .utils.audit import record_event
from .utils.metrics import inc


logger = logging.getLogger("ride_ledger.rides")

STATUS_TRANSITIONS = Counter(
    "rides_status_transitions_total",
    "Ride status transitions",
    ["from", "to"],
)

TRANSITIONS = {
    RIDE_REQUESTED: frozenset({RIDE_ASSIGNED, RIDE_CANCELLED}),
    RIDE_ASSIGNED: frozenset({RIDE_IN_PROGRESS, RIDE_COMPLETED, RIDE_CANCELLED}),
    RIDE_IN_PROGRESS: frozenset({RIDE_COMPLETED, RIDE_CANCELLED}),
    RIDE_COMPLETED: frozenset(),
    RIDE_CANCELLED: frozenset(),
}

OPEN_STATUSES = (RIDE_REQUESTED, RIDE_ASSIGNED, RIDE_IN_PROGRESS)
AUTO_ASSIGN_ATTEMPTS = 5


@dataclass
class CompletionResult:
    ride: Ride
    snapshot: FareSnapshot
    debit: Transaction
    credit: Transaction
    platform_share_cents: int


@dataclass
class CancellationResult:
    ride: Ride
    refunds: list = field(default_factory=list)


@dataclass
class Receipt:
    ride: Ride
    snapshot: Optional[FareSnapshot]
    fare_cents: int
    platform_commission_cents: int
    net_driver_payout_cents: int
    payment: Optional[Transaction] = None
    payout: Optional[Transaction] = None


def can_transition(frm: str, to: str) -> bool:
    return to in TRANSITIONS.get(frm, frozenset())


def _sources_for(to: str) -> tuple:
    return tuple(s for s, targets in TRANSITIONS.items() if to in targets)


def _count_transition(frm: Optional[str], to: Optional[str]):
    inc(STATUS_TRANSITIONS, frm or "", to or "")


def _invalid(ride: Ride, to: str) -> ConflictError:
    return ConflictError(
        f"Cannot move ride from {ride.status} to {to}",
        code="invalid_transition",
        details={"from": ride.status, "to": to},
    )


def _claim(db: Session, ride: Ride, to: str, **values) -> bool:
    """Move ``ride`` to ``to`` if it is still in a legal source status."""
    db.flush()
    now = datetime.utcnow()
    values.setdefault("updated_at", now)
    won = db.execute(
        update(Ride)
        .where(Ride.id == ride.id, Ride.status.in_(_sources_for(to)))
        .values(status=to, **values)
        .execution_options(synchronize_session=False)
    ).rowcount == 1
    db.refresh(ride)
    return won


def _take_lease(db: Session, driver_id, ride_id) -> bool:
    return db.execute(
        update(User)
        .where(
            User.id == driver_id,
            User.current_ride_id.is_(None),
            User.is_suspended.is_(False),
            User.role == "driver",
        )
        .values(current_ride_id=ride_id)
        .execution_options(synchronize_session=False)
    ).rowcount == 1


def _release_lease(db: Session, driver_id, ride_id) -> None:
    if driver_id is None:
        return
    db.execute(
        update(User)
        .where(User.id == driver_id, User.current_ride_id == ride_id)
        .values(current_ride_id=None)
        .execution_options(synchronize_session=False)
    )


def _driver_busy(db: Session, driver_id) -> bool:
    return db.execute(
        select(Ride.id).where(Ride.driver_id == driver_id, Ride.status.in_(ACTIVE_DRIVER_STATUSES)).limit(1)
    ).first() is not None


def _is_party(ride: Ride, actor: ActorContext) -> bool:
    return actor.user_id in (ride.passenger_id, ride.driver_id)


def get_ride(db: Session, ride_id) -> Ride:
    ride = db.get(Ride, ride_id, populate_existing=True)
    if ride is None:
        raise NotFoundError("Ride not found", code="ride_not_found")
    return ride


def get_ride_for(db: Session, ride_id, actor: ActorContext) -> Ride:
    ride = get_ride(db, ride_id)
    if not (actor.is_admin or _is_party(ride, actor)):
        raise AuthorizationError("Not a participant of this ride")
    return ride


def create_ride(
    db: Session,
    actor: ActorContext,
    pickup: dict,
    drop: dict,
    fare_cents: Optional[int] = None,
    distance_km: Optional[float] = None,
    duration_min: Optional[float] = None,
    surge_multiplier: Optional[float] = None,
    discount_cents: Optional[int] = None,
) -> Ride:
    if actor.is_suspended:
        raise AuthorizationError("Suspended users cannot request rides", code="user_suspended")
    if fare_cents is not None and fare_cents < 0:
        raise ValidationError("fare_cents must be >= 0")
    now = datetime.utcnow()
    ride = Ride(
        passenger_id=actor.user_id,
        status=RIDE_REQUESTED,
        pickup=pickup,
        drop=drop,
        fare_cents=fare_cents,
        distance_km=distance_km,
        duration_min=duration_min,
        surge_multiplier=surge_multiplier or 1.0,
        discount_cents=discount_cents or 0,
        created_at=now,
        updated_at=now,
    )
    db.add(ride)
    db.flush()
    _count_transition(None, RIDE_REQUESTED)
    record_event(db, "ride.requested", actor.user_id, {"ride_id": str(ride.id)})
    logger.info("ride requested id=%s passenger=%s", ride.id, actor.user_id)
    return ride


def _assign_driver(db: Session, ride: Ride, driver_id) -> bool:
    """Lease the driver and claim the ride; False when the lease was lost."""
    if not _take_lease(db, driver_id, ride.id):
        return False
    if not _claim(db, ride, RIDE_ASSIGNED, driver_id=driver_id, assigned_at=datetime.utcnow()):
        raise _invalid(ride, RIDE_ASSIGNED)
    return True


def assign(db: Session, ride_id, driver_id, actor: ActorContext) -> Ride:
    if not actor.is_admin:
        raise AuthorizationError("Admin only")
    ride = get_ride(db, ride_id)
    if ride.status != RIDE_REQUESTED:
        raise _invalid(ride, RIDE_ASSIGNED)
    driver = db.get(User, driver_id)
    if driver is None:
        raise NotFoundError("Driver not found", code="driver_not_found")
    if driver.role != "driver" or driver.is_suspended or _driver_busy(db, driver.id):
        raise ConflictError("Driver is not available", code="driver_unavailable")
    if not _assign_driver(db, ride, driver.id):
        raise ConflictError("Driver is not available", code="driver_unavailable")
    _count_transition(RIDE_REQUESTED, RIDE_ASSIGNED)
    record_event(db, "ride.assigned", actor.user_id, {"ride_id": str(ride.id), "driver_id": str(driver.id)})
    logger.info("ride assigned id=%s driver=%s", ride.id, driver.id)
    return ride


def auto_assign(db: Session, ride_id, actor: ActorContext) -> tuple[Ride, User]:
    if not actor.is_admin:
        raise AuthorizationError("Admin only")
    ride = get_ride(db, ride_id)
    if ride.status != RIDE_REQUESTED:
        raise _invalid(ride, RIDE_ASSIGNED)
    tried: list = []
    for _ in range(AUTO_ASSIGN_ATTEMPTS):
        candidates = available_drivers(db, limit=1, exclude_ids=tried)
        if not candidates:
            break
        driver = candidates[0]
        if _assign_driver(db, ride, driver.id):
            _count_transition(RIDE_REQUESTED, RIDE_ASSIGNED)
            record_event(db, "ride.auto_assigned", actor.user_id, {"ride_id": str(ride.id), "driver_id": str(driver.id)})
            logger.info("ride auto-assigned id=%s driver=%s attempts=%s", ride.id, driver.id, len(tried) + 1)
            return ride, driver
        # Lost to a concurrent booking; try the next candidate
        tried.append(driver.id)
    raise NotFoundError("No available drivers", code="no_available_drivers")


def start(db: Session, ride_id, actor: ActorContext) -> Ride:
    ride = get_ride(db, ride_id)
    if not (actor.is_admin or (ride.driver_id is not None and actor.user_id == ride.driver_id)):
        raise AuthorizationError("Only the assigned driver can start the ride")
    if ride.status != RIDE_ASSIGNED:
        raise _invalid(ride, RIDE_IN_PROGRESS)
    if not _claim(db, ride, RIDE_IN_PROGRESS, started_at=datetime.utcnow()):
        raise _invalid(ride, RIDE_IN_PROGRESS)
    _count_transition(RIDE_ASSIGNED, RIDE_IN_PROGRESS)
    record_event(db, "ride.started", actor.user_id, {"ride_id": str(ride.id)})
    return ride


def complete(db: Session, ride_id, actor: ActorContext) -> CompletionResult:
    """Finalize the fare, post the ledger pair and close the ride.

    Runs inside the caller's transaction; any failure rolls the status claim
    back together with the postings.
    """
    ride = get_ride(db, ride_id)
    if not (actor.is_admin or _is_party(ride, actor)):
        raise AuthorizationError("Only the passenger, the assigned driver or an admin can complete the ride")
    if ride.status == RIDE_COMPLETED:
        raise ConflictError("Ride already completed", code="already_completed")
    if ride.status not in (RIDE_ASSIGNED, RIDE_IN_PROGRESS) or ride.driver_id is None:
        raise _invalid(ride, RIDE_COMPLETED)
    prev_status = ride.status
    if not _claim(db, ride, RIDE_COMPLETED, completed_at=datetime.utcnow()):
        if ride.status == RIDE_COMPLETED:
            raise ConflictError("Ride already completed", code="already_completed")
        raise _invalid(ride, RIDE_COMPLETED)

    snapshot = fares.snapshot_for_ride(db, ride)
    fare = int(snapshot.final_amount_cents)
    ride.fare_cents = fare
    driver_cents, platform_cents = fares.split_fare(fare)
    pair = ledger.post_pair(
        db,
        ledger.LedgerLeg(
            user_id=ride.passenger_id,
            amount_cents=fare,
            type="debit",
            ride_id=ride.id,
            description="Ride fare",
            meta={"source": "ride_completion"},
        ),
        ledger.LedgerLeg(
            user_id=ride.driver_id,
            amount_cents=driver_cents,
            type="credit",
            ride_id=ride.id,
            description="Ride earnings",
            meta={"source": "ride_completion"},
        ),
        pair_key=f"ride:{ride.id}:completion",
    )
    _release_lease(db, ride.driver_id, ride.id)
    db.flush()
    _count_transition(prev_status, RIDE_COMPLETED)
    record_event(db, "ride.completed", actor.user_id, {"ride_id": str(ride.id), "fare_cents": fare, "driver_cents": driver_cents})
    logger.info("ride completed id=%s fare=%s driver=%s platform=%s", ride.id, fare, driver_cents, platform_cents)
    return CompletionResult(
        ride=ride,
        snapshot=snapshot,
        debit=pair.debit,
        credit=pair.credit,
        platform_share_cents=platform_cents,
    )


def _refund_payments(db: Session, ride: Ride) -> list:
    paid = dict(
        db.execute(
            select(Transaction.user_id, func.sum(Transaction.amount_cents))
            .where(Transaction.ride_id == ride.id, Transaction.type == "payment", Transaction.status == "completed")
            .group_by(Transaction.user_id)
        ).all()
    )
    refunded = dict(
        db.execute(
            select(Transaction.user_id, func.sum(Transaction.amount_cents))
            .where(Transaction.ride_id == ride.id, Transaction.type == "refund", Transaction.status == "completed")
            .group_by(Transaction.user_id)
        ).all()
    )
    refunds = []
    for user_id, total in paid.items():
        outstanding = int(total or 0) - int(refunded.get(user_id) or 0)
        if outstanding <= 0:
            continue
        refunds.append(
            ledger.post_entry(
                db,
                ledger.LedgerLeg(
                    user_id=user_id,
                    amount_cents=outstanding,
                    type="refund",
                    ride_id=ride.id,
                    description="Ride cancellation refund",
                    meta={"source": "ride_cancellation"},
                ),
                idempotency_key=f"ride:{ride.id}:refund:{user_id}",
            )
        )
    return refunds


def cancel(db: Session, ride_id, actor: ActorContext, reason: Optional[str] = None) -> CancellationResult:
    ride = get_ride(db, ride_id)
    if not (actor.is_admin or _is_party(ride, actor)):
        raise AuthorizationError("Only the passenger, the assigned driver or an admin can cancel the ride")
    if ride.status == RIDE_CANCELLED:
        raise ConflictError("Ride already cancelled", code="already_cancelled")
    if ride.status not in OPEN_STATUSES:
        raise _invalid(ride, RIDE_CANCELLED)
    prev_status, prev_driver = ride.status, ride.driver_id
    if not _claim(
        db,
        ride,
        RIDE_CANCELLED,
        driver_id=None,
        cancel_reason=reason,
        cancelled_at=datetime.utcnow(),
    ):
        raise _invalid(ride, RIDE_CANCELLED)
    _release_lease(db, prev_driver, ride.id)
    refunds = _refund_payments(db, ride)
    _count_transition(prev_status, RIDE_CANCELLED)
    record_event(db, "ride.cancelled", actor.user_id, {"ride_id": str(ride.id), "reason": reason, "refunds": len(refunds)})
    logger.info("ride cancelled id=%s by=%s refunds=%s", ride.id, actor.user_id, len(refunds))
    return CancellationResult(ride=ride, refunds=refunds)


def update_status(db: Session, ride_id, new_status: str, actor: ActorContext):
    """Admin status change, validated against the transition table."""
    if not actor.is_admin:
        raise AuthorizationError("Admin only")
    if new_status not in RIDE_STATUSES:
        raise ValidationError(f"Unknown status: {new_status}", code="invalid_status")
    ride = get_ride(db, ride_id)
    if not can_transition(ride.status, new_status):
        if new_status == RIDE_COMPLETED and ride.status == RIDE_COMPLETED:
            raise ConflictError("Ride already completed", code="already_completed")
        raise _invalid(ride, new_status)
    if new_status == RIDE_COMPLETED:
        return complete(db, ride.id, actor).ride
    if new_status == RIDE_CANCELLED:
        return cancel(db, ride.id, actor).ride
    if new_status == RIDE_IN_PROGRESS:
        return start(db, ride.id, actor)
    raise ValidationError("Assigning a ride requires a driver; use assign", code="assign_required")


def rate(db: Session, ride_id, actor: ActorContext, rating: int) -> Ride:
    ride = get_ride(db, ride_id)
    if actor.user_id != ride.passenger_id:
        raise AuthorizationError("Only the passenger can rate the ride")
    if not 1 <= int(rating) <= 5:
        raise ValidationError("rating must be between 1 and 5")
    if ride.status != RIDE_COMPLETED:
        raise ConflictError("Ride is not completed", code="ride_not_completed")
    won = db.execute(
        update(Ride)
        .where(Ride.id == ride.id, Ride.rating.is_(None))
        .values(rating=int(rating), updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount == 1
    if not won:
        raise ConflictError("Ride already rated", code="already_rated")
    db.refresh(ride)
    return ride


def receipt(db: Session, ride_id, actor: ActorContext) -> Receipt:
    ride = get_ride_for(db, ride_id, actor)
    snapshot = db.execute(select(FareSnapshot).where(FareSnapshot.ride_id == ride.id)).scalars().first()
    fare = int(snapshot.final_amount_cents if snapshot is not None else (ride.fare_cents or 0))
    entries = db.execute(
        select(Transaction).where(
            Transaction.ride_id == ride.id,
            Transaction.idempotency_key.in_([f"ride:{ride.id}:completion:debit", f"ride:{ride.id}:completion:credit"]),
        )
    ).scalars().all()
    payment = next((t for t in entries if t.type == "debit"), None)
    payout = next((t for t in entries if t.type == "credit"), None)
    if payout is not None:
        net = int(payout.amount_cents)
        commission = fare - net
    else:
        net, commission = fares.split_fare(fare)
    return Receipt(
        ride=ride,
        snapshot=snapshot,
        fare_cents=fare,
        platform_commission_cents=commission,
        net_driver_payout_cents=net,
        payment=payment,
        payout=payout,
    )


def _visible_to(q, actor: ActorContext):
    if actor.is_admin:
        return q
    return q.where(or_(Ride.passenger_id == actor.user_id, Ride.driver_id == actor.user_id))


def list_rides(db: Session, actor: ActorContext, status: Optional[str] = None, limit: int = 50, offset: int = 0) -> list[Ride]:
    q = _visible_to(select(Ride), actor)
    if status:
        q = q.where(Ride.status == status)
    q = q.order_by(Ride.created_at.desc()).offset(max(0, offset)).limit(max(1, min(limit, settings.LIST_LIMIT_MAX)))
    return db.execute(q).scalars().all()


def active_rides(db: Session, actor: ActorContext) -> list[Ride]:
    q = _visible_to(select(Ride), actor).where(Ride.status.in_(OPEN_STATUSES)).order_by(Ride.created_at.desc())
    return db.execute(q.limit(settings.LIST_LIMIT_MAX)).scalars().all()


def recent_rides(db: Session, actor: ActorContext, limit: int = 10) -> list[Ride]:
    limit = max(1, min(int(limit or 10), settings.RECENT_RIDES_MAX))
    q = _visible_to(select(Ride), actor).order_by(Ride.created_at.desc()).limit(limit)
    return db.execute(q).scalars().all()
