"""Driver payout requests and their reconciliation with the ledger.

A payout never moves wallet balances: the driver wallet was credited when the
ride completed, and ``available_balance`` subtracts outstanding and paid
payouts from it. Processing a payout only settles its linked payout entries.
"""

import logging
from datetime import datetime
from typing import Optional

from prometheus_client import Counter
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from . import ledger
from .auth import ActorContext
from .config import settings
from .errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .models import DriverPayout, PayoutMethod, Transaction, User, Wallet
from .utils.audit import record_event
from .utils.metrics import inc


logger = logging.getLogger("ride_ledger.payouts")

PAYOUT_EVENTS = Counter("rides_payout_events_total", "Payout lifecycle events", ["action", "status"])

OUTSTANDING_STATUSES = ("pending", "approved", "processed")
OPEN_STATUSES = ("pending", "approved")
OUTCOMES = ("processed", "failed")


def _require_admin(actor: ActorContext) -> None:
    if not actor.is_admin:
        raise AuthorizationError("Admin only")


def _require_driver(actor: ActorContext) -> None:
    if not actor.is_driver:
        raise AuthorizationError("Driver only")


def available_balance(db: Session, driver_id) -> int:
    wallet = db.execute(select(Wallet.balance_cents).where(Wallet.user_id == driver_id)).scalar()
    committed = db.execute(
        select(func.coalesce(func.sum(DriverPayout.amount_cents), 0)).where(
            DriverPayout.driver_id == driver_id, DriverPayout.status.in_(OUTSTANDING_STATUSES)
        )
    ).scalar()
    return int(wallet or 0) - int(committed or 0)


def get_payout(db: Session, payout_id) -> DriverPayout:
    payout = db.get(DriverPayout, payout_id, populate_existing=True)
    if payout is None:
        raise NotFoundError("Payout not found", code="payout_not_found")
    return payout


# Methods

def list_methods(db: Session, actor: ActorContext) -> list[PayoutMethod]:
    _require_driver(actor)
    return db.execute(
        select(PayoutMethod).where(PayoutMethod.driver_id == actor.user_id).order_by(PayoutMethod.created_at.desc())
    ).scalars().all()


def _own_method(db: Session, actor: ActorContext, method_id) -> PayoutMethod:
    method = db.get(PayoutMethod, method_id)
    if method is None or method.driver_id != actor.user_id:
        raise NotFoundError("Payout method not found", code="payout_method_not_found")
    return method


def add_method(db: Session, actor: ActorContext, type: str, label: Optional[str] = None, details: Optional[dict] = None) -> PayoutMethod:
    _require_driver(actor)
    method = PayoutMethod(driver_id=actor.user_id, type=type, label=label, details=details or None, verified=False)
    db.add(method)
    db.flush()
    record_event(db, "payout_method.added", actor.user_id, {"method_id": str(method.id), "type": type})
    return method


def update_method(
    db: Session, actor: ActorContext, method_id, label: Optional[str] = None, details: Optional[dict] = None
) -> PayoutMethod:
    _require_driver(actor)
    method = _own_method(db, actor, method_id)
    if label is not None:
        method.label = label
    if details is not None and details != method.details:
        # New destination needs a fresh check
        method.details = details
        method.verified = False
    db.flush()
    return method


def verify_method(db: Session, method_id, actor: ActorContext) -> PayoutMethod:
    _require_admin(actor)
    method = db.get(PayoutMethod, method_id)
    if method is None:
        raise NotFoundError("Payout method not found", code="payout_method_not_found")
    if not method.verified:
        method.verified = True
        db.flush()
        record_event(db, "payout_method.verified", actor.user_id, {"method_id": str(method.id), "driver_id": str(method.driver_id)})
        logger.info("payout method verified id=%s driver=%s", method.id, method.driver_id)
    return method


def delete_method(db: Session, actor: ActorContext, method_id) -> None:
    _require_driver(actor)
    method = _own_method(db, actor, method_id)
    in_use = db.execute(select(DriverPayout.id).where(DriverPayout.method_id == method.id).limit(1)).first()
    if in_use is not None:
        raise ConflictError("Payout method is referenced by payouts", code="method_in_use")
    db.delete(method)
    db.flush()


# Payouts

def request_payout(
    db: Session,
    actor: ActorContext,
    method_id,
    amount_cents: Optional[int] = None,
    period: Optional[str] = None,
    notes: Optional[str] = None,
) -> tuple[DriverPayout, Transaction]:
    _require_driver(actor)
    if actor.is_suspended:
        raise AuthorizationError("Suspended drivers cannot request payouts", code="driver_suspended")
    method = _own_method(db, actor, method_id)

    # Serialize concurrent requests of one driver on the wallet row
    db.execute(select(Wallet.id).where(Wallet.user_id == actor.user_id).with_for_update()).first()
    available = available_balance(db, actor.user_id)
    amount = available if amount_cents is None else int(amount_cents)
    if amount <= 0 or amount > available:
        raise ValidationError(
            "Requested amount exceeds the available balance",
            code="insufficient_balance",
            details={"available_cents": available, "requested_cents": amount},
        )

    now = datetime.utcnow()
    payout = DriverPayout(
        driver_id=actor.user_id,
        amount_cents=amount,
        period=period,
        status="pending",
        kind="request",
        method_id=method.id,
        destination=dict(method.details) if method.details else None,
        notes=notes,
        created_at=now,
        updated_at=now,
    )
    db.add(payout)
    db.flush()
    tx = ledger.post_entry(
        db,
        ledger.LedgerLeg(
            user_id=actor.user_id,
            amount_cents=amount,
            type="payout",
            payout_id=payout.id,
            description="Driver payout",
            meta={"method_id": str(method.id), "source": "payout_request"},
        ),
        idempotency_key=f"payout:{payout.id}",
        complete=False,
    )
    inc(PAYOUT_EVENTS, "request", "pending")
    record_event(db, "payout.requested", actor.user_id, {"payout_id": str(payout.id), "amount_cents": amount})
    logger.info("payout requested id=%s driver=%s amount=%s", payout.id, actor.user_id, amount)
    return payout, tx


def approve(db: Session, payout_id, actor: ActorContext) -> DriverPayout:
    _require_admin(actor)
    payout = get_payout(db, payout_id)
    if payout.status == "approved":
        return payout
    won = db.execute(
        update(DriverPayout)
        .where(DriverPayout.id == payout.id, DriverPayout.status == "pending")
        .values(status="approved", updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount == 1
    db.refresh(payout)
    if not won and payout.status != "approved":
        raise ConflictError(f"Cannot approve a {payout.status} payout", code="invalid_payout_transition")
    if won:
        inc(PAYOUT_EVENTS, "approve", "approved")
        record_event(db, "payout.approved", actor.user_id, {"payout_id": str(payout.id)})
    return payout


def _settle_entries(db: Session, payout: DriverPayout, outcome: str, reason: Optional[str]) -> None:
    entries = db.execute(
        select(Transaction).where(Transaction.payout_id == payout.id, Transaction.status == "pending")
    ).scalars().all()
    for tx in entries:
        if outcome == "processed":
            ledger.finalize(db, tx)
        else:
            ledger.fail(db, tx, reason=reason)


def process(db: Session, payout_id, outcome: str, actor: ActorContext, reason: Optional[str] = None) -> DriverPayout:
    """Mark a payout processed or failed and settle its ledger entries.

    Repeating the outcome a payout already has returns it unchanged; asking
    for the other outcome is a conflict.
    """
    _require_admin(actor)
    if outcome not in OUTCOMES:
        raise ValidationError(f"Invalid outcome: {outcome}", code="invalid_outcome")
    payout = get_payout(db, payout_id)
    if payout.status not in OPEN_STATUSES:
        if payout.status == outcome:
            return payout
        raise ConflictError(f"Payout already {payout.status}", code="payout_already_final")

    now = datetime.utcnow()
    values = {"status": outcome, "updated_at": now}
    if outcome == "processed":
        values["processed_at"] = now
    else:
        reason = reason or "unknown"
        values["notes"] = f"{payout.notes}\nFailure: {reason}" if payout.notes else f"Failure: {reason}"
    won = db.execute(
        update(DriverPayout)
        .where(DriverPayout.id == payout.id, DriverPayout.status.in_(OPEN_STATUSES))
        .values(**values)
        .execution_options(synchronize_session=False)
    ).rowcount == 1
    db.refresh(payout)
    if not won:
        if payout.status == outcome:
            return payout
        raise ConflictError(f"Payout already {payout.status}", code="payout_already_final")

    _settle_entries(db, payout, outcome, reason)
    inc(PAYOUT_EVENTS, "process", outcome)
    record_event(db, f"payout.{outcome}", actor.user_id, {"payout_id": str(payout.id), "reason": reason})
    logger.info("payout %s id=%s driver=%s amount=%s", outcome, payout.id, payout.driver_id, payout.amount_cents)
    return payout


def manual_payout(
    db: Session,
    driver_id,
    amount_cents: int,
    actor: ActorContext,
    period: Optional[str] = None,
    notes: Optional[str] = None,
) -> tuple[DriverPayout, Transaction]:
    """Record a payout an admin settled outside the request flow."""
    _require_admin(actor)
    driver = db.get(User, driver_id)
    if driver is None or driver.role != "driver":
        raise NotFoundError("Driver not found", code="driver_not_found")
    amount = int(amount_cents)
    db.execute(select(Wallet.id).where(Wallet.user_id == driver.id).with_for_update()).first()
    available = available_balance(db, driver.id)
    if amount <= 0 or amount > available:
        raise ValidationError(
            "Payout exceeds the available balance",
            code="insufficient_balance",
            details={"available_cents": available, "requested_cents": amount},
        )
    now = datetime.utcnow()
    payout = DriverPayout(
        driver_id=driver.id,
        amount_cents=amount,
        period=period,
        status="processed",
        kind="manual",
        notes=notes,
        processed_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(payout)
    db.flush()
    tx = ledger.post_entry(
        db,
        ledger.LedgerLeg(
            user_id=driver.id,
            amount_cents=amount,
            type="payout",
            payout_id=payout.id,
            description="Manual driver payout",
            meta={"source": "manual_payout", "reason": notes},
        ),
        idempotency_key=f"payout:{payout.id}",
    )
    inc(PAYOUT_EVENTS, "manual", "processed")
    record_event(db, "payout.manual", actor.user_id, {"payout_id": str(payout.id), "driver_id": str(driver.id), "amount_cents": amount})
    logger.info("manual payout id=%s driver=%s amount=%s", payout.id, driver.id, amount)
    return payout, tx


def list_payouts(
    db: Session,
    actor: ActorContext,
    status: Optional[str] = None,
    driver_id=None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[DriverPayout]:
    _require_admin(actor)
    q = select(DriverPayout)
    if status:
        q = q.where(DriverPayout.status == status)
    if driver_id is not None:
        q = q.where(DriverPayout.driver_id == driver_id)
    if since is not None:
        q = q.where(DriverPayout.created_at >= since)
    if until is not None:
        q = q.where(DriverPayout.created_at <= until)
    q = q.order_by(DriverPayout.created_at.desc()).offset(max(0, offset)).limit(max(1, min(limit, settings.LIST_LIMIT_MAX)))
    return db.execute(q).scalars().all()


def driver_transactions(db: Session, actor: ActorContext, limit: int = 50, offset: int = 0) -> list[Transaction]:
    _require_driver(actor)
    return ledger.list_transactions(db, user_id=actor.user_id, limit=limit, offset=offset)
