from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import payouts as payout_service
from ..auth import ActorContext, get_current_actor, require_admin, require_driver
from ..database import get_db
from ..schemas import (
    DriverPayoutOut,
    Envelope,
    PayoutMethodIn,
    PayoutMethodOut,
    PayoutMethodUpdateIn,
    PayoutProcessIn,
    PayoutRequestIn,
    TransactionOut,
    ok,
)
from ..utils.ids import as_uuid


router = APIRouter(prefix="/payouts", tags=["payouts"])


@router.get("/methods", response_model=Envelope[List[PayoutMethodOut]])
def list_methods(actor: ActorContext = Depends(require_driver), db: Session = Depends(get_db)):
    return ok([PayoutMethodOut.from_model(m) for m in payout_service.list_methods(db, actor)])


@router.post("/methods", response_model=Envelope[PayoutMethodOut])
def add_method(payload: PayoutMethodIn, actor: ActorContext = Depends(require_driver), db: Session = Depends(get_db)):
    method = payout_service.add_method(
        db,
        actor,
        type=payload.type,
        label=payload.label,
        details=payload.details.model_dump(exclude_none=True) if payload.details else None,
    )
    return ok(PayoutMethodOut.from_model(method), "Payout method added")


@router.put("/methods/{method_id}", response_model=Envelope[PayoutMethodOut])
def update_method(method_id: str, payload: PayoutMethodUpdateIn, actor: ActorContext = Depends(require_driver), db: Session = Depends(get_db)):
    method = payout_service.update_method(
        db,
        actor,
        as_uuid(method_id, "method_id"),
        label=payload.label,
        details=payload.details.model_dump(exclude_none=True) if payload.details else None,
    )
    return ok(PayoutMethodOut.from_model(method), "Payout method updated")


@router.delete("/methods/{method_id}", response_model=Envelope[dict])
def delete_method(method_id: str, actor: ActorContext = Depends(require_driver), db: Session = Depends(get_db)):
    payout_service.delete_method(db, actor, as_uuid(method_id, "method_id"))
    return ok(None, "Payout method removed")


@router.post("/request", response_model=Envelope[DriverPayoutOut])
def request_payout(payload: PayoutRequestIn, actor: ActorContext = Depends(require_driver), db: Session = Depends(get_db)):
    payout, _tx = payout_service.request_payout(
        db,
        actor,
        method_id=as_uuid(payload.method_id, "method_id"),
        amount_cents=payload.amount_cents,
        period=payload.period,
        notes=payload.notes,
    )
    return ok(DriverPayoutOut.from_model(payout), "Payout requested")


@router.get("/transactions", response_model=Envelope[List[TransactionOut]])
def my_transactions(
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    actor: ActorContext = Depends(require_driver),
    db: Session = Depends(get_db),
):
    rows = payout_service.driver_transactions(db, actor, limit=limit, offset=offset)
    return ok([TransactionOut.from_model(t) for t in rows])


# Admin

@router.get("/admin/payouts", response_model=Envelope[List[DriverPayoutOut]])
def admin_list_payouts(
    status: Optional[str] = None,
    driver_id: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    actor: ActorContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    rows = payout_service.list_payouts(
        db,
        actor,
        status=status,
        driver_id=as_uuid(driver_id, "driver_id") if driver_id else None,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )
    return ok([DriverPayoutOut.from_model(p) for p in rows])


@router.post("/admin/payouts/{payout_id}/approve", response_model=Envelope[DriverPayoutOut])
def admin_approve_payout(payout_id: str, actor: ActorContext = Depends(require_admin), db: Session = Depends(get_db)):
    payout = payout_service.approve(db, as_uuid(payout_id, "payout_id"), actor)
    return ok(DriverPayoutOut.from_model(payout), "Payout approved")


@router.post("/admin/payouts/{payout_id}/process", response_model=Envelope[DriverPayoutOut])
def admin_process_payout(payout_id: str, payload: PayoutProcessIn, actor: ActorContext = Depends(require_admin), db: Session = Depends(get_db)):
    payout = payout_service.process(db, as_uuid(payout_id, "payout_id"), payload.action, actor, reason=payload.failure_reason)
    return ok(DriverPayoutOut.from_model(payout), f"Payout {payout.status}")


@router.post("/admin/methods/{method_id}/verify", response_model=Envelope[PayoutMethodOut])
def admin_verify_method(method_id: str, actor: ActorContext = Depends(require_admin), db: Session = Depends(get_db)):
    method = payout_service.verify_method(db, as_uuid(method_id, "method_id"), actor)
    return ok(PayoutMethodOut.from_model(method), "Payout method verified")
