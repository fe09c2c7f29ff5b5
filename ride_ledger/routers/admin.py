import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import ledger
from .. import payouts as payout_service
from ..auth import ActorContext, require_admin
from ..database import get_db
from ..errors import NotFoundError
from ..models import User
from ..schemas import (
    DriverOut,
    DriverPayoutOut,
    Envelope,
    ManualPayoutIn,
    ReconcileOut,
    SuspendIn,
    SweepOut,
    WalletMismatchOut,
    ok,
)
from ..utils.audit import record_event
from ..utils.ids import as_uuid


router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger("ride_ledger.admin")


def _driver(db: Session, driver_id: str) -> User:
    user = db.get(User, as_uuid(driver_id, "driver_id"))
    if user is None or user.role != "driver":
        raise NotFoundError("Driver not found", code="driver_not_found")
    return user


@router.post("/drivers/{driver_id}/suspend", response_model=Envelope[DriverOut])
def suspend_driver(
    driver_id: str,
    payload: Optional[SuspendIn] = None,
    actor: ActorContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    user = _driver(db, driver_id)
    user.is_suspended = True
    user.is_online = False
    db.flush()
    reason = payload.reason if payload else None
    record_event(db, "driver.suspended", actor.user_id, {"driver_id": str(user.id), "reason": reason})
    logger.info("driver suspended id=%s by=%s", user.id, actor.user_id)
    return ok(DriverOut.from_model(user), "Driver suspended")


@router.post("/drivers/{driver_id}/unsuspend", response_model=Envelope[DriverOut])
def unsuspend_driver(driver_id: str, actor: ActorContext = Depends(require_admin), db: Session = Depends(get_db)):
    user = _driver(db, driver_id)
    user.is_suspended = False
    db.flush()
    record_event(db, "driver.unsuspended", actor.user_id, {"driver_id": str(user.id)})
    return ok(DriverOut.from_model(user), "Driver reinstated")


@router.post("/drivers/{driver_id}/payout", response_model=Envelope[DriverPayoutOut])
def manual_driver_payout(driver_id: str, payload: ManualPayoutIn, actor: ActorContext = Depends(require_admin), db: Session = Depends(get_db)):
    payout, _tx = payout_service.manual_payout(
        db,
        as_uuid(driver_id, "driver_id"),
        payload.amount_cents,
        actor,
        period=payload.period,
        notes=payload.notes,
    )
    return ok(DriverPayoutOut.from_model(payout), "Payout recorded")


@router.post("/ledger/sweep", response_model=Envelope[SweepOut])
def sweep_ledger(
    older_than_secs: Optional[int] = Query(None, ge=0),
    actor: ActorContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    res = ledger.sweep_pending(db, older_than_secs=older_than_secs)
    record_event(db, "ledger.sweep", actor.user_id, {"finalized_pairs": res.finalized_pairs, "failed_pairs": res.failed_pairs, "failed_entries": res.failed_entries})
    return ok(SweepOut(finalized_pairs=res.finalized_pairs, failed_pairs=res.failed_pairs, failed_entries=res.failed_entries))


@router.get("/ledger/reconcile", response_model=Envelope[ReconcileOut])
def reconcile_ledger(actor: ActorContext = Depends(require_admin), db: Session = Depends(get_db)):
    mismatches = ledger.check_wallet_balances(db)
    return ok(
        ReconcileOut(
            ok=not mismatches,
            mismatches=[
                WalletMismatchOut(user_id=str(m.user_id), balance_cents=m.balance_cents, ledger_sum_cents=m.ledger_sum_cents)
                for m in mismatches
            ],
        )
    )
