import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import ledger
from ..auth import ActorContext, require_admin
from ..database import get_db
from ..errors import ConflictError, NotFoundError, ValidationError
from ..models import Ride, Transaction, User
from ..schemas import Envelope, ManualEntryOut, TransactionIn, TransactionOut, WalletOut, ok
from ..utils.audit import record_event
from ..utils.ids import as_uuid


router = APIRouter(prefix="/transactions", tags=["transactions"])
logger = logging.getLogger("ride_ledger.transactions")


def _entry_out(db: Session, tx: Transaction) -> ManualEntryOut:
    w = ledger.get_wallet(db, tx.user_id)
    return ManualEntryOut(
        tx=TransactionOut.from_model(tx),
        wallet=WalletOut(
            user_id=str(tx.user_id),
            balance_cents=int(w.balance_cents) if w else 0,
            currency=w.currency_code if w else None,
            updated_at=w.updated_at if w else None,
        ),
    )


@router.get("", response_model=Envelope[List[TransactionOut]])
def list_transactions(
    user_id: Optional[str] = None,
    ride_id: Optional[str] = None,
    payout_id: Optional[str] = None,
    type: Optional[str] = None,
    status: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    actor: ActorContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    rows = ledger.list_transactions(
        db,
        user_id=as_uuid(user_id, "user_id") if user_id else None,
        ride_id=as_uuid(ride_id, "ride_id") if ride_id else None,
        payout_id=as_uuid(payout_id, "payout_id") if payout_id else None,
        type=type,
        status=status,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )
    return ok([TransactionOut.from_model(t) for t in rows])


@router.post("", response_model=Envelope[ManualEntryOut])
def create_transaction(
    payload: TransactionIn,
    actor: ActorContext = Depends(require_admin),
    db: Session = Depends(get_db),
    idempotency_key_hdr: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    user_id = as_uuid(payload.user_id, "user_id")
    if db.get(User, user_id) is None:
        raise NotFoundError("User not found", code="user_not_found")
    ride_id = as_uuid(payload.ride_id, "ride_id") if payload.ride_id else None
    if ride_id is not None and db.get(Ride, ride_id) is None:
        raise NotFoundError("Ride not found", code="ride_not_found")
    key = idempotency_key_hdr or payload.idempotency_key
    if key:
        if len(key) > 80:
            raise ValidationError("Idempotency-Key is too long", code="invalid_idempotency_key")
        key = f"manual:{key}"
        existing = db.query(Transaction).filter(Transaction.idempotency_key == key).one_or_none()
        if existing is not None:
            if existing.user_id != user_id or existing.amount_cents != payload.amount_cents or existing.type != payload.type:
                raise ConflictError("Idempotency key reused with a different payload", code="idempotency_conflict")
            return ok(_entry_out(db, existing), "Transaction already recorded")

    leg = ledger.LedgerLeg(
        user_id=user_id,
        amount_cents=payload.amount_cents,
        type=payload.type,
        ride_id=ride_id,
        payment_method=payload.payment_method,
        reference=payload.reference,
        description=payload.description,
        meta={"source": "manual"},
    )
    try:
        tx = ledger.post_entry(db, leg, idempotency_key=key)
    except IntegrityError:
        # Lost a race on the idempotency key; return the winner's entry
        db.rollback()
        tx = db.query(Transaction).filter(Transaction.idempotency_key == key).one_or_none() if key else None
        if tx is None:
            raise
        return ok(_entry_out(db, tx), "Transaction already recorded")
    record_event(db, "transaction.manual", actor.user_id, {"tx_id": str(tx.id), "type": tx.type, "amount_cents": tx.amount_cents})
    logger.info("manual transaction id=%s user=%s type=%s amount=%s", tx.id, tx.user_id, tx.type, tx.amount_cents)
    return ok(_entry_out(db, tx), "Transaction recorded")
