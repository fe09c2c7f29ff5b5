"""Ledger store: transactions, wallet balances and the pending-entry sweep.

Entries are written ``pending`` first and flipped to ``completed`` with a
conditional update; the wallet increment is applied only by the call that
actually flipped the row, so a replay or a concurrent finalize never double
counts. Balances change exclusively through ``adjust_wallet``, which issues an
in-place ``balance = balance + delta`` update.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from prometheus_client import Counter
from sqlalchemy import case, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from .config import settings
from .errors import InternalError, ValidationError
from .models import TX_TYPES, Transaction, Wallet, default_uuid
from .utils.metrics import inc


logger = logging.getLogger("ride_ledger.ledger")

LEDGER_POSTINGS = Counter("rides_ledger_postings_total", "Ledger entries settled", ["type", "status"])
LEDGER_SWEEPS = Counter("rides_ledger_sweep_total", "Pending ledger entries handled by the sweep", ["result"])

CREDIT_TYPES = ("credit", "refund", "wallet_topup")
DEBIT_TYPES = ("debit", "payment")


def wallet_delta(tx_type: str, amount_cents: int) -> int:
    if tx_type in CREDIT_TYPES:
        return int(amount_cents)
    if tx_type in DEBIT_TYPES:
        return -int(amount_cents)
    # payout entries record money already credited to the driver wallet
    return 0


@dataclass
class LedgerLeg:
    user_id: uuid.UUID
    amount_cents: int
    type: str
    ride_id: Optional[uuid.UUID] = None
    payout_id: Optional[uuid.UUID] = None
    payment_method: Optional[str] = None
    reference: Optional[str] = None
    description: Optional[str] = None
    meta: Optional[dict] = None


@dataclass
class SweepResult:
    finalized_pairs: int = 0
    failed_pairs: int = 0
    failed_entries: int = 0


@dataclass
class WalletMismatch:
    user_id: uuid.UUID
    balance_cents: int
    ledger_sum_cents: int


@dataclass
class PairResult:
    debit: Transaction
    credit: Transaction
    replayed: bool = False


def _validate_leg(leg: LedgerLeg) -> None:
    if leg.type not in TX_TYPES:
        raise ValidationError(f"Unknown transaction type: {leg.type}")
    if leg.amount_cents is None or int(leg.amount_cents) < 0:
        raise ValidationError("amount_cents must be >= 0")


# Wallets

def _insert_wallet_if_absent(db: Session, user_id) -> None:
    now = datetime.utcnow()
    values = dict(
        id=default_uuid(),
        user_id=user_id,
        balance_cents=0,
        currency_code=settings.DEFAULT_CURRENCY,
        created_at=now,
        updated_at=now,
    )
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(Wallet).values(**values).on_conflict_do_nothing(index_elements=["user_id"])
    elif dialect == "sqlite":
        stmt = sqlite_insert(Wallet).values(**values).on_conflict_do_nothing(index_elements=["user_id"])
    else:
        if db.execute(select(Wallet.id).where(Wallet.user_id == user_id)).first() is not None:
            return
        db.add(Wallet(**values))
        db.flush()
        return
    db.execute(stmt)


def _increment(db: Session, user_id, delta: int) -> int:
    return db.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id)
        .values(balance_cents=Wallet.balance_cents + int(delta), updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount


def adjust_wallet(db: Session, user_id, delta: int) -> int:
    """Apply ``delta`` to the user's wallet in place and return the new balance."""
    if _increment(db, user_id, delta) == 0:
        _insert_wallet_if_absent(db, user_id)
        if _increment(db, user_id, delta) == 0:
            raise InternalError("Wallet could not be created", code="wallet_unavailable")
    balance = db.execute(select(Wallet.balance_cents).where(Wallet.user_id == user_id)).scalar_one()
    logger.debug("wallet adjusted user=%s delta=%s balance=%s", user_id, delta, balance)
    return int(balance)


def get_wallet(db: Session, user_id) -> Optional[Wallet]:
    return db.execute(
        select(Wallet).where(Wallet.user_id == user_id).execution_options(populate_existing=True)
    ).scalars().first()


# Entries

def _by_key(db: Session, key: str) -> Optional[Transaction]:
    return db.execute(select(Transaction).where(Transaction.idempotency_key == key)).scalars().first()


def _new_entry(leg: LedgerLeg, pair_id=None, idempotency_key: Optional[str] = None) -> Transaction:
    now = datetime.utcnow()
    return Transaction(
        user_id=leg.user_id,
        ride_id=leg.ride_id,
        payout_id=leg.payout_id,
        pair_id=pair_id,
        amount_cents=int(leg.amount_cents),
        type=leg.type,
        status="pending",
        payment_method=leg.payment_method,
        reference=leg.reference,
        description=leg.description,
        meta=leg.meta,
        idempotency_key=idempotency_key,
        created_at=now,
        updated_at=now,
    )


def finalize(db: Session, tx: Transaction) -> bool:
    """Flip a pending entry to completed; apply its wallet effect if this call won."""
    flipped = db.execute(
        update(Transaction)
        .where(Transaction.id == tx.id, Transaction.status == "pending")
        .values(status="completed", updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount == 1
    if flipped:
        delta = wallet_delta(tx.type, tx.amount_cents)
        if delta:
            adjust_wallet(db, tx.user_id, delta)
        inc(LEDGER_POSTINGS, tx.type, "completed")
    db.refresh(tx)
    return flipped


def fail(db: Session, tx: Transaction, reason: Optional[str] = None) -> bool:
    values = {"status": "failed", "updated_at": datetime.utcnow()}
    if reason:
        meta = dict(tx.meta or {})
        meta["reason"] = reason
        values["meta"] = meta
    flipped = db.execute(
        update(Transaction)
        .where(Transaction.id == tx.id, Transaction.status == "pending")
        .values(**values)
        .execution_options(synchronize_session=False)
    ).rowcount == 1
    if flipped:
        inc(LEDGER_POSTINGS, tx.type, "failed")
    db.refresh(tx)
    return flipped


def post_entry(
    db: Session,
    leg: LedgerLeg,
    idempotency_key: Optional[str] = None,
    complete: bool = True,
) -> Transaction:
    """Write a single entry; ``complete=False`` leaves it pending for a later owner."""
    _validate_leg(leg)
    if idempotency_key:
        existing = _by_key(db, idempotency_key)
        if existing is not None:
            return existing
    tx = _new_entry(leg, idempotency_key=idempotency_key)
    db.add(tx)
    db.flush()
    if complete:
        finalize(db, tx)
    logger.info("ledger entry id=%s user=%s type=%s amount=%s status=%s", tx.id, tx.user_id, tx.type, tx.amount_cents, tx.status)
    return tx


def post_pair(db: Session, debit: LedgerLeg, credit: LedgerLeg, pair_key: str) -> PairResult:
    """Post a balanced debit/credit pair in two phases.

    Both rows are written pending with a shared ``pair_id``; only then are they
    finalized. Replaying ``pair_key`` returns the stored pair (finalizing it if
    an earlier attempt stopped between the phases).
    """
    _validate_leg(debit)
    _validate_leg(credit)
    debit_key, credit_key = f"{pair_key}:debit", f"{pair_key}:credit"

    tx_debit = _by_key(db, debit_key)
    tx_credit = _by_key(db, credit_key)
    replayed = tx_debit is not None and tx_credit is not None
    if not replayed:
        if tx_debit is not None or tx_credit is not None:
            # Half-written pair from an earlier attempt; let the sweep settle it
            raise ValidationError("Ledger pair is incomplete", code="ledger_pair_incomplete")
        pair_id = uuid.uuid4()
        tx_debit = _new_entry(debit, pair_id=pair_id, idempotency_key=debit_key)
        tx_credit = _new_entry(credit, pair_id=pair_id, idempotency_key=credit_key)
        db.add_all([tx_debit, tx_credit])
        db.flush()

    for tx in (tx_debit, tx_credit):
        if tx.status == "pending":
            finalize(db, tx)
    logger.info(
        "ledger pair key=%s debit=%s credit=%s amount=%s/%s replayed=%s",
        pair_key, tx_debit.id, tx_credit.id, tx_debit.amount_cents, tx_credit.amount_cents, replayed,
    )
    return PairResult(debit=tx_debit, credit=tx_credit, replayed=replayed)


def list_transactions(
    db: Session,
    user_id=None,
    ride_id=None,
    payout_id=None,
    type: Optional[str] = None,
    status: Optional[str] = None,
    types: Optional[Iterable[str]] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Transaction]:
    q = select(Transaction)
    if user_id is not None:
        q = q.where(Transaction.user_id == user_id)
    if ride_id is not None:
        q = q.where(Transaction.ride_id == ride_id)
    if payout_id is not None:
        q = q.where(Transaction.payout_id == payout_id)
    if type:
        q = q.where(Transaction.type == type)
    if types:
        q = q.where(Transaction.type.in_(tuple(types)))
    if status:
        q = q.where(Transaction.status == status)
    if since is not None:
        q = q.where(Transaction.created_at >= since)
    if until is not None:
        q = q.where(Transaction.created_at <= until)
    q = q.order_by(Transaction.created_at.desc()).offset(max(0, offset)).limit(max(1, min(limit, settings.LIST_LIMIT_MAX)))
    return db.execute(q).scalars().all()


# Recovery

def sweep_pending(db: Session, older_than_secs: Optional[int] = None, limit: Optional[int] = None) -> SweepResult:
    """Settle pending entries left behind by interrupted postings.

    Pairs with both legs present are rolled forward; pairs missing a leg and
    stray single entries are failed. Pending payout entries belong to their
    payout and are left alone.
    """
    older_than = settings.LEDGER_PENDING_TIMEOUT_SECS if older_than_secs is None else int(older_than_secs)
    cutoff = datetime.utcnow() - timedelta(seconds=max(0, older_than))
    stale = db.execute(
        select(Transaction)
        .where(Transaction.status == "pending", Transaction.created_at <= cutoff)
        # Standalone payout entries stay pending until their payout is processed
        .where(or_(Transaction.pair_id.is_not(None), Transaction.type != "payout"))
        .order_by(Transaction.created_at)
        .limit(limit or settings.LEDGER_SWEEP_BATCH)
    ).scalars().all()

    result = SweepResult()
    seen_pairs = set()
    for tx in stale:
        if tx.pair_id is None:
            if fail(db, tx, reason="sweep_orphan"):
                result.failed_entries += 1
                inc(LEDGER_SWEEPS, "failed_entry")
            continue
        if tx.pair_id in seen_pairs:
            continue
        seen_pairs.add(tx.pair_id)
        legs = db.execute(select(Transaction).where(Transaction.pair_id == tx.pair_id)).scalars().all()
        complete_pair = len(legs) == 2 and all(leg.status != "failed" for leg in legs)
        for leg in legs:
            if leg.status != "pending":
                continue
            if complete_pair:
                finalize(db, leg)
            else:
                fail(db, leg, reason="sweep_incomplete_pair")
        if complete_pair:
            result.finalized_pairs += 1
            inc(LEDGER_SWEEPS, "finalized_pair")
        else:
            result.failed_pairs += 1
            inc(LEDGER_SWEEPS, "failed_pair")
    if stale:
        logger.warning(
            "ledger sweep finalized_pairs=%s failed_pairs=%s failed_entries=%s",
            result.finalized_pairs, result.failed_pairs, result.failed_entries,
        )
    return result


def ledger_sums(db: Session) -> dict:
    signed = case(
        (Transaction.type.in_(CREDIT_TYPES), Transaction.amount_cents),
        (Transaction.type.in_(DEBIT_TYPES), -Transaction.amount_cents),
        else_=0,
    )
    rows = db.execute(
        select(Transaction.user_id, func.coalesce(func.sum(signed), 0))
        .where(Transaction.status == "completed")
        .group_by(Transaction.user_id)
    ).all()
    return {user_id: int(total) for user_id, total in rows}


def check_wallet_balances(db: Session) -> list[WalletMismatch]:
    """Compare each wallet balance with the signed sum of its completed entries."""
    sums = ledger_sums(db)
    mismatches: list[WalletMismatch] = []
    balances = {user_id: int(bal) for user_id, bal in db.execute(select(Wallet.user_id, Wallet.balance_cents)).all()}
    for user_id in set(sums) | set(balances):
        bal = balances.get(user_id, 0)
        total = sums.get(user_id, 0)
        if bal != total:
            mismatches.append(WalletMismatch(user_id=user_id, balance_cents=bal, ledger_sum_cents=total))
    if mismatches:
        logger.error("wallet reconciliation found %s mismatches", len(mismatches))
    return mismatches
