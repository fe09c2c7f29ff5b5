#!/usr/bin/env python3
"""
Reconciliation checks for the ride ledger.

Usage:
  DB_URL=postgresql+psycopg2://... python scripts/reconcile.py [--fix-balances]

Checks:
- Wallet balances equal the signed sum of their completed ledger entries
- Completed rides have one completed pair: passenger debit = fare, driver credit <= fare
- Processed payouts have completed payout entries, failed payouts failed ones

With --fix-balances, updates wallet.balance_cents to match ledger sums.
"""
from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from typing import List

from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import sessionmaker

from ride_ledger.ledger import check_wallet_balances
from ride_ledger.models import DriverPayout, Ride, Transaction, Wallet


@dataclass
class Issue:
    subject_id: str
    problem: str
    details: str


def check_rides(session) -> List[Issue]:
    issues: List[Issue] = []
    rides = session.execute(select(Ride).where(Ride.status == "completed").order_by(Ride.created_at.asc())).scalars()
    for ride in rides:
        entries = session.execute(
            select(Transaction).where(Transaction.ride_id == ride.id, Transaction.pair_id.is_not(None))
        ).scalars().all()
        debits = [e for e in entries if e.type == "debit"]
        credits = [e for e in entries if e.type == "credit"]
        if len(debits) != 1 or len(credits) != 1:
            issues.append(Issue(str(ride.id), "pair_count", f"debits={len(debits)} credits={len(credits)}"))
            continue
        debit, credit = debits[0], credits[0]
        if debit.status != "completed" or credit.status != "completed":
            issues.append(Issue(str(ride.id), "pair_status", f"debit={debit.status} credit={credit.status}"))
        if int(debit.amount_cents) != int(ride.fare_cents or 0):
            issues.append(Issue(str(ride.id), "fare_mismatch", f"debit={debit.amount_cents} fare={ride.fare_cents}"))
        if int(credit.amount_cents) > int(debit.amount_cents):
            issues.append(Issue(str(ride.id), "credit_exceeds_fare", f"credit={credit.amount_cents} debit={debit.amount_cents}"))
    return issues


def check_payouts(session) -> List[Issue]:
    issues: List[Issue] = []
    expected = {"processed": "completed", "failed": "failed"}
    payouts = session.execute(select(DriverPayout).where(DriverPayout.status.in_(tuple(expected)))).scalars()
    for p in payouts:
        entries = session.execute(select(Transaction).where(Transaction.payout_id == p.id)).scalars().all()
        if not entries:
            issues.append(Issue(str(p.id), "no_entries", f"status={p.status}"))
            continue
        wrong = [e for e in entries if e.status != expected[p.status]]
        if wrong:
            issues.append(Issue(str(p.id), "entry_status", f"payout={p.status} entries={[e.status for e in wrong]}"))
    return issues


def main() -> int:
    db_url = os.getenv("DB_URL")
    if not db_url:
        print("Set DB_URL env to point to the rides database", file=sys.stderr)
        return 2
    fix = "--fix-balances" in sys.argv
    Session = sessionmaker(bind=create_engine(db_url))
    with Session() as session:
        mismatches = check_wallet_balances(session)
        issues = check_rides(session) + check_payouts(session)
        print(f"Wallet mismatches: {len(mismatches)}")
        for m in mismatches[:50]:
            print(f"  user={m.user_id} balance={m.balance_cents} ledger_sum={m.ledger_sum_cents}")
        if len(mismatches) > 50:
            print(f"  ... and {len(mismatches) - 50} more")

        print(f"Ride/payout issues: {len(issues)}")
        for i in issues[:50]:
            print(f"  id={i.subject_id} problem={i.problem} details={i.details}")
        if len(issues) > 50:
            print(f"  ... and {len(issues) - 50} more")

        if fix and mismatches:
            for m in mismatches:
                session.execute(update(Wallet).where(Wallet.user_id == m.user_id).values(balance_cents=m.ledger_sum_cents))
            session.commit()
            print(f"Updated {len(mismatches)} wallet balances to match ledger sums.")
    return 1 if (mismatches or issues) else 0


if __name__ == "__main__":
    raise SystemExit(main())
