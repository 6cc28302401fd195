#!/usr/bin/env python3
"""Report wallets whose balance differs from the sum of their ledger entries."""
import argparse

from panel.core.database import SessionLocal
from panel.models import Wallet
from panel.repositories import ledger


def find_mismatches(db) -> list[tuple[str, int, int]]:
    mismatches = []
    for wallet in db.query(Wallet).order_by(Wallet.id).all():
        expected = ledger.balance_from_entries(db, wallet.owner_id)
        if expected != wallet.balance:
            mismatches.append((wallet.owner_id, wallet.balance, expected))
    return mismatches


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.parse_args()

    db = SessionLocal()
    try:
        mismatches = find_mismatches(db)
    finally:
        db.close()

    for owner_id, balance, expected in mismatches:
        print(f"MISMATCH: {owner_id} balance={balance} ledger_sum={expected}")
    if mismatches:
        raise SystemExit(1)
    print("OK: every wallet balance matches its ledger")


if __name__ == "__main__":
    main()
