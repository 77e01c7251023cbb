#!/usr/bin/env python3
"""Run one deposit reconciliation cycle and one staking accrual pass, then exit.

Usage: python scripts/reconcile_once.py [user_id]
"""

import sys

from custody.core.database import SessionLocal
from custody.core.logging import configure_logging
from custody.dependencies import get_reconciler
from custody.services import staking


def main():
    configure_logging()
    user_id = sys.argv[1] if len(sys.argv) > 1 else None
    report = get_reconciler().run_cycle(user_id=user_id)
    print(f"Reconciliation: {report}")
    if user_id is None:
        rewarded = staking.accrue_all(SessionLocal)
        print(f"Staking accrual: {rewarded} position(s) rewarded")


if __name__ == "__main__":
    main()
