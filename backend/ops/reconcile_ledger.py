from __future__ import annotations

import argparse
import json
import sys


def _bootstrap_app():
    from campus_market import create_app

    app = create_app()
    app.app_context().push()
    return app


def main():
    parser = argparse.ArgumentParser(description="Recompute wallet and escrow balances from the ledger and report drift.")
    parser.add_argument("--since", default="", help="Optional since marker for report metadata.")
    args = parser.parse_args()

    _bootstrap_app()
    from campus_market.services.reconciliation_service import recompute_wallet_balances

    summary = recompute_wallet_balances(since=(args.since or None))
    print(json.dumps(summary, indent=2))
    return 0 if int(summary.get("drift_count") or 0) == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
