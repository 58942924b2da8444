"""Fetch the ledger reconciliation report, or one transaction's postings."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for reconciliation checks; exits non-zero on imbalance."""

    parser = argparse.ArgumentParser(description="Fetch ledger reconciliation report endpoint.")
    parser.add_argument("--ledger-url", default="http://localhost:8004")
    parser.add_argument("--limit", type=int, default=1000)
    parser.add_argument("--transaction-id", default=None, help="Show postings for one transaction")
    args = parser.parse_args()

    if args.transaction_id:
        resp = httpx.get(f"{args.ledger_url}/reconciliation/{args.transaction_id}", timeout=10.0)
        resp.raise_for_status()
        report = resp.json()
        print(json.dumps(report, indent=2))
        if not report["balanced"]:
            raise SystemExit(1)
        return

    resp = httpx.get(f"{args.ledger_url}/reconciliation", params={"limit": args.limit}, timeout=10.0)
    resp.raise_for_status()
    report = resp.json()
    print(json.dumps(report, indent=2))
    if report["imbalanced_count"]:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
