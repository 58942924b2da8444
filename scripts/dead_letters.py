"""List, retry or resolve orchestrator dead letters through the ops API."""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint for dead-letter operations."""

    parser = argparse.ArgumentParser(description="Operate on orchestrator dead-letter envelopes.")
    parser.add_argument("--orchestrator-url", default="http://localhost:8001")
    parser.add_argument("--api-key", default=os.getenv("OPS_API_KEY", "change-me"))
    sub = parser.add_subparsers(dest="command", required=True)

    list_cmd = sub.add_parser("list", help="List envelopes")
    list_cmd.add_argument("--status", choices=["PENDING_RETRY", "MANUAL_REVIEW", "RESOLVED"], default=None)
    list_cmd.add_argument("--limit", type=int, default=100)

    retry_cmd = sub.add_parser("retry", help="Re-arm an envelope for immediate retry")
    retry_cmd.add_argument("envelope_id")

    resolve_cmd = sub.add_parser("resolve", help="Finalize the transaction behind an envelope")
    resolve_cmd.add_argument("envelope_id")
    resolve_cmd.add_argument("--final-status", choices=["REJECTED", "FAILED"], required=True)
    resolve_cmd.add_argument("--resolved-by", required=True)
    args = parser.parse_args()

    headers = {"x-api-key": args.api_key}
    base = f"{args.orchestrator_url}/ops/dead-letters"
    with httpx.Client(timeout=10.0, headers=headers) as client:
        if args.command == "list":
            params = {"limit": args.limit}
            if args.status:
                params["status"] = args.status
            resp = client.get(base, params=params)
        elif args.command == "retry":
            resp = client.post(f"{base}/{args.envelope_id}/retry")
        else:
            resp = client.post(
                f"{base}/{args.envelope_id}/resolve",
                json={"final_status": args.final_status, "resolved_by": args.resolved_by},
            )
    if resp.status_code >= 400:
        raise SystemExit(f"request failed status={resp.status_code} body={resp.text}")
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
