"""Trigger payment mapping reconciliation and print the result JSON."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for mapping reconciliation runs."""

    parser = argparse.ArgumentParser(description="Restore payment-to-provider mappings missing from the store.")
    parser.add_argument("--orchestrator-url", default="http://localhost:8000")
    parser.add_argument("--limit", type=int, default=500)
    args = parser.parse_args()

    resp = httpx.post(f"{args.orchestrator_url}/reconciliation/mappings", params={"limit": args.limit}, timeout=30.0)
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
