"""Drive charge traffic (and optional partial refunds) at the orchestrator.

Currencies are drawn from the routing table so every sandbox provider gets
load; the summary breaks results down by provider and status code.

    python scripts/load_test.py --total 2000 --concurrency 200 --refund-ratio 0.2
"""

import argparse
import asyncio
import random
import statistics
import time
from collections import Counter
from uuid import uuid4

import httpx

CURRENCIES = ["USD", "EUR", "GBP", "IDR", "PHP", "THB", "INR", "HKD", "SGD"]


async def charge_and_maybe_refund(client: httpx.AsyncClient, refund_ratio: float) -> dict:
    payload = {
        "customer_id": f"cus_load_{random.randint(1, 500)}",
        "amount": random.randint(100, 250_000),
        "currency": random.choice(CURRENCIES),
        "payment_method": "pm_card",
        "idempotency_key": f"load-{uuid4()}",
    }
    started = time.perf_counter()
    try:
        resp = await client.post("/payments/charges", json=payload, headers={"x-trace-id": str(uuid4())})
    except httpx.HTTPError as exc:
        return {"status": 599, "ms": (time.perf_counter() - started) * 1000, "provider": type(exc).__name__}
    outcome = {
        "status": resp.status_code,
        "ms": (time.perf_counter() - started) * 1000,
        "provider": resp.json().get("provider_name", "-") if resp.status_code == 201 else "-",
    }
    if resp.status_code == 201 and random.random() < refund_ratio:
        refund = await client.post(
            "/payments/refunds",
            json={"payment_id": resp.json()["payment_id"], "amount": max(1, payload["amount"] // 2)},
        )
        outcome["refund_status"] = refund.status_code
    return outcome


async def run(total: int, concurrency: int, base_url: str, refund_ratio: float) -> None:
    sem = asyncio.Semaphore(concurrency)

    async with httpx.AsyncClient(base_url=base_url, timeout=30.0) as client:

        async def bounded() -> dict:
            async with sem:
                return await charge_and_maybe_refund(client, refund_ratio)

        results = await asyncio.gather(*(bounded() for _ in range(total)))

    latencies = sorted(r["ms"] for r in results)
    cuts = statistics.quantiles(latencies, n=100) if len(latencies) > 1 else latencies * 99
    charged = sum(1 for r in results if r["status"] == 201)
    print(f"charges total={total} succeeded={charged} error_rate={(total - charged) / total * 100:.2f}%")
    print(f"status_codes={dict(sorted(Counter(r['status'] for r in results).items()))}")
    print(f"by_provider={dict(Counter(r['provider'] for r in results if r['status'] == 201))}")
    refunds = Counter(r["refund_status"] for r in results if "refund_status" in r)
    if refunds:
        print(f"refund_status_codes={dict(sorted(refunds.items()))}")
    print(f"p50_ms={cuts[49]:.2f} p95_ms={cuts[94]:.2f} p99_ms={cuts[98]:.2f} avg_ms={statistics.mean(latencies):.2f}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--total", type=int, default=1000)
    parser.add_argument("--concurrency", type=int, default=100)
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--refund-ratio", type=float, default=0.0)
    args = parser.parse_args()
    asyncio.run(run(args.total, args.concurrency, args.base_url, args.refund_ratio))
