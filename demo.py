#!/usr/bin/env python3
"""
AEC Perpetual Engine End-to-End Demo

Walks the full tokenomics loop through the REST API:
1. Deploy a protocol on a simulation clock (in-process via Flask test client)
2. Fund a staker and stake into the token pool
3. Accrue transfer tax and run a processing cycle
4. Advance time, let the endowment release and run another cycle
5. Show the staker's earnings, claim them and print the protocol overview

Usage:
    python demo.py
"""

import json
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "src"))

# Read by api.utils at import time
os.environ.setdefault("AEC_REQUIRE_AUTH", "false")

from api import create_app  # noqa: E402
from clock import ManualClock  # noqa: E402
from token_ledger import ONE_TOKEN  # noqa: E402

STAKER = "0x000000000000000000000000000000000000a11c"
KEEPER = "0x000000000000000000000000000000000000beef"
DAY = 86_400


def section(title):
    print(f"\n{'=' * 60}")
    print(f"  {title}")
    print(f"{'=' * 60}\n")


def pretty(data):
    print(json.dumps(data, indent=2, default=str))


def aec(units) -> str:
    return f"{int(units) / ONE_TOKEN:,.4f} AEC"


def post(client, url, payload):
    resp = client.post(url, json=payload)
    data = resp.get_json()
    if resp.status_code >= 400:
        print(f"  {url} -> {resp.status_code}: {data.get('error')}")
    return data


def show_cycle(report):
    if not report.get("processed"):
        print(f"Cycle skipped: {report.get('skip_reason')}")
        return
    liquidity = report.get("liquidity") or {}
    print(f"Endowment released: {aec(report['endowment_released'])}")
    print(f"New taxes:          {aec(report['new_taxes'])}")
    print(f"Caller reward:      {aec(report['caller_reward'])}")
    print(f"Burned:             {aec(report['burned'])}")
    print(f"Liquidity:          {liquidity.get('strategy') or liquidity.get('reason')}")
    for pool, amount in report["refill_distributed"].items():
        print(f"Refill {pool:<12} {aec(amount)}")


def main():
    print("AEC Perpetual Engine - End-to-End Demo")
    print("=" * 60)

    # ──────────────────────────────────────────────────────────
    # Step 0: Deploy
    # ──────────────────────────────────────────────────────────
    section("Step 0: Deploy protocol")

    app = create_app(clock=ManualClock(), testing=True)
    client = app.test_client()

    health = client.get("/health").get_json()
    print(f"Health: {health['status']}")
    endowment = client.get("/endowment/status").get_json()
    print(f"Endowment sealed: {aec(endowment['current_balance'])}")

    # ──────────────────────────────────────────────────────────
    # Step 1: Stake
    # ──────────────────────────────────────────────────────────
    section("Step 1: Fund and stake")

    amount = str(10_000 * ONE_TOKEN)
    post(client, "/simulation/faucet", {"account": STAKER, "aec": amount})
    post(client, "/simulation/approve", {"account": STAKER, "pool": "token", "amount": amount})
    position = post(client, "/staking/token/stake",
                    {"account": STAKER, "amount": amount, "tier": 2})
    print(f"Staked {aec(position['amount'])} at tier {position['tier']}, "
          f"weight {aec(position['weighted_amount'])}")

    # ──────────────────────────────────────────────────────────
    # Step 2: First cycle from transfer tax
    # ──────────────────────────────────────────────────────────
    section("Step 2: Accrue tax and run a cycle")

    post(client, "/simulation/tax", {"amount": str(50_000 * ONE_TOKEN)})
    preview = client.get("/engine/preview").get_json()
    print(f"Preview would process: {preview['would_process']}")
    show_cycle(post(client, "/engine/cycle", {"caller": KEEPER}))

    # ──────────────────────────────────────────────────────────
    # Step 3: Endowment-driven cycle
    # ──────────────────────────────────────────────────────────
    section("Step 3: Advance 30 days and run again")

    post(client, "/simulation/advance", {"seconds": 30 * DAY})
    show_cycle(post(client, "/engine/cycle", {"caller": KEEPER}))

    # ──────────────────────────────────────────────────────────
    # Step 4: Earnings
    # ──────────────────────────────────────────────────────────
    section("Step 4: Staker earnings")

    post(client, "/simulation/advance", {"seconds": 7 * DAY})
    info = client.get(f"/staking/token/positions/{STAKER}").get_json()
    print(f"Earned after a week: {aec(info['earned'])}")
    claimed = post(client, "/staking/token/claim", {"account": STAKER})
    print(f"Claimed: {aec(claimed['reward'])}")

    # ──────────────────────────────────────────────────────────
    # Step 5: Overview
    # ──────────────────────────────────────────────────────────
    section("Step 5: Protocol overview")

    overview = client.get("/protocol/overview").get_json()
    print(f"AEC burned total:   {aec(overview['aec']['total_burned'])}")
    print(f"Endowment balance:  {aec(overview['endowment']['current_balance'])}")
    print(f"Cycles processed:   {overview['engine']['cycle_count']}")
    print("\nPair:")
    pretty(overview["pair"])
    projection = client.get("/endowment/projection?periods=120").get_json()
    print(f"\nEndowment after 10 years: {aec(projection['projected_balance'])} "
          f"(sustainable: {projection['sustainable']})")


if __name__ == "__main__":
    main()
