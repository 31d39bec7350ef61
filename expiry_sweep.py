#!/usr/bin/env python3
"""
Expiry Sweep - Operator Trigger

Asks a running gateway to expire stale operations and transfers right now,
either once or repeatedly on an interval. Useful when the in-process
sweeper is disabled (EXPIRY_SWEEP_ENABLED=false) or after downtime.

Usage:
    python expiry_sweep.py --api-url http://localhost:8000 --actor-id ops-admin
    python expiry_sweep.py --interval 300
"""

import argparse
import time
from datetime import datetime
import requests

API_BASE_URL = "http://localhost:8000"


def sweep_once(api_url: str, actor_id: str, timeout: float) -> dict | None:
    """Call POST /maintenance/expire; returns the expired counts or None on failure"""
    try:
        response = requests.post(
            f"{api_url.rstrip('/')}/maintenance/expire",
            headers={"X-Actor-Id": actor_id, "X-Actor-Role": "admin"},
            timeout=timeout,
        )
    except requests.exceptions.Timeout:
        print("⏱️  Request timed out")
        return None
    except requests.exceptions.RequestException as e:
        print(f"❌ Error: {str(e)}")
        return None

    if response.status_code != 200:
        print(f"❌ API Error: {response.status_code}")
        print(f"   {response.text}")
        return None

    return response.json()["expired"]


def report(counts: dict) -> None:
    print(f"[{datetime.now().strftime('%Y-%m-%d %H:%M:%S')}] "
          f"expired operations: {counts['operations']}, "
          f"expired transfers: {counts['transfers']}")


def main():
    parser = argparse.ArgumentParser(
        description="Trigger expiry of stale approval requests on a running gateway"
    )
    parser.add_argument(
        "--api-url",
        default=API_BASE_URL,
        help=f"Gateway base URL (default: {API_BASE_URL})"
    )
    parser.add_argument(
        "--actor-id",
        default="ops-admin",
        help="Admin identity sent as X-Actor-Id (default: ops-admin)"
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=0,
        help="Repeat every N seconds (default: run once)"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="Request timeout in seconds (default: 30)"
    )

    args = parser.parse_args()

    if args.interval <= 0:
        counts = sweep_once(args.api_url, args.actor_id, args.timeout)
        if counts is None:
            raise SystemExit(1)
        report(counts)
        return

    print("="*70)
    print("🧹 EXPIRY SWEEP")
    print("="*70)
    print(f"API: {args.api_url}")
    print(f"Interval: {args.interval}s")
    print("Press Ctrl+C to stop")
    print("="*70)

    try:
        while True:
            counts = sweep_once(args.api_url, args.actor_id, args.timeout)
            if counts is not None:
                report(counts)
            time.sleep(args.interval)
    except KeyboardInterrupt:
        print("\n👋 Stopping sweep...")


if __name__ == "__main__":
    main()
