#!/usr/bin/env python3
"""Run one credential cleanup sweep, or revoke every session of an account.

Usage:
    # Sweep expired OTPs and sessions on every configured tier:
    python scripts/sweep_credentials.py

    # Only one credential class:
    python scripts/sweep_credentials.py --only sessions

    # Revoke all sessions of an account (e.g. after a credential leak):
    python scripts/sweep_credentials.py --revoke-account 4f1c...

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    REDIS_URL: Redis connection string
    USE_MEMORY_STORE: Run against in-process stores (useful for a dry check)
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Dict, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def sweep(only: Optional[str] = None) -> Dict[str, int]:
    # Import here to avoid loading config before env vars are set
    from credlife.service.runtime import get_runtime

    runtime = get_runtime()
    counts: Dict[str, int] = {}
    try:
        if only in (None, "otps"):
            counts["otps"] = await runtime.repository.cleanup_expired_otps()
        if only in (None, "sessions"):
            counts["sessions"] = await runtime.repository.cleanup_expired_sessions()
    finally:
        await runtime.aclose()
    return counts


async def revoke(account_id: str) -> Dict[str, int]:
    from credlife.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        result = await runtime.credentials.revoke_account_sessions(account_id)
    finally:
        await runtime.aclose()
    return {"deactivated": result.deactivated, "failed": len(result.failed)}


def main():
    parser = argparse.ArgumentParser(
        description="Sweep expired credentials",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--only",
        choices=("otps", "sessions"),
        help="Restrict the sweep to one credential class",
    )
    parser.add_argument(
        "--revoke-account",
        metavar="ACCOUNT_ID",
        help="Deactivate every session of this account instead of sweeping",
    )

    args = parser.parse_args()

    from credlife.service.errors import ServiceError

    try:
        if args.revoke_account:
            result = asyncio.run(revoke(args.revoke_account))
            print(f"Deactivated {result['deactivated']} session(s), {result['failed']} failed")
            if result["failed"]:
                sys.exit(2)
        else:
            result = asyncio.run(sweep(args.only))
            for kind, removed in result.items():
                print(f"Removed {removed} expired {kind}")
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
