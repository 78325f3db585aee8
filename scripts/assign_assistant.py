#!/usr/bin/env python3
"""Assign an upstream assistant to a user and optionally mint a dev token.

Usage:
    # Using environment variables:
    RELAY_USER_ID=0b6c... ASSISTANT_ID=asst_abc123 python scripts/assign_assistant.py

    # Or with command line args:
    python scripts/assign_assistant.py --user-id 0b6c... --assistant-id asst_abc123 \
        --name "Support bot" --token

Environment Variables:
    RELAY_USER_ID: Identity-provider user id (the token ``sub``)
    ASSISTANT_ID: Upstream assistant id to assign and activate
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    JWT_SECRET: Required with --token; must match the identity provider's secret
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def assign_assistant(
    user_id: str, assistant_id: str, name: str, *, mint_token: bool = False, dry_run: bool = False
) -> dict:
    """Assign and activate ``assistant_id`` for ``user_id``.

    Returns:
        dict with user_id, assistant_id, status ('created', 'activated' or
        'already_active') and, when requested, an access token
    """
    # Import here to avoid loading config before env vars are set
    from assistant_relay.service.runtime import get_runtime

    runtime = get_runtime()
    existing = {a.assistant_id: a for a in runtime.store.list_user_assistants(user_id)}
    current = existing.get(assistant_id)

    if current is not None and current.is_active:
        status = "already_active"
    elif dry_run:
        print(f"[DRY RUN] Would assign and activate {assistant_id} for {user_id}")
        return {"user_id": user_id, "assistant_id": assistant_id, "status": "dry_run"}
    elif current is not None:
        runtime.store.activate_assistant(user_id, assistant_id)
        status = "activated"
    else:
        runtime.store.add_user_assistant(user_id, assistant_id, name, is_active=True)
        status = "created"

    result = {"user_id": user_id, "assistant_id": assistant_id, "status": status}
    if mint_token:
        result["access_token"] = runtime.auth.encode_token(user_id)
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Assign an assistant to a relay user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--user-id",
        default=os.environ.get("RELAY_USER_ID"),
        help="User id (or set RELAY_USER_ID env var)",
    )
    parser.add_argument(
        "--assistant-id",
        default=os.environ.get("ASSISTANT_ID"),
        help="Upstream assistant id (or set ASSISTANT_ID env var)",
    )
    parser.add_argument("--name", default="Assistant", help="Display name for the assignment")
    parser.add_argument(
        "--token",
        action="store_true",
        help="Also print a one-hour access token for local testing",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.user_id:
        print("Error: --user-id or RELAY_USER_ID environment variable required")
        sys.exit(1)

    if not args.assistant_id or not args.assistant_id.startswith("asst_"):
        print("Error: --assistant-id (asst_...) or ASSISTANT_ID environment variable required")
        sys.exit(1)

    if args.token and not os.environ.get("JWT_SECRET"):
        print("Error: JWT_SECRET must be set to mint a token")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/assistant-relay"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = assign_assistant(
            args.user_id,
            args.assistant_id,
            args.name,
            mint_token=args.token,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"\nAssigned {result['assistant_id']} to {result['user_id']} (active)")
    elif result["status"] == "activated":
        print(f"\nActivated existing assignment {result['assistant_id']}")
    elif result["status"] == "already_active":
        print("\nNo changes needed - assistant is already active.")
    if result.get("access_token"):
        print(f"  Access Token: {result['access_token']}")


if __name__ == "__main__":
    main()
