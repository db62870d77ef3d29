#!/usr/bin/env python3
"""
Dev helper: trigger a mailbox sync on the local Mail Ledger backend.

Builds a sync request from the command line and the environment and POSTs it
to the /api/sync/ endpoint, then prints the JSON response (which carries the
signed ledger link on success).

Usage
-----
# Sync using credentials from .env, targeting localhost:8000
python scripts/trigger_sync.py

# Explicit mailbox
python scripts/trigger_sync.py --address imap.gmail.com:993 --user me@gmail.com

# Show the payload (secret masked) without sending it
python scripts/trigger_sync.py --dry-run

# Target a different backend URL
python scripts/trigger_sync.py --url http://staging.example.com

Environment / .env
------------------
IMAP_ADDRESS   IMAP server as host[:port]      (overridden by --address)
IMAP_USER      Mailbox login / ledger owner    (overridden by --user)
IMAP_SECRET    Password or app password        (overridden by --secret)

The script reads these from a .env file in the project root or backend/ if
present, without overriding variables already set in the environment.
"""

import argparse
import json
import os
import sys
import textwrap
from pathlib import Path

import httpx


# ---------------------------------------------------------------------------
# .env loader
# ---------------------------------------------------------------------------

def _load_dotenv(path: Path) -> None:
    """
    Parse a .env file and set variables in os.environ.

    Only sets variables that are not already in the environment, matching
    the behavior of python-dotenv's load_dotenv(override=False).
    """
    if not path.exists():
        return
    with path.open() as fh:
        for line in fh:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip('"').strip("'")
            os.environ.setdefault(key, value)


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------

def _build_payload(address: str, user: str, secret: str) -> dict:
    return {"address": address, "user": user, "secret": secret}


def _print_response(response: httpx.Response) -> None:
    status = response.status_code
    symbol = "OK" if status == 201 else "FAIL"
    print(f"\n[{symbol}] HTTP {status}")
    try:
        body = response.json()
        print(json.dumps(body, indent=2))
    except ValueError:
        print(response.text)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> int:
    # Locate project root (scripts/ lives one level below the root)
    script_dir = Path(__file__).resolve().parent
    project_root = script_dir.parent
    _load_dotenv(project_root / ".env")
    _load_dotenv(project_root / "backend" / ".env")

    parser = argparse.ArgumentParser(
        prog="trigger_sync.py",
        description=textwrap.dedent("""\
            Trigger a mailbox sync on the Mail Ledger backend.

            Reads IMAP_ADDRESS, IMAP_USER and IMAP_SECRET from the environment
            or a .env file in the project root.
        """),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python scripts/trigger_sync.py
              python scripts/trigger_sync.py --address outlook.office365.com:993
              python scripts/trigger_sync.py --dry-run
        """),
    )
    parser.add_argument(
        "--url",
        default="http://localhost:8000",
        help="Backend base URL (default: http://localhost:8000)",
    )
    parser.add_argument(
        "--address",
        default=os.getenv("IMAP_ADDRESS", ""),
        help="IMAP server as host[:port] (default: IMAP_ADDRESS env var)",
    )
    parser.add_argument(
        "--user",
        default=os.getenv("IMAP_USER", ""),
        help="Mailbox login (default: IMAP_USER env var)",
    )
    parser.add_argument(
        "--secret",
        default=None,
        metavar="SECRET",
        help="Mailbox password. Defaults to the IMAP_SECRET env var.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=300.0,
        help="Seconds to wait for the sync to finish (default: 300)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the payload JSON (secret masked) without sending it.",
    )

    args = parser.parse_args()

    secret = args.secret or os.getenv("IMAP_SECRET", "")
    missing = [
        name for name, value in (("address", args.address), ("user", args.user), ("secret", secret))
        if not value
    ]
    if missing and not args.dry_run:
        print(
            f"ERROR: missing {', '.join(missing)}.\n"
            "Set IMAP_ADDRESS / IMAP_USER / IMAP_SECRET in your environment or .env file, "
            "or pass the matching flags.",
            file=sys.stderr,
        )
        return 1

    payload = _build_payload(args.address, args.user, secret)
    endpoint = f"{args.url.rstrip('/')}/api/sync/"

    print(f"Endpoint : {endpoint}")
    print(f"Address  : {args.address}")
    print(f"User     : {args.user}")

    if args.dry_run:
        display = {**payload, "secret": "***" if secret else ""}
        print("\n[DRY RUN] Payload:")
        print(json.dumps(display, indent=2))
        return 0

    try:
        response = httpx.post(endpoint, json=payload, timeout=args.timeout)
    except httpx.HTTPError as e:
        print(f"\n[FAIL] {e}", file=sys.stderr)
        return 1

    _print_response(response)
    return 0 if response.status_code == 201 else 1


if __name__ == "__main__":
    sys.exit(main())
