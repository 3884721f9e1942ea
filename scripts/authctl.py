#!/usr/bin/env python3
"""Drive the auth client from the command line.

Usage:
    # Sign in (password may also come from AUTHPIPE_PASSWORD):
    python scripts/authctl.py login --email user@example.com --password Secret123

    # Show the stored session, call an endpoint, sign out:
    python scripts/authctl.py status
    python scripts/authctl.py request /api/user/profile
    python scripts/authctl.py request /api/sessions --method POST --body '{"title": "Lab 3"}'
    python scripts/authctl.py logout

Environment Variables:
    AUTHPIPE_API_BASE_URL: Base URL of the authentication service
    AUTHPIPE_STATE_DIR: Directory where credentials are persisted between runs
    AUTHPIPE_STORAGE_BACKEND: memory (default) or redis
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run_command(args: argparse.Namespace) -> dict:
    # Import here to avoid loading config before env vars are set
    from authpipe.service.runtime import get_runtime

    runtime = get_runtime()
    client = runtime.auth
    try:
        if args.command == "login":
            return await client.login(args.email, args.password)
        if args.command == "register":
            return await client.register(
                {
                    "email": args.email,
                    "password": args.password,
                    "username": args.username,
                    "role": args.role,
                }
            )
        if args.command == "logout":
            return await client.logout()
        if args.command == "status":
            return await client.check_auth_status()
        data = await client.secure_request(
            args.endpoint,
            {"method": args.method, "body": args.body, "skip_auth": args.skip_auth},
        )
        return {"success": True, "data": data}
    finally:
        await runtime.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Authenticated requests against the auth service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Sign in and store credentials")
    login.add_argument("--email", required=True)
    login.add_argument("--password", default=os.environ.get("AUTHPIPE_PASSWORD"))

    register = sub.add_parser("register", help="Create an account")
    register.add_argument("--email", required=True)
    register.add_argument("--username", required=True)
    register.add_argument("--password", default=os.environ.get("AUTHPIPE_PASSWORD"))
    register.add_argument("--role", default="user")

    sub.add_parser("logout", help="Sign out and clear stored credentials")
    sub.add_parser("status", help="Show the stored session")

    request = sub.add_parser("request", help="Call an endpoint through the pipeline")
    request.add_argument("endpoint")
    request.add_argument("--method", default="GET")
    request.add_argument("--body", help="JSON request body")
    request.add_argument("--skip-auth", action="store_true")
    return parser


def parse_args(argv=None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command in {"login", "register"} and not args.password:
        parser.error("--password or AUTHPIPE_PASSWORD environment variable required")
    if args.command == "request" and args.body:
        try:
            args.body = json.loads(args.body)
        except ValueError as exc:
            parser.error(f"--body is not valid JSON: {exc}")
    return args


def main(argv=None):
    args = parse_args(argv)

    from authpipe.service.errors import ServiceError

    try:
        result = asyncio.run(run_command(args))
    except ServiceError as exc:
        print(json.dumps({"success": False, "error": exc.to_dict()}, indent=2))
        if exc.requires_reauth:
            print("Session expired: run `authctl.py login` again.", file=sys.stderr)
        elif exc.wait_seconds:
            print(f"Try again in {exc.wait_seconds} seconds.", file=sys.stderr)
        sys.exit(2)

    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
