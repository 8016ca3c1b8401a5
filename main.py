#!/usr/bin/env python3
"""
keyward -- Operator CLI for the auth service.

Usage:
  python main.py serve --host 0.0.0.0 --port 8000
  python main.py keys stats
  python main.py keys rotate
  python main.py keys jwks
  python main.py tokens cleanup
  python main.py tokens family <family_id>
  python main.py tokens revoke-family <family_id>
  python main.py tokens revoke-user <user_id>
  python main.py sessions sweep

Configuration comes from the same environment variables / .env file as the
API (see core/config.py). Key rotation only survives the process when
KEYSTORE_PATH points at a file.
"""

import argparse
import json
from typing import Optional

from auth.errors import AuthError
from auth.runtime import AuthRuntime
from core.config import Settings, get_settings


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _keys(runtime: AuthRuntime, args: argparse.Namespace) -> int:
    keystore = runtime.keystore
    if args.action == "rotate":
        if keystore.path is None:
            print("  [!] KEYSTORE_PATH is not set; the new key will be lost when this process exits.")
        previous = keystore.get_active_key().kid
        key = keystore.generate_key()
        print(f"  Rotated signing key {previous} -> {key.kid} ({key.alg}).")
    elif args.action == "jwks":
        _print_json(keystore.export_public_jwks())
    else:
        _print_json(keystore.stats())
    return 0


def _tokens(runtime: AuthRuntime, args: argparse.Namespace) -> int:
    rotator = runtime.rotator
    if args.action == "cleanup":
        removed = rotator.cleanup_expired()
        print(f"  Removed {removed} expired refresh token record(s).")
    elif args.action == "family":
        records = rotator.get_family(args.target)
        if not records:
            print(f"  [!] No refresh token family {args.target}.")
            return 1
        _print_json(
            [
                {
                    "jti": r.jti,
                    "parent_jti": r.parent_jti,
                    "user_id": r.user_id,
                    "created_at": r.created_at,
                    "expires_at": r.expires_at,
                    "rotated_at": r.rotated_at,
                    "revoked_at": r.revoked_at,
                    "ip": r.ip,
                }
                for r in records
            ]
        )
    elif args.action == "revoke-family":
        revoked = rotator.revoke_family(args.target)
        print(f"  Revoked {revoked} record(s) in family {args.target}.")
    elif args.action == "revoke-user":
        revoked = rotator.revoke_user(args.target)
        print(f"  Revoked {revoked} refresh token record(s) for user {args.target}.")
    return 0


def _sessions(runtime: AuthRuntime, args: argparse.Namespace) -> int:
    removed = runtime.sessions.sweep_expired()
    print(f"  Removed {removed} expired session(s).")
    return 0


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keyward",
        description="Operate the keyward auth service: keys, refresh tokens and sessions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py keys rotate
  python main.py tokens family 3f2a...
  python main.py tokens revoke-user 0b6c...
  DATABASE_URL=sqlite:///prod.db python main.py sessions sweep
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development only)")

    keys = sub.add_parser("keys", help="Signing key management")
    keys.add_argument("action", choices=["stats", "rotate", "jwks"])

    tokens = sub.add_parser("tokens", help="Refresh token families")
    tokens.add_argument("action", choices=["cleanup", "family", "revoke-family", "revoke-user"])
    tokens.add_argument("target", nargs="?", metavar="ID", help="family_id or user_id")

    sessions = sub.add_parser("sessions", help="Server-side sessions")
    sessions.add_argument("action", choices=["sweep"])
    return parser


def main(argv: Optional[list[str]] = None, *, settings: Optional[Settings] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "serve":
        return _serve(args)
    if args.command == "tokens" and args.action != "cleanup" and not args.target:
        parser.error(f"tokens {args.action} requires an ID")

    runtime = AuthRuntime.from_settings(settings or get_settings())
    try:
        handler = {"keys": _keys, "tokens": _tokens, "sessions": _sessions}[args.command]
        return handler(runtime, args)
    except AuthError as exc:
        print(f"  [!] {exc.kind.value}: {exc}")
        return 1
    finally:
        runtime.close()


if __name__ == "__main__":
    raise SystemExit(main())
