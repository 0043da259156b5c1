#!/usr/bin/env python3
"""
TokenGate -- operator CLI for the token engine.

Works directly against the configured credential store and revocation
registry (DATABASE_URL, REVOCATION_URL), so an operator can act on an account
without going through the HTTP API.

Usage:
  python main.py logout-all ACCOUNT_ID
  python main.py deactivate ACCOUNT_ID
  python main.py purge
  python main.py inspect TOKEN

Exit codes:
  0  success
  1  domain failure (unknown account, undecodable token, backend unavailable)
  2  argument error (argparse)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Callable

from auth.accounts import AccountService
from auth.codec import TokenCodec
from auth.errors import AuthError, BackendUnavailableError, DecodeFailure, TokenDecodeError
from auth.policy import SessionPolicy
from auth.service import TokenService
from auth.store import AccountStore
from core.config import Settings, get_settings
from registry.base import RevocationRegistry
from registry.factory import build_registry

logger = logging.getLogger("tokengate.cli")


class _Runtime:
    """Backends and services for one CLI invocation. Closes both backends on exit."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.policy = SessionPolicy.from_settings(settings)
        self.store = AccountStore(
            settings.database_url,
            timeout_seconds=settings.backend_timeout_seconds,
            retry_attempts=settings.backend_retry_attempts,
            retry_backoff_seconds=settings.backend_retry_backoff_seconds,
        )
        self.registry: RevocationRegistry = build_registry(
            settings.revocation_url,
            timeout_seconds=settings.backend_timeout_seconds,
            retry_attempts=settings.backend_retry_attempts,
            retry_backoff_seconds=settings.backend_retry_backoff_seconds,
        )
        self.codec = TokenCodec(
            settings.secret_key,
            algorithm=settings.jwt_algorithm,
            leeway_seconds=self.policy.clock_skew_seconds,
        )
        self.tokens = TokenService(self.codec, self.registry, self.store, self.policy)
        self.accounts = AccountService(self.store, self.tokens, bcrypt_rounds=settings.bcrypt_rounds)

    def __enter__(self) -> _Runtime:
        return self

    def __exit__(self, *exc_info) -> None:
        self.registry.close()
        self.store.close()


# ---------------------------------------------------------------------------
# Subcommands -- each returns the process exit code
# ---------------------------------------------------------------------------


def _cmd_logout_all(rt: _Runtime, args: argparse.Namespace) -> int:
    epoch = rt.accounts.logout_all(args.account_id)
    print(f"Logged out {args.account_id} everywhere (security epoch now {epoch}).")
    return 0


def _cmd_deactivate(rt: _Runtime, args: argparse.Namespace) -> int:
    rt.accounts.deactivate(args.account_id)
    print(f"Deactivated {args.account_id}. All of its tokens are now rejected.")
    return 0


def _cmd_purge(rt: _Runtime, args: argparse.Namespace) -> int:
    removed = rt.registry.purge_expired()
    print(f"Purged {removed} expired revocation entr{'y' if removed == 1 else 'ies'}.")
    return 0


def _cmd_inspect(rt: _Runtime, args: argparse.Namespace) -> int:
    try:
        payload = rt.codec.decode(args.token)
    except TokenDecodeError as exc:
        print(f"  [!] {exc.failure.value}: {exc.detail}")
        if exc.failure is DecodeFailure.EXPIRED and exc.payload is not None:
            print(json.dumps(exc.payload.to_claims(), indent=2))
        return 1
    claims = payload.to_claims()
    claims["revoked"] = rt.registry.is_revoked(payload.jti)
    claims["remaining_seconds"] = rt.codec.remaining_seconds(payload)
    print(json.dumps(claims, indent=2))
    return 0


_COMMANDS: dict[str, Callable[[_Runtime, argparse.Namespace], int]] = {
    "logout-all": _cmd_logout_all,
    "deactivate": _cmd_deactivate,
    "purge": _cmd_purge,
    "inspect": _cmd_inspect,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tokengate",
        description="Operator commands for the TokenGate token engine.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py logout-all 3f2c9a0e8b7d4c1a9e6f5d4c3b2a1908
  python main.py deactivate 3f2c9a0e8b7d4c1a9e6f5d4c3b2a1908
  python main.py purge
  python main.py inspect eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9...
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)

    p = sub.add_parser("logout-all", help="Invalidate every token for an account (epoch bump)")
    p.add_argument("account_id", metavar="ACCOUNT_ID")

    p = sub.add_parser("deactivate", help="Deactivate an account; its tokens stop verifying")
    p.add_argument("account_id", metavar="ACCOUNT_ID")

    sub.add_parser("purge", help="Delete expired revocation entries")

    p = sub.add_parser("inspect", help="Verify a token's signature and print its claims")
    p.add_argument("token", metavar="TOKEN")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s %(message)s")

    try:
        with _Runtime(get_settings()) as rt:
            return _COMMANDS[args.command](rt, args)
    except AuthError as exc:
        print(f"  [!] {exc.kind.value}: {exc.message}")
        return 1
    except BackendUnavailableError as exc:
        logger.error("%s unavailable", exc.backend)
        print(f"  [!] {exc.backend} unavailable: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
