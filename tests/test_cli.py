"""Tests for main.py -- the operator CLI.

Covers:
- logout-all / deactivate against a real SQLite store, exit 0
- unknown account and undecodable token, exit 1
- purge, inspect (claims + revocation status)
- argparse errors, exit 2
"""

import json
import time
from unittest.mock import patch

import pytest

import main as cli
from auth.codec import TokenCodec
from auth.models import Account, TokenPayload, TokenType
from auth.store import AccountStore
from core.config import Settings

KEY = "cli-secret-key-that-is-long-enough-0123456789"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        debug=True,
        secret_key=KEY,
        database_url=f"sqlite:///{tmp_path / 'accounts.db'}",
        revocation_url=f"sqlite:///{tmp_path / 'revocations.db'}",
        backend_retry_backoff_seconds=0,
    )


@pytest.fixture
def run(settings):
    def _run(*argv: str) -> int:
        with patch.object(cli, "get_settings", return_value=settings):
            return cli.main(list(argv))

    return _run


@pytest.fixture
def account_id(settings) -> str:
    store = AccountStore(settings.database_url)
    account_id = store.create_account(Account(email="ops@example.com", password_digest="digest"))
    store.close()
    return account_id


def _reload(settings, account_id) -> Account:
    store = AccountStore(settings.database_url)
    try:
        return store.get_account(account_id)
    finally:
        store.close()


def test_logout_all(run, settings, account_id, capsys):
    assert run("logout-all", account_id) == 0
    assert "security epoch now 2" in capsys.readouterr().out
    assert _reload(settings, account_id).security_epoch == 2


def test_logout_all_unknown_account(run, capsys):
    assert run("logout-all", "missing") == 1
    assert "USER_NOT_FOUND" in capsys.readouterr().out


def test_deactivate(run, settings, account_id):
    assert run("deactivate", account_id) == 0
    assert _reload(settings, account_id).is_active is False


def test_purge(run, capsys):
    assert run("purge") == 0
    assert "Purged 0 expired revocation entries." in capsys.readouterr().out


def test_inspect_valid_token(run, capsys):
    now = int(time.time())
    token = TokenCodec(KEY).encode(
        TokenPayload(
            subject="acct-1",
            token_type=TokenType.refresh,
            jti="jti-cli",
            security_epoch=4,
            issued_at=now,
            expires_at=now + 600,
        )
    )
    assert run("inspect", token) == 0
    claims = json.loads(capsys.readouterr().out)
    assert claims["sub"] == "acct-1"
    assert claims["typ"] == "refresh"
    assert claims["epoch"] == 4
    assert claims["revoked"] is False
    assert 0 < claims["remaining_seconds"] <= 600


def test_inspect_token_signed_with_other_key(run, capsys):
    now = int(time.time())
    token = TokenCodec("x" * 40).encode(
        TokenPayload("acct-1", TokenType.access, "jti", 1, now, now + 60)
    )
    assert run("inspect", token) == 1
    assert "BAD_SIGNATURE" in capsys.readouterr().out


def test_inspect_garbage(run, capsys):
    assert run("inspect", "garbage") == 1
    assert "MALFORMED" in capsys.readouterr().out


@pytest.mark.parametrize("argv", [[], ["bogus"], ["logout-all"]])
def test_argument_errors_exit_2(argv):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(argv)
    assert exc_info.value.code == 2
