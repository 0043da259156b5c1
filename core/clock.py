"""
core/clock.py -- Time source and random identifiers.

Every component that compares timestamps takes a clock object rather than
calling time.time() itself, so tests can move time forward without sleeping.
Token timestamps are whole Unix seconds, matching the iat/exp wire claims.
"""

from __future__ import annotations

import time
import uuid
from typing import Protocol


class Clock(Protocol):
    def now(self) -> int: ...


class SystemClock:
    """Wall-clock time in whole UTC seconds."""

    def now(self) -> int:
        return int(time.time())


def new_token_id() -> str:
    """Return a fresh jti. uuid4 carries 122 random bits from os.urandom."""
    return str(uuid.uuid4())


def new_account_id() -> str:
    return uuid.uuid4().hex
