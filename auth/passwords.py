"""
auth/passwords.py -- Password hashing primitive (bcrypt, direct usage).

Treated as a black box by the token engine: hash(password) -> digest,
verify(password, digest) -> bool. What wraps it into session state lives in
auth/accounts.py.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

Timing equalization [C1]: dummy_digest(rounds) gives a digest with the same
cost factor as real ones, so a login for an unknown e-mail spends the same
bcrypt work as a login with a wrong password.
"""

from __future__ import annotations

from functools import lru_cache

import bcrypt

DEFAULT_ROUNDS = 12
MAX_PASSWORD_BYTES = 72


def hash_password(plain: str, rounds: int = DEFAULT_ROUNDS) -> str:
    """Return a bcrypt digest of the given plaintext password.

    Raises ValueError for passwords over MAX_PASSWORD_BYTES once UTF-8 encoded.
    The API layer rejects those with a 422 before they get here.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise ValueError(f"password is longer than {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, digest: str) -> bool:
    """Return True if the plaintext password matches the bcrypt digest."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), digest.encode("utf-8"))
    except ValueError:
        # Corrupt digest in the store, or a password too long for bcrypt.
        return False


@lru_cache(maxsize=4)
def dummy_digest(rounds: int = DEFAULT_ROUNDS) -> str:
    """Digest used to burn equal bcrypt time when the account does not exist."""
    return hash_password("tokengate_timing_dummy", rounds)
