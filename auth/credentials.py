"""
auth/credentials.py -- Password hashing and verification (Argon2id).

Security design decisions:
  KDF: Argon2id via argon2-cffi's low-level API. Argon2id is memory-hard, so
       an attacker holding a leaked accounts table pays the memory cost on
       every guess, which defeats GPU/ASIC brute force far better than
       bcrypt's fixed 4 KiB working set. The cost parameters are fixed
       constants below, overridable per deployment through Settings
       (ARGON2_TIME_COST, ARGON2_MEMORY_COST, ARGON2_PARALLELISM).

  Encoding: argon2id$v=19$t=<time>,m=<KiB>,p=<lanes>$<key hex>.<salt hex>
       The parameters travel with every stored hash, so raising the cost
       later does not invalidate existing accounts: verification re-derives
       with the stored parameters and needs_rehash() tells the login flow
       to upgrade the hash once the password is known to be correct.

  Comparison: hmac.compare_digest, so verification time does not depend on
       where the derived and stored keys first differ.

  Fail closed: verify() returns False for anything it cannot parse (wrong
       algorithm tag, missing separator, bad hex, absurd cost parameters,
       length mismatch). A corrupt stored hash is an authentication failure,
       never a crash. Parameter bounds also stop a tampered row from asking
       the server for a multi-gigabyte derivation.

  Timing equalization: dummy_hash is derived once per hasher. The
       authentication service verifies against it when the username is
       unknown, so both failure paths cost one full derivation.

Passwords and hashes are never logged.

Layer rule: no imports from api/, ledger/ or collectibles/.
"""

from __future__ import annotations

import hmac
import secrets
from functools import cached_property

from argon2.exceptions import HashingError
from argon2.low_level import ARGON2_VERSION, Type, hash_secret_raw

ALGORITHM = "argon2id"

DEFAULT_TIME_COST = 3
DEFAULT_MEMORY_COST = 65536  # KiB (64 MiB)
DEFAULT_PARALLELISM = 4
HASH_LEN = 32
SALT_LEN = 16

# Bounds accepted when parsing a stored hash.
_MAX_TIME_COST = 64
_MAX_MEMORY_COST = 4 * 1024 * 1024  # 4 GiB in KiB
_MAX_PARALLELISM = 64
_MIN_KEY_LEN = 16
_MAX_KEY_LEN = 128


class PasswordHasher:
    """Derive and verify Argon2id password hashes with fixed parameters.

    Usage:
        hasher = PasswordHasher()
        stored = hasher.hash("correct horse")
        hasher.verify("correct horse", stored)   # True
        hasher.verify("wrong", stored)           # False
    """

    def __init__(
        self,
        time_cost: int = DEFAULT_TIME_COST,
        memory_cost: int = DEFAULT_MEMORY_COST,
        parallelism: int = DEFAULT_PARALLELISM,
        hash_len: int = HASH_LEN,
        salt_len: int = SALT_LEN,
    ) -> None:
        if salt_len < 16:
            raise ValueError("salt_len must be at least 16 bytes")
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism
        self.hash_len = hash_len
        self.salt_len = salt_len

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def hash(self, password: str) -> str:
        """Return a self-describing Argon2id hash of password with a fresh salt."""
        if not isinstance(password, str):
            raise TypeError("password must be a str")
        salt = secrets.token_bytes(self.salt_len)
        key = self._derive(password, salt, self.time_cost, self.memory_cost, self.parallelism, self.hash_len)
        params = f"t={self.time_cost},m={self.memory_cost},p={self.parallelism}"
        return f"{ALGORITHM}$v={ARGON2_VERSION}${params}${key.hex()}.{salt.hex()}"

    def verify(self, password: str, stored: str) -> bool:
        """Return True only if password re-derives to the key stored in `stored`."""
        if not isinstance(password, str):
            return False
        parsed = _parse(stored)
        if parsed is None:
            return False
        time_cost, memory_cost, parallelism, key, salt = parsed
        try:
            candidate = self._derive(password, salt, time_cost, memory_cost, parallelism, len(key))
        except (HashingError, ValueError):
            return False
        return hmac.compare_digest(candidate, key)

    def needs_rehash(self, stored: str) -> bool:
        """Return True if `stored` was produced with different parameters."""
        parsed = _parse(stored)
        if parsed is None:
            return True
        time_cost, memory_cost, parallelism, key, salt = parsed
        return (
            time_cost != self.time_cost
            or memory_cost != self.memory_cost
            or parallelism != self.parallelism
            or len(key) != self.hash_len
            or len(salt) != self.salt_len
        )

    @cached_property
    def dummy_hash(self) -> str:
        """A valid hash of a random throwaway password (timing equalization)."""
        return self.hash(secrets.token_urlsafe(16))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _derive(password: str, salt: bytes, time_cost: int, memory_cost: int, parallelism: int, hash_len: int) -> bytes:
        return hash_secret_raw(
            secret=password.encode("utf-8"),
            salt=salt,
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=hash_len,
            type=Type.ID,
            version=ARGON2_VERSION,
        )


def _parse(stored: object) -> tuple[int, int, int, bytes, bytes] | None:
    """Split a stored hash into (t, m, p, key, salt). None if malformed."""
    if not isinstance(stored, str):
        return None
    parts = stored.split("$")
    if len(parts) != 4 or parts[0] != ALGORITHM or parts[1] != f"v={ARGON2_VERSION}":
        return None

    params: dict[str, int] = {}
    for item in parts[2].split(","):
        name, sep, value = item.partition("=")
        if not sep or not (value.isascii() and value.isdigit()) or name in params:
            return None
        params[name] = int(value)
    if set(params) != {"t", "m", "p"}:
        return None
    time_cost, memory_cost, parallelism = params["t"], params["m"], params["p"]
    if not (1 <= time_cost <= _MAX_TIME_COST and 1 <= parallelism <= _MAX_PARALLELISM):
        return None
    if not (8 * parallelism <= memory_cost <= _MAX_MEMORY_COST):
        return None

    key_hex, sep, salt_hex = parts[3].partition(".")
    if not sep:
        return None
    try:
        key = bytes.fromhex(key_hex)
        salt = bytes.fromhex(salt_hex)
    except ValueError:
        return None
    if not (_MIN_KEY_LEN <= len(key) <= _MAX_KEY_LEN) or len(salt) < 16:
        return None
    return time_cost, memory_cost, parallelism, key, salt
