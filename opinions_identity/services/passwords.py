"""
Password Hashing.

PBKDF2-HMAC-SHA256 with a per-password random salt, stored as
``pbkdf2_sha256$<iterations>$<salt_hex>$<hash_hex>`` so the iteration
count can be raised without invalidating existing hashes.  Verification
uses :func:`hmac.compare_digest`.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

_ALGORITHM: str = "pbkdf2_sha256"
_SALT_BYTES: int = 32


class PasswordHasher:
    """Hashes and verifies passwords.

    Parameters
    ----------
    iterations:
        PBKDF2 iteration count applied to new hashes.
    """

    def __init__(self, iterations: int = 600_000) -> None:
        if iterations < 1:
            raise ValueError("iterations must be positive")
        self._iterations: int = iterations
        # Verified against when the identity does not exist, so unknown
        # identifiers cost the same as wrong passwords.
        self._dummy_hash: str = self.hash(secrets.token_hex(16))

    def hash(self, password: str) -> str:
        salt = secrets.token_bytes(_SALT_BYTES)
        digest = self._derive(password, salt, self._iterations)
        return f"{_ALGORITHM}${self._iterations}${salt.hex()}${digest.hex()}"

    def verify(self, password: str, encoded: str) -> bool:
        """Return ``True`` when *password* matches *encoded*.

        Malformed or foreign hash strings never match, and neither does a
        password that cannot be encoded as UTF-8.
        """
        try:
            algorithm, iterations_str, salt_hex, hash_hex = encoded.split("$")
            iterations = int(iterations_str)
            salt = bytes.fromhex(salt_hex)
            expected = bytes.fromhex(hash_hex)
        except ValueError:
            return False
        if algorithm != _ALGORITHM or iterations < 1:
            return False
        try:
            candidate = self._derive(password, salt, iterations)
        except UnicodeEncodeError:
            return False
        return hmac.compare_digest(candidate, expected)

    def verify_dummy(self, password: str) -> bool:
        """Burn one verification against a throwaway hash; always ``False``."""
        self.verify(password, self._dummy_hash)
        return False

    @staticmethod
    def _derive(password: str, salt: bytes, iterations: int) -> bytes:
        return hashlib.pbkdf2_hmac(
            "sha256", password.encode("utf-8"), salt, iterations,
        )
