from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Tuple

_SEED_BYTES = 32


class TokenGenerator:
    """Issues public/private key pairs for persistent-login cookies.

    The public half is a digest of a random seed and travels in the cookie.
    The private half is ``HMAC(public, secret)`` and is the only value the
    store ever sees, so a leaked grant table cannot be replayed as cookies.
    """

    def __init__(self, secret: str | bytes, algorithm: str = "sha256") -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        normalized = algorithm.lower()
        if normalized not in hashlib.algorithms_available or normalized.startswith("shake"):
            raise ValueError(f"unsupported hash algorithm: {algorithm}")
        self._secret = secret.encode() if isinstance(secret, str) else bytes(secret)
        self.algorithm = normalized

    def _random_public(self) -> str:
        return hashlib.new(self.algorithm, secrets.token_bytes(_SEED_BYTES)).hexdigest()

    def hash_public(self, public: str) -> str:
        return hmac.new(self._secret, public.encode(), self.algorithm).hexdigest()

    def generate(self) -> Tuple[str, str]:
        """Return a fresh ``(public, private)`` pair."""
        public = self._random_public()
        return public, self.hash_public(public)

    def new_series(self) -> str:
        return self._random_public()

    def validate(self, public: str, stored_private: str) -> bool:
        if not public or not stored_private:
            return False
        if not isinstance(public, str) or not isinstance(stored_private, str):
            return False
        expected = self.hash_public(public)
        return hmac.compare_digest(expected.encode(), stored_private.encode())


__all__ = ["TokenGenerator"]
