from __future__ import annotations

import hashlib
from typing import Optional


class FingerprintProvider:
    """Hashes client address and user agent into an advisory binding value."""

    def __init__(self, algorithm: str = "sha256") -> None:
        normalized = algorithm.lower()
        if normalized not in hashlib.algorithms_available or normalized.startswith("shake"):
            raise ValueError(f"unsupported hash algorithm: {algorithm}")
        self.algorithm = normalized

    def compute(self, client_address: Optional[str], user_agent: Optional[str]) -> str:
        material = f"{client_address or ''}{user_agent or ''}"
        return hashlib.new(self.algorithm, material.encode()).hexdigest()


__all__ = ["FingerprintProvider"]
