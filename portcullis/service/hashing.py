from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError


class SecretHasher:
    """One-way argon2id hashing for API key material.

    ``compare`` delegates to argon2's verify, which recomputes the hash and
    compares in constant time; secrets are never compared byte-for-byte here.
    Any malformed digest yields ``False`` so callers see a single failure mode.
    """

    algorithm = "argon2id"

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4):
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings) -> "SecretHasher":
        return cls(
            time_cost=settings.hash_time_cost,
            memory_cost=settings.hash_memory_cost,
            parallelism=settings.hash_parallelism,
        )

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def compare(self, candidate: str, digest: str) -> bool:
        if not candidate or not digest:
            return False
        try:
            return self._hasher.verify(digest, candidate)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False
