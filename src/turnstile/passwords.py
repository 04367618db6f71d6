"""Argon2 password hashing for local accounts."""

from __future__ import annotations

import asyncio
import hmac
import secrets
from hashlib import sha256

from argon2.low_level import Type as Argon2Type
from argon2.low_level import hash_secret as argon2_hash_secret

from .models import User

__all__ = ["PasswordHasher", "compose_user_secret"]

_UNKNOWN_ACCOUNT_SALT = "0" * 32


def compose_user_secret(pepper: str, user: User) -> str:
    return "::".join(["user", pepper, user.password_secret])


class PasswordHasher:
    """Async wrapper around argon2id hashing and verification."""

    def __init__(
        self,
        *,
        pepper: str = "",
        time_cost: int = 4,
        memory_cost: int = 65_536,
        parallelism: int = 2,
    ) -> None:
        self.pepper = pepper
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism

    async def hash(self, password: str, *, secret_key: str, salt: str) -> str:
        return await asyncio.to_thread(
            _argon2_hash,
            password,
            secret_key,
            salt,
            self.time_cost,
            self.memory_cost,
            self.parallelism,
        )

    async def verify(self, password: str, *, secret_key: str, salt: str, expected: str) -> bool:
        candidate = await self.hash(password, secret_key=secret_key, salt=salt)
        return hmac.compare_digest(candidate, expected)

    async def hash_user_password(self, *, user_secret: str, password: str) -> tuple[str, str]:
        """Return ``(hashed, salt)`` for a new password."""

        salt = secrets.token_hex(16)
        secret_key = "::".join(["user", self.pepper, user_secret])
        hashed = await self.hash(password, secret_key=secret_key, salt=salt)
        return hashed, salt

    async def verify_user_password(self, user: User | None, password: str) -> bool:
        """Check ``password`` for ``user``.

        Unknown users and accounts without a local password still pay for one
        hash so response timing does not reveal which emails exist.
        """

        if user is None or user.hashed_password is None or user.password_salt is None:
            await self.hash(password, secret_key=self.pepper, salt=_UNKNOWN_ACCOUNT_SALT)
            return False
        return await self.verify(
            password,
            secret_key=compose_user_secret(self.pepper, user),
            salt=user.password_salt,
            expected=user.hashed_password,
        )


def _derive_salt(secret_key: str, salt: str) -> bytes:
    return sha256(f"{secret_key}:{salt}".encode()).digest()


def _argon2_hash(
    password: str,
    secret_key: str,
    salt: str,
    time_cost: int,
    memory_cost: int,
    parallelism: int,
) -> str:
    derived = _derive_salt(secret_key, salt)
    hashed = argon2_hash_secret(
        password.encode(),
        derived,
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=parallelism,
        hash_len=32,
        type=Argon2Type.ID,
    )
    if isinstance(hashed, bytes):
        return hashed.decode()
    return hashed
