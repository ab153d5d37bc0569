"""Passphrase-based KEK derivation (Argon2id).

Callers that hold a passphrase rather than raw key bytes derive their KEK
here. Only the salt and cost parameters are worth keeping; the derived KEK is
returned to the caller and never stored by SealBox.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Union

from argon2.low_level import Type, hash_secret_raw


def generate_salt(length: int = 16) -> bytes:
    """Return a cryptographically secure random salt."""
    return os.urandom(length)


@dataclass(frozen=True)
class KdfParams:
    salt: bytes = field(default_factory=generate_salt)
    time_cost: int = 3
    memory_cost: int = 65536
    parallelism: int = 1
    key_len: int = 32

    def to_dict(self) -> Dict[str, Any]:
        return {
            "algo": "argon2id",
            "salt": self.salt.hex(),
            "time": self.time_cost,
            "memory": self.memory_cost,
            "parallelism": self.parallelism,
            "key_len": self.key_len,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> KdfParams:
        if data.get("algo", "argon2id") != "argon2id":
            raise ValueError(f"Unsupported KDF: {data.get('algo')}")
        return cls(
            salt=bytes.fromhex(data["salt"]),
            time_cost=int(data.get("time", 3)),
            memory_cost=int(data.get("memory", 65536)),
            parallelism=int(data.get("parallelism", 1)),
            key_len=int(data.get("key_len", 32)),
        )


def derive_kek(passphrase: Union[bytes, str], params: KdfParams) -> bytes:
    """Derive raw KEK bytes from ``passphrase`` with the Argon2id ``params``."""
    if isinstance(passphrase, str):
        passphrase = passphrase.encode("utf-8")

    return hash_secret_raw(
        secret=passphrase,
        salt=params.salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_cost,
        parallelism=params.parallelism,
        hash_len=params.key_len,
        type=Type.ID,
    )
