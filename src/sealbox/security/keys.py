"""
Per-object key generation and sealing.

Every stored object is encrypted under its own random 32-byte object key.
That key is never persisted in the clear: it is *sealed* with a sealing key
derived from the caller's key-encryption-key (KEK), a random IV, a domain tag
and the object's storage path:

    sealing_key = HMAC-SHA256(kek, iv || domain || "DAREv1-HMAC-SHA256" || object_path)

The sealed form is a single frame of the stream format
(:mod:`sealbox.security.frame`) holding the object key. Unsealing with a
different KEK, IV, domain or path derives a different sealing key and fails
authentication, so a sealed key cannot be moved to another object.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import os
from dataclasses import dataclass
from typing import Callable, Optional

from ..core.exceptions import AuthenticationFailedError, InvalidMetadataError, SealBoxError
from .decryptor import FrameDecryptor
from .encryptor import FrameEncryptor
from .frame import HEADER_SIZE, CipherSuite

logger = logging.getLogger(__name__)

OBJECT_KEY_SIZE = 32
IV_SIZE = 32
SEALING_ALGORITHM = "DAREv1-HMAC-SHA256"
KEY_GENERATION_CONTEXT = b"object-encryption-key generation"

RandomSource = Callable[[int], bytes]


def generate_iv(random: Optional[RandomSource] = None) -> bytes:
    """Return a fresh 32-byte IV for sealing."""
    return (random or os.urandom)(IV_SIZE)


def derive_object_key(kek: bytes, random: Optional[RandomSource] = None) -> ObjectKey:
    """
    Derive a fresh object key as HMAC-SHA256(kek, context || nonce).

    The 32-byte nonce is drawn from ``random`` (default ``os.urandom``). The
    same KEK and nonce give the same key, so a nonce must never repeat for a KEK.
    """
    nonce = (random or os.urandom)(32)
    mac = hmac.new(bytes(kek), KEY_GENERATION_CONTEXT, hashlib.sha256)
    mac.update(nonce)
    return ObjectKey(mac.digest()[:OBJECT_KEY_SIZE])


def _sealing_key(kek: bytes, iv: bytes, domain: str, object_path: str) -> bytes:
    mac = hmac.new(bytes(kek), bytes(iv), hashlib.sha256)
    mac.update(domain.encode("utf-8"))
    mac.update(SEALING_ALGORITHM.encode("utf-8"))
    mac.update(object_path.encode("utf-8"))
    return mac.digest()[:32]


class ObjectKey:
    """Plaintext object key; exists only in memory during one transfer."""

    __slots__ = ("key",)

    def __init__(self, key: bytes):
        if len(key) != OBJECT_KEY_SIZE:
            raise ValueError(f"Object key must be {OBJECT_KEY_SIZE} bytes, got {len(key)}")
        self.key = bytes(key)

    def __repr__(self) -> str:
        return "ObjectKey([REDACTED])"

    def __eq__(self, other) -> bool:
        if not isinstance(other, ObjectKey):
            return NotImplemented
        return hmac.compare_digest(self.key, other.key)

    def __hash__(self) -> int:
        return hash(self.key)

    def seal(self, kek: bytes, iv: bytes, domain: str, object_path: str) -> SealedObjectKey:
        """Seal this key for ``object_path`` under ``kek``."""
        if len(iv) != IV_SIZE:
            raise ValueError(f"IV must be {IV_SIZE} bytes, got {len(iv)}")
        sealing_key = _sealing_key(kek, iv, domain, object_path)
        ciphertext = FrameEncryptor(sealing_key, CipherSuite.AES_256_GCM).encrypt(self.key)
        return SealedObjectKey(
            key=ciphertext,
            iv=bytes(iv),
            algorithm=SEALING_ALGORITHM,
            domain=domain,
        )


@dataclass(frozen=True)
class SealedObjectKey:
    key: bytes
    iv: bytes
    algorithm: str
    domain: str

    @classmethod
    def from_strings(cls, key: str, iv: str, algorithm: str, domain: str) -> SealedObjectKey:
        """Build from the base64 strings stored in object metadata."""
        try:
            raw_key = base64.b64decode(key, validate=True)
            raw_iv = base64.b64decode(iv, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidMetadataError(f"Sealed key metadata is not valid base64: {e}") from e
        if len(raw_iv) < IV_SIZE:
            raise InvalidMetadataError(f"IV must be {IV_SIZE} bytes, got {len(raw_iv)}")
        return cls(key=raw_key, iv=raw_iv[:IV_SIZE], algorithm=algorithm, domain=domain)

    def key_as_string(self) -> str:
        return base64.b64encode(self.key).decode("ascii")

    def iv_as_string(self) -> str:
        return base64.b64encode(self.iv).decode("ascii")

    def unseal(self, kek: bytes, object_path: str) -> ObjectKey:
        """
        Recover the object key.

        Raises AuthenticationFailedError if the KEK or the object path differ
        from the ones used when sealing, or if the sealed key was altered.
        """
        if self.algorithm != SEALING_ALGORITHM:
            raise InvalidMetadataError(f"Unsupported sealing algorithm: {self.algorithm}")

        sealing_key = _sealing_key(kek, self.iv, self.domain, object_path)
        try:
            plaintext = FrameDecryptor(sealing_key, sequence_number=0).decrypt(
                self.key[:HEADER_SIZE], self.key[HEADER_SIZE:]
            )
        except SealBoxError as e:
            logger.warning("Failed to unseal object key for %s", object_path)
            raise AuthenticationFailedError(f"Unable to unseal object key: {e}") from e

        if len(plaintext) != OBJECT_KEY_SIZE:
            raise AuthenticationFailedError("Unsealed object key has an invalid size")
        return ObjectKey(plaintext)
