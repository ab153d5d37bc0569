"""
Server-side encryption (SSE) glue between the stream codec and object metadata.

An encrypted object carries these metadata entries, all plain strings that
storage persists and returns verbatim:

- ``sse-algorithm``: sealing algorithm tag
- ``sse-iv``: base64 IV used to derive the sealing key
- ``sse-sealed-key-ssec``: base64 sealed object key (client-supplied KEK)
- ``sse-sealed-key-kms``: base64 sealed object key (managed KEK)
"""

from __future__ import annotations

import logging
from typing import BinaryIO, Dict, Mapping, Optional, Tuple

from ..core.exceptions import InvalidMetadataError
from .decryptor import DecryptWriter, FrameDecryptor
from .encryptor import EncryptReader, FrameEncryptor
from .filter import RangeFilter
from .frame import HEADER_SIZE, MAX_PAYLOAD_SIZE, PACKAGE_SIZE, TAG_SIZE, CipherSuite
from .keys import SealedObjectKey, derive_object_key, generate_iv

logger = logging.getLogger(__name__)

META_ALGORITHM = "sse-algorithm"
META_IV = "sse-iv"
META_SEALED_KEY_SSE_C = "sse-sealed-key-ssec"
META_SEALED_KEY_SSE_KMS = "sse-sealed-key-kms"

DOMAIN_SSE_C = "SSE-C"
DOMAIN_SSE_KMS = "SSE-KMS"

FRAME_OVERHEAD = HEADER_SIZE + TAG_SIZE


def encrypt_reader(
    source: BinaryIO,
    kek: bytes,
    object_path: str,
    cipher_suite: CipherSuite = CipherSuite.AES_256_GCM,
) -> Tuple[EncryptReader, Dict[str, str]]:
    """
    Start an SSE-C encrypted upload of ``source`` to ``object_path``.

    Returns the reader producing the ciphertext and the metadata to attach to
    the object. Sealing happens here, before any byte is uploaded.
    """
    object_key = derive_object_key(kek)
    sealed = object_key.seal(kek, generate_iv(), DOMAIN_SSE_C, object_path)
    reader = EncryptReader(source, FrameEncryptor(object_key.key, cipher_suite))

    metadata = {
        META_SEALED_KEY_SSE_C: sealed.key_as_string(),
        META_IV: sealed.iv_as_string(),
        META_ALGORITHM: sealed.algorithm,
    }
    logger.debug("Sealed object key for %s", object_path)
    return reader, metadata


def decrypt_writer(
    sink: BinaryIO,
    metadata: Mapping[str, str],
    kek: bytes,
    object_path: str,
    range_filter: Optional[RangeFilter] = None,
    sequence_number: int = 0,
) -> DecryptWriter:
    """Unseal the object key from ``metadata`` and return a writer decrypting into ``sink``."""
    object_key = sealed_object_key(metadata).unseal(kek, object_path)
    decryptor = FrameDecryptor(object_key.key, sequence_number=sequence_number)
    return DecryptWriter(sink, decryptor, range_filter)


def is_sse_c(metadata: Mapping[str, str]) -> bool:
    return META_SEALED_KEY_SSE_C in metadata


def is_sse_kms(metadata: Mapping[str, str]) -> bool:
    return META_SEALED_KEY_SSE_KMS in metadata


def is_encrypted(metadata: Mapping[str, str]) -> bool:
    return is_sse_c(metadata) or is_sse_kms(metadata)


def sealed_object_key(metadata: Mapping[str, str]) -> SealedObjectKey:
    if not is_encrypted(metadata):
        raise InvalidMetadataError("Object is not encrypted")
    if not is_sse_c(metadata):
        # TODO: unseal SSE-KMS keys once a managed KEK provider exists
        raise InvalidMetadataError("Only SSE-C sealed keys are supported")

    iv = metadata.get(META_IV)
    if iv is None:
        raise InvalidMetadataError(f"Encrypted objects must have {META_IV} metadata")
    algorithm = metadata.get(META_ALGORITHM)
    if algorithm is None:
        raise InvalidMetadataError(f"Encrypted objects must have {META_ALGORITHM} metadata")

    return SealedObjectKey.from_strings(metadata[META_SEALED_KEY_SSE_C], iv, algorithm, DOMAIN_SSE_C)


def encrypted_size(plaintext_size: int) -> int:
    """Size of the frame stream produced for ``plaintext_size`` plaintext bytes."""
    frames = -(-plaintext_size // MAX_PAYLOAD_SIZE)
    return plaintext_size + frames * FRAME_OVERHEAD


def decrypted_size(stored_size: int, metadata: Optional[Mapping[str, str]] = None) -> int:
    """Plaintext size of an object whose stored (possibly encrypted) size is ``stored_size``."""
    if metadata is not None and not is_encrypted(metadata):
        return stored_size

    frames = -(-stored_size // PACKAGE_SIZE)
    size = stored_size - frames * FRAME_OVERHEAD
    if size < 0 or (frames and stored_size - (frames - 1) * PACKAGE_SIZE <= FRAME_OVERHEAD):
        raise InvalidMetadataError(f"{stored_size} bytes is not a valid encrypted stream size")
    return size
