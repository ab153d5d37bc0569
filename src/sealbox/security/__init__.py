"""Security helpers: the framed AEAD stream codec and object key sealing for SealBox.

This package provides:
- the DARE v1 frame header format and cipher suites
- streaming encryption (EncryptReader) and decryption (DecryptWriter)
- range filtering of decrypted frames
- per-object key derivation and sealing bound to the object path
- SSE object metadata helpers and Argon2id KEK derivation
"""

from .frame import (
    HEADER_SIZE,
    TAG_SIZE,
    MAX_PAYLOAD_SIZE,
    PACKAGE_SIZE,
    CipherSuite,
    FrameHeader,
    parse_header,
    serialize_header,
)
from .encryptor import FrameEncryptor, EncryptReader
from .decryptor import FrameDecryptor, DecryptWriter
from .filter import RangeFilter
from .keys import ObjectKey, SealedObjectKey, derive_object_key, generate_iv
from .sse import encrypt_reader, decrypt_writer, is_encrypted, sealed_object_key
from .kdf import KdfParams, generate_salt, derive_kek

__all__ = [
    "HEADER_SIZE",
    "TAG_SIZE",
    "MAX_PAYLOAD_SIZE",
    "PACKAGE_SIZE",
    "CipherSuite",
    "FrameHeader",
    "parse_header",
    "serialize_header",
    "FrameEncryptor",
    "EncryptReader",
    "FrameDecryptor",
    "DecryptWriter",
    "RangeFilter",
    "ObjectKey",
    "SealedObjectKey",
    "derive_object_key",
    "generate_iv",
    "encrypt_reader",
    "decrypt_writer",
    "is_encrypted",
    "sealed_object_key",
    "KdfParams",
    "generate_salt",
    "derive_kek",
]
