"""Frame header layout for the chunked AEAD stream (DARE v1 package format).

Header layout (16 bytes, little-endian):
- 1 byte: version (0x10)
- 1 byte: cipher suite (0x00 = AES-256-GCM, 0x01 = ChaCha20-Poly1305)
- 2 bytes: payload size - 1 (unsigned short)
- 4 bytes: sequence number (frame index within the stream)
- 8 bytes: stream nonce (random, shared by every frame of one stream)

Frame: header || ciphertext (1..MAX_PAYLOAD_SIZE bytes) || tag (16 bytes)

The AEAD nonce of a frame is header[4:16] (sequence number || stream nonce) and
the whole header is bound as associated data.
"""

import struct
from dataclasses import dataclass
from enum import IntEnum

from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from ..core.exceptions import MalformedFrameError


VERSION = 0x10
HEADER_SIZE = 16
TAG_SIZE = 16
MAX_PAYLOAD_SIZE = 64 * 1024
PACKAGE_SIZE = HEADER_SIZE + MAX_PAYLOAD_SIZE + TAG_SIZE
NONCE_SIZE = 8
KEY_SIZE = 32
MAX_SEQUENCE_NUMBER = 0xFFFFFFFF

_HEADER = struct.Struct("<BBHI8s")


class CipherSuite(IntEnum):
    AES_256_GCM = 0x00
    CHACHA20_POLY1305 = 0x01


def new_aead(cipher_suite: CipherSuite, key: bytes):
    """Return the AEAD primitive for ``cipher_suite`` keyed with ``key``."""
    if len(key) != KEY_SIZE:
        raise ValueError(f"Invalid key size: expected {KEY_SIZE}, got {len(key)}")
    if cipher_suite == CipherSuite.AES_256_GCM:
        return AESGCM(key)
    return ChaCha20Poly1305(key)


@dataclass(frozen=True)
class FrameHeader:
    cipher_suite: CipherSuite
    payload_size: int
    sequence_number: int
    nonce: bytes
    version: int = VERSION

    def to_bytes(self) -> bytes:
        return _HEADER.pack(
            self.version,
            int(self.cipher_suite),
            self.payload_size - 1,
            self.sequence_number,
            self.nonce,
        )

    def aead_nonce(self) -> bytes:
        # 12 bytes: sequence number || stream nonce
        return self.to_bytes()[4:]

    @property
    def frame_size(self) -> int:
        return HEADER_SIZE + self.payload_size + TAG_SIZE


def serialize_header(header: FrameHeader) -> bytes:
    return header.to_bytes()


def parse_header(data: bytes) -> FrameHeader:
    """Parse a 16-byte frame header.

    Raises MalformedFrameError if the size, version or cipher suite is wrong;
    this is never retried since it means corruption or a foreign format.
    """
    if len(data) != HEADER_SIZE:
        raise MalformedFrameError(
            f"Invalid header size: expected {HEADER_SIZE}, got {len(data)}"
        )
    version, suite, size_minus_one, sequence_number, nonce = _HEADER.unpack(bytes(data))
    if version != VERSION:
        raise MalformedFrameError(f"Unsupported frame version: {version:#04x}")
    try:
        cipher_suite = CipherSuite(suite)
    except ValueError:
        raise MalformedFrameError(f"Unknown cipher suite: {suite:#04x}") from None

    return FrameHeader(
        cipher_suite=cipher_suite,
        payload_size=size_minus_one + 1,
        sequence_number=sequence_number,
        nonce=nonce,
        version=version,
    )
