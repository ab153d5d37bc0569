"""Streaming encryption: plaintext in, framed AEAD ciphertext out.

``FrameEncryptor`` seals one chunk at a time into a frame (see
:mod:`sealbox.security.frame`); ``EncryptReader`` wraps a plaintext source and
exposes the resulting frame stream as a readable file-like object.
"""

from __future__ import annotations

import logging
import os
from typing import BinaryIO, Iterator, Optional

from ..core.exceptions import EncryptionError
from .frame import (
    MAX_PAYLOAD_SIZE,
    MAX_SEQUENCE_NUMBER,
    NONCE_SIZE,
    PACKAGE_SIZE,
    CipherSuite,
    FrameHeader,
    new_aead,
)

logger = logging.getLogger(__name__)


class FrameEncryptor:
    """
    Seals plaintext chunks into consecutive frames of one stream.

    A random 8-byte stream nonce is drawn per encryptor; each frame's AEAD
    nonce is the frame's sequence number followed by that stream nonce, so a
    nonce never repeats under one key as long as a key encrypts one stream.
    """

    def __init__(
        self,
        key: bytes,
        cipher_suite: CipherSuite = CipherSuite.AES_256_GCM,
        nonce: Optional[bytes] = None,
    ):
        self.cipher_suite = CipherSuite(cipher_suite)
        self._aead = new_aead(self.cipher_suite, key)
        self.nonce = nonce if nonce is not None else os.urandom(NONCE_SIZE)
        if len(self.nonce) != NONCE_SIZE:
            raise ValueError(f"Stream nonce must be {NONCE_SIZE} bytes, got {len(self.nonce)}")
        self.sequence_number = 0
        self._exhausted = False

    def encrypt(self, plaintext: bytes) -> bytes:
        """Encrypt one chunk (1..MAX_PAYLOAD_SIZE bytes) and return the whole frame."""
        if not 0 < len(plaintext) <= MAX_PAYLOAD_SIZE:
            raise EncryptionError(
                f"Chunk size must be between 1 and {MAX_PAYLOAD_SIZE} bytes, got {len(plaintext)}"
            )
        if self._exhausted:
            raise EncryptionError("Frame sequence number exhausted for this stream")

        header = FrameHeader(
            cipher_suite=self.cipher_suite,
            payload_size=len(plaintext),
            sequence_number=self.sequence_number,
            nonce=self.nonce,
        )
        header_bytes = header.to_bytes()
        ct = self._aead.encrypt(header.aead_nonce(), bytes(plaintext), header_bytes)

        if self.sequence_number == MAX_SEQUENCE_NUMBER:
            self._exhausted = True
        else:
            self.sequence_number += 1
        return header_bytes + ct

    def encrypt_stream(self, source: BinaryIO, sink: BinaryIO) -> int:
        """Encrypt everything readable from ``source`` into ``sink``; returns bytes written."""
        written = 0
        for frame in EncryptReader(source, self):
            sink.write(frame)
            written += len(frame)
        return written


class EncryptReader:
    """
    Readable file-like object producing the encrypted frame stream of ``source``.

    Each time the frame buffer runs dry, up to MAX_PAYLOAD_SIZE plaintext bytes
    are pulled from ``source`` (looping over short reads) and sealed into one
    frame. Upstream EOF after a short (or full) final frame ends the stream;
    there is no terminal marker. If ``source`` is non-blocking and returns
    ``None``, ``read`` returns ``None`` too and the partial chunk is kept.
    """

    def __init__(self, source: BinaryIO, encryptor: FrameEncryptor):
        self._source = source
        self._encryptor = encryptor
        self._buffer = bytearray()  # encrypted frame bytes not yet handed out
        self._pos = 0
        self._chunk = bytearray()  # plaintext accumulated for the next frame
        self._eof = False
        self.closed = False

    def readable(self) -> bool:
        return True

    def _fill(self) -> Optional[bool]:
        # True: a frame was buffered; False: stream finished; None: source would block
        while not self._eof and len(self._chunk) < MAX_PAYLOAD_SIZE:
            data = self._source.read(MAX_PAYLOAD_SIZE - len(self._chunk))
            if data is None:
                return None
            if not data:
                self._eof = True
                break
            self._chunk += data

        if not self._chunk:
            return False

        frame = self._encryptor.encrypt(self._chunk)
        logger.debug(
            "Encrypted frame %d (%d plaintext bytes)",
            self._encryptor.sequence_number - 1,
            len(self._chunk),
        )
        self._chunk = bytearray()
        del self._buffer[: self._pos]
        self._pos = 0
        self._buffer += frame
        return True

    def read(self, size: int = -1) -> Optional[bytes]:
        if self.closed:
            raise ValueError("read from closed EncryptReader")
        if size is None or size < 0:
            return self.readall()
        if size == 0:
            return b""

        if self._pos >= len(self._buffer):
            ready = self._fill()
            if ready is None:
                return None
            if not ready:
                return b""

        end = min(self._pos + size, len(self._buffer))
        out = bytes(self._buffer[self._pos : end])
        self._pos = end
        return out

    def readall(self) -> Optional[bytes]:
        parts = []
        while True:
            piece = self.read(PACKAGE_SIZE)
            if piece is None:
                return b"".join(parts) if parts else None
            if not piece:
                return b"".join(parts)
            parts.append(piece)

    def __iter__(self) -> Iterator[bytes]:
        while True:
            piece = self.read(PACKAGE_SIZE)
            if not piece:
                return
            yield piece

    def close(self) -> None:
        self.closed = True
        self._buffer = bytearray()
        self._chunk = bytearray()

    def __enter__(self) -> EncryptReader:
        return self

    def __exit__(self, *exc) -> None:
        self.close()
