"""Streaming decryption: framed AEAD ciphertext in, plaintext out.

``FrameDecryptor`` opens single frames and enforces stream order;
``DecryptWriter`` is a writable file-like object that accepts ciphertext in
pieces of any size, reassembles frames and forwards the (optionally
range-filtered) plaintext to a sink.

Sinks follow the ``io.RawIOBase.write`` contract: they return the number of
bytes taken, and a non-blocking sink may take fewer than offered or return
``None`` when it would block.
"""

from __future__ import annotations

import errno
import logging
from enum import Enum
from typing import BinaryIO, Optional, Union

from cryptography.exceptions import InvalidTag

from ..core.exceptions import AuthenticationFailedError, MalformedFrameError, SealBoxError
from .filter import RangeFilter
from .frame import (
    HEADER_SIZE,
    KEY_SIZE,
    PACKAGE_SIZE,
    TAG_SIZE,
    FrameHeader,
    new_aead,
    parse_header,
)

logger = logging.getLogger(__name__)


class FrameDecryptor:
    """
    Opens the frames of one stream in order.

    The first frame pins the cipher suite and stream nonce; every later frame
    must repeat them and carry the next sequence number. The first frame must
    carry ``sequence_number`` (the first fetched frame index when the
    ciphertext starts mid-object); ``None`` accepts whatever comes first.
    """

    def __init__(self, key: bytes, sequence_number: Optional[int] = 0):
        if len(key) != KEY_SIZE:
            raise ValueError(f"Invalid key size: expected {KEY_SIZE}, got {len(key)}")
        self._key = bytes(key)
        self.sequence_number = sequence_number
        self._cipher_suite = None
        self._nonce: Optional[bytes] = None
        self._aead = None

    def decrypt(self, header: Union[FrameHeader, bytes], message: bytes) -> bytes:
        """Authenticate and decrypt one frame; ``message`` is ciphertext || tag."""
        if not isinstance(header, FrameHeader):
            header = parse_header(header)
        if len(message) != header.payload_size + TAG_SIZE:
            raise MalformedFrameError(
                f"Frame body size mismatch: expected {header.payload_size + TAG_SIZE}, got {len(message)}"
            )

        if self._nonce is None:
            self._cipher_suite = header.cipher_suite
            self._nonce = header.nonce
            self._aead = new_aead(header.cipher_suite, self._key)
            if self.sequence_number is None:
                self.sequence_number = header.sequence_number
        elif header.cipher_suite != self._cipher_suite or header.nonce != self._nonce:
            raise AuthenticationFailedError("Frame does not belong to this stream")

        if header.sequence_number != self.sequence_number:
            raise AuthenticationFailedError(
                f"Frame out of order: expected sequence {self.sequence_number}, got {header.sequence_number}"
            )

        try:
            plaintext = self._aead.decrypt(header.aead_nonce(), bytes(message), header.to_bytes())
        except InvalidTag:
            raise AuthenticationFailedError(
                f"Frame {header.sequence_number} failed authentication"
            ) from None

        self.sequence_number += 1
        return plaintext

    def decrypt_stream(self, source: BinaryIO, sink: BinaryIO) -> int:
        """Decrypt everything readable from blocking ``source`` into ``sink``."""
        writer = DecryptWriter(sink, self)
        while True:
            data = source.read(PACKAGE_SIZE)
            if not data:
                break
            writer.write(data)
        writer.flush()
        return writer.bytes_written


class _State(Enum):
    READING_HEADER = "reading_header"
    DECRYPTING = "decrypting"
    WRITING = "writing"


class DecryptWriter:
    """
    Writable file-like object that decrypts a frame stream into ``sink``.

    ``write`` always takes every byte it is given into the internal buffer and
    makes as much progress as the buffered bytes and the sink allow:

    - READING_HEADER: wait for HEADER_SIZE bytes, then parse the header.
    - DECRYPTING: wait for payload + tag, authenticate, decrypt, filter.
    - WRITING: drain the queued plaintext into the sink; if the sink takes
      only part of it, stay here and retry on the next ``write``/``flush``.

    Malformed headers and authentication failures are fatal: the error is
    raised and re-raised on every later call, and no plaintext of a failed
    frame ever reaches the sink.
    """

    def __init__(
        self,
        sink: BinaryIO,
        decryptor: FrameDecryptor,
        range_filter: Optional[RangeFilter] = None,
    ):
        self._sink = sink
        self._decryptor = decryptor
        self._filter = range_filter
        self._state = _State.READING_HEADER
        self._header: Optional[FrameHeader] = None
        self._buffer = bytearray()  # ciphertext not yet parsed
        self._pending = bytearray()  # plaintext not yet taken by the sink
        self._error: Optional[SealBoxError] = None
        self.bytes_written = 0
        self.closed = False

    @property
    def state(self) -> str:
        return self._state.value

    @property
    def pending(self) -> int:
        """Plaintext bytes decrypted but not yet accepted by the sink."""
        return len(self._pending)

    def writable(self) -> bool:
        return True

    def _check_open(self) -> None:
        if self._error is not None:
            raise self._error
        if self.closed:
            raise ValueError("write to closed DecryptWriter")

    def _fail(self, err: SealBoxError) -> None:
        logger.warning("Decryption aborted: %s", err)
        self._error = err
        self._buffer = bytearray()
        self._pending = bytearray()

    def _take(self, n: int) -> bytes:
        out = bytes(self._buffer[:n])
        del self._buffer[:n]
        return out

    def _drain(self) -> bool:
        while self._pending:
            n = self._sink.write(bytes(self._pending))
            if not n:
                return False
            del self._pending[:n]
            self.bytes_written += n
        return True

    def _process(self) -> None:
        while True:
            if self._state is _State.WRITING:
                if not self._drain():
                    return
                self._state = _State.READING_HEADER

            elif self._state is _State.READING_HEADER:
                if len(self._buffer) < HEADER_SIZE:
                    return
                self._header = parse_header(self._take(HEADER_SIZE))
                self._state = _State.DECRYPTING

            else:
                needed = self._header.payload_size + TAG_SIZE
                if len(self._buffer) < needed:
                    return
                plaintext = self._decryptor.decrypt(self._header, self._take(needed))
                logger.debug(
                    "Decrypted frame %d (%d bytes)",
                    self._header.sequence_number,
                    len(plaintext),
                )
                self._header = None
                if self._filter is not None:
                    plaintext = self._filter.apply(plaintext)
                    if not plaintext and self._filter.done:
                        # window complete: this frame was only authenticated
                        self._state = _State.READING_HEADER
                        continue
                self._pending += plaintext
                self._state = _State.WRITING

    def write(self, data: bytes) -> int:
        self._check_open()
        self._buffer += data
        try:
            self._process()
        except SealBoxError as err:
            self._fail(err)
            raise
        return len(data)

    def flush(self) -> None:
        """
        Drain queued plaintext and check that no partial frame is left.

        Must only be called once the final frame has arrived in full.
        """
        self._check_open()
        try:
            self._process()
            if self._state is _State.WRITING:
                raise BlockingIOError(errno.EAGAIN, "sink would block", 0)
            if self._buffer or self._state is _State.DECRYPTING:
                buffered = len(self._buffer) + (HEADER_SIZE if self._header else 0)
                raise MalformedFrameError(
                    f"Incomplete frame at end of stream ({buffered} bytes buffered)"
                )
        except SealBoxError as err:
            self._fail(err)
            raise

        flush = getattr(self._sink, "flush", None)
        if flush is not None:
            flush()

    def close(self) -> None:
        if self.closed:
            return
        try:
            if self._error is None:
                self.flush()
        finally:
            self.closed = True

    def __enter__(self) -> DecryptWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            # dropped mid-transfer: discard buffers without flushing
            self.closed = True
            self._buffer = bytearray()
            self._pending = bytearray()
