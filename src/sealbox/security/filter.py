"""Plaintext window filtering for ranged decryption."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class RangeFilter:
    """
    Trims decrypted frames down to the plaintext window ``[offset, offset + remaining)``.

    ``consumed`` counts plaintext bytes produced by decryption so far. It normally
    starts at 0, or at ``first_frame * MAX_PAYLOAD_SIZE`` when the ciphertext fed to
    the decryptor starts mid-object. Frames must be applied in stream order.
    """

    offset: int
    remaining: int
    consumed: int = 0

    @classmethod
    def for_window(cls, offset: int, length: int, consumed: int = 0) -> RangeFilter:
        if offset < 0 or length < 0 or consumed < 0:
            raise ValueError("offset, length and consumed must be non-negative")
        return cls(offset=offset, remaining=length, consumed=consumed)

    @property
    def done(self) -> bool:
        return self.remaining == 0

    def apply(self, plaintext: bytes) -> bytes:
        """Return the part of one decrypted frame that lies inside the window."""
        size = len(plaintext)

        # whole frame ends before the window starts
        if self.consumed + size <= self.offset:
            self.consumed += size
            return b""

        skip = max(self.offset - self.consumed, 0)
        available = size - skip
        self.consumed += size

        if available <= self.remaining:
            self.offset = self.consumed
            self.remaining -= available
            return bytes(plaintext[skip:])

        out = bytes(plaintext[skip : skip + self.remaining])
        self.offset = self.consumed
        self.remaining = 0
        return out
