"""
HTTP-style byte ranges over stored objects.

A range names plaintext bytes (``bytes=a-b``, ``bytes=a-``, ``bytes=-n``, all
inclusive as in RFC 7233). For encrypted objects it is widened to the whole
frames covering it, since a partial frame cannot be authenticated:

    plaintext   |....[=====window=====]...........|
    frames      |  frame 0  |  frame 1  |  frame 2  |
    fetched     |  frame 0  |  frame 1  |
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple

from .exceptions import InvalidRangeError
from ..security.filter import RangeFilter
from ..security.frame import HEADER_SIZE, MAX_PAYLOAD_SIZE, PACKAGE_SIZE, TAG_SIZE


class CiphertextRange(NamedTuple):
    start: int
    end: int  # inclusive
    first_frame: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"


def _parse_bound(value: str, spec: str) -> Optional[int]:
    value = value.strip()
    if not value:
        return None
    # HTTP range bounds are ASCII digits only
    if not (value.isascii() and value.isdigit()):
        raise InvalidRangeError(f"Invalid range bound {value!r} in {spec!r}")
    return int(value)


@dataclass(frozen=True)
class ByteRange:
    """
    Inclusive plaintext range: ``start-end``, ``start-`` (end open) or
    ``-end`` (the last ``end`` bytes, with ``start`` None).
    """

    start: Optional[int]
    end: Optional[int]

    def __post_init__(self) -> None:
        if self.start is None and self.end is None:
            raise InvalidRangeError("Range has no bounds")
        if (self.start is not None and self.start < 0) or (self.end is not None and self.end < 0):
            raise InvalidRangeError(f"Range bounds must be non-negative: {self.start}-{self.end}")
        if self.start is not None and self.end is not None and self.start > self.end:
            raise InvalidRangeError(f"Range start is after its end: {self.start}-{self.end}")
        if self.start is None and self.end == 0:
            raise InvalidRangeError("Empty suffix range")

    @classmethod
    def parse(cls, spec: str) -> ByteRange:
        body = spec.strip()
        if body.startswith("bytes="):
            body = body[len("bytes="):]
        parts = body.split("-")
        if len(parts) != 2:
            raise InvalidRangeError(f"Invalid range: {spec!r}")

        return cls(start=_parse_bound(parts[0], spec), end=_parse_bound(parts[1], spec))

    def offset_length(self, size: int) -> Tuple[int, int]:
        """Return ``(offset, length)`` of the plaintext window in an object of ``size`` bytes."""
        if self.start is None:
            # suffix range: the last `end` bytes
            if size == 0:
                raise InvalidRangeError("Range not satisfiable for an empty object")
            length = min(self.end, size)
            return size - length, length

        if self.start >= size:
            raise InvalidRangeError(
                f"Range start {self.start} is beyond the object size {size}"
            )
        if self.end is None or self.end >= size:
            return self.start, size - self.start
        return self.start, self.end - self.start + 1

    def ciphertext_range(self, size: int, is_encrypted: bool) -> CiphertextRange:
        """
        Map the window to the stored bytes to fetch.

        ``size`` is the plaintext size of the object. For encrypted objects the
        result covers exactly the frames holding the window.
        """
        offset, length = self.offset_length(size)
        if not is_encrypted:
            return CiphertextRange(offset, offset + length - 1, 0)

        last_frame = (size - 1) // MAX_PAYLOAD_SIZE
        start_frame = offset // MAX_PAYLOAD_SIZE
        end_frame = (offset + length - 1) // MAX_PAYLOAD_SIZE

        start = start_frame * PACKAGE_SIZE
        if end_frame < last_frame:
            return CiphertextRange(start, (end_frame + 1) * PACKAGE_SIZE - 1, start_frame)

        # last frame carries the (possibly short) remainder
        stored_size = size + (last_frame + 1) * (HEADER_SIZE + TAG_SIZE)
        return CiphertextRange(start, stored_size - 1, start_frame)

    def get_range(self, size: int, is_encrypted: bool) -> str:
        return str(self.ciphertext_range(size, is_encrypted))

    def range_filter(self, size: int) -> RangeFilter:
        """Filter for the ciphertext returned by :meth:`ciphertext_range` on an encrypted object."""
        offset, length = self.offset_length(size)
        first_frame = offset // MAX_PAYLOAD_SIZE
        return RangeFilter.for_window(offset, length, consumed=first_frame * MAX_PAYLOAD_SIZE)
