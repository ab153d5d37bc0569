"""
Unit tests for FrameDecryptor and the DecryptWriter state machine.
"""

import io

import pytest

from sealbox.core.exceptions import AuthenticationFailedError, MalformedFrameError
from sealbox.security.decryptor import DecryptWriter, FrameDecryptor
from sealbox.security.encryptor import EncryptReader, FrameEncryptor
from sealbox.security.filter import RangeFilter
from sealbox.security.frame import HEADER_SIZE, MAX_PAYLOAD_SIZE, PACKAGE_SIZE

KEY = bytes(range(32))
OTHER_KEY = bytes(32)


def encrypt(plaintext: bytes, key: bytes = KEY) -> bytes:
    return EncryptReader(io.BytesIO(plaintext), FrameEncryptor(key)).read()


def decrypt(stream: bytes, step: int, key: bytes = KEY, range_filter=None) -> bytes:
    sink = io.BytesIO()
    writer = DecryptWriter(sink, FrameDecryptor(key), range_filter)
    for i in range(0, len(stream), step):
        assert writer.write(stream[i : i + step]) == len(stream[i : i + step])
    writer.flush()
    return sink.getvalue()


class ThrottledSink:
    """Non-blocking sink: takes at most `limit` bytes, and every other call would block."""

    def __init__(self, limit: int):
        self.data = bytearray()
        self._limit = limit
        self._block = False

    def write(self, b):
        self._block = not self._block
        if self._block:
            return None
        n = min(len(b), self._limit)
        self.data += b[:n]
        return n


# ==============================================================================
# Tests: Round trip
# ==============================================================================

@pytest.mark.parametrize(
    "size",
    [0, 1, 100, MAX_PAYLOAD_SIZE - 1, MAX_PAYLOAD_SIZE, MAX_PAYLOAD_SIZE + 1, 3 * MAX_PAYLOAD_SIZE + 3392],
)
def test_roundtrip_sizes(size):
    """Empty, sub-frame, exact-frame and multi-frame objects decrypt unchanged."""
    plaintext = bytes(i % 251 for i in range(size))
    assert decrypt(encrypt(plaintext), step=PACKAGE_SIZE) == plaintext


@pytest.mark.parametrize("step", [1, 5, HEADER_SIZE - 1, HEADER_SIZE, 4096, PACKAGE_SIZE + 3, 10**7])
def test_result_independent_of_write_chunking(step):
    """Output does not depend on how ciphertext is split across writes."""
    plaintext = b"abcde" * 30_000
    assert decrypt(encrypt(plaintext), step=step) == plaintext


def test_decrypt_stream_helper():
    """decrypt_stream drains a blocking source and reports bytes written."""
    plaintext = b"stream" * 50_000
    sink = io.BytesIO()
    n = FrameDecryptor(KEY).decrypt_stream(io.BytesIO(encrypt(plaintext)), sink)
    assert n == len(plaintext)
    assert sink.getvalue() == plaintext


def test_state_waits_for_more_input():
    """The writer parks in a state until enough bytes for the next step arrive."""
    stream = encrypt(b"hello world")
    sink = io.BytesIO()
    writer = DecryptWriter(sink, FrameDecryptor(KEY))

    assert writer.write(stream[:10]) == 10
    assert writer.state == "reading_header"
    assert writer.write(stream[10:20]) == 10
    assert writer.state == "decrypting"
    assert sink.getvalue() == b""

    writer.write(stream[20:])
    assert writer.state == "reading_header"
    assert sink.getvalue() == b"hello world"


# ==============================================================================
# Tests: Tampering and ordering
# ==============================================================================

@pytest.mark.parametrize("position", [HEADER_SIZE, HEADER_SIZE + 50, -1, -16])
def test_bit_flip_fails_authentication(position):
    """A flipped payload or tag bit fails and emits nothing."""
    stream = bytearray(encrypt(b"secret" * 20))
    stream[position] ^= 0x01
    sink = io.BytesIO()
    writer = DecryptWriter(sink, FrameDecryptor(KEY))
    with pytest.raises(AuthenticationFailedError):
        writer.write(bytes(stream))
    assert sink.getvalue() == b""


def test_header_nonce_tamper_fails_authentication():
    """The header is associated data, so nonce changes fail authentication."""
    stream = bytearray(encrypt(b"secret"))
    stream[12] ^= 0x80
    with pytest.raises(AuthenticationFailedError):
        decrypt(bytes(stream), step=len(stream))


def test_header_version_tamper_is_malformed():
    """An unknown version is rejected before decryption."""
    stream = bytearray(encrypt(b"secret"))
    stream[0] = 0x01
    with pytest.raises(MalformedFrameError):
        decrypt(bytes(stream), step=len(stream))


def test_tamper_in_later_frame_keeps_earlier_output_only():
    """Frames before the damaged one are delivered; nothing after it."""
    plaintext = bytes(2 * MAX_PAYLOAD_SIZE + 10)
    stream = bytearray(encrypt(plaintext))
    stream[PACKAGE_SIZE + HEADER_SIZE + 1] ^= 0xFF
    sink = io.BytesIO()
    writer = DecryptWriter(sink, FrameDecryptor(KEY))
    with pytest.raises(AuthenticationFailedError):
        writer.write(bytes(stream))
    assert sink.getvalue() == plaintext[:MAX_PAYLOAD_SIZE]


def test_wrong_key_fails():
    """Decrypting under another key fails authentication."""
    with pytest.raises(AuthenticationFailedError):
        decrypt(encrypt(b"data"), step=100, key=OTHER_KEY)


def test_swapped_frames_rejected():
    """Reordered frames are detected by sequence number."""
    stream = encrypt(bytes(3 * MAX_PAYLOAD_SIZE))
    swapped = stream[PACKAGE_SIZE : 2 * PACKAGE_SIZE] + stream[:PACKAGE_SIZE] + stream[2 * PACKAGE_SIZE :]
    with pytest.raises(AuthenticationFailedError, match="out of order"):
        decrypt(swapped, step=PACKAGE_SIZE)


def test_replayed_frame_rejected():
    """Repeating a frame is rejected."""
    stream = encrypt(bytes(2 * MAX_PAYLOAD_SIZE))
    replayed = stream[:PACKAGE_SIZE] + stream[:PACKAGE_SIZE]
    with pytest.raises(AuthenticationFailedError):
        decrypt(replayed, step=PACKAGE_SIZE)


def test_frame_from_other_stream_rejected():
    """Frames spliced in from another stream do not match the pinned nonce."""
    a = encrypt(bytes(2 * MAX_PAYLOAD_SIZE))
    b = encrypt(bytes(2 * MAX_PAYLOAD_SIZE))
    spliced = a[:PACKAGE_SIZE] + b[PACKAGE_SIZE:]
    with pytest.raises(AuthenticationFailedError, match="stream"):
        decrypt(spliced, step=PACKAGE_SIZE)


def test_expected_start_sequence_is_enforced():
    """A mid-stream read only accepts the frame index it asked for."""
    stream = encrypt(bytes(2 * MAX_PAYLOAD_SIZE))
    second = stream[PACKAGE_SIZE:]
    assert FrameDecryptor(KEY, sequence_number=1).decrypt(
        second[:HEADER_SIZE], second[HEADER_SIZE:]
    ) == bytes(MAX_PAYLOAD_SIZE)
    with pytest.raises(AuthenticationFailedError):
        FrameDecryptor(KEY, sequence_number=0).decrypt(second[:HEADER_SIZE], second[HEADER_SIZE:])


def test_body_size_mismatch_is_malformed():
    """A body shorter than the header says is malformed."""
    frame = encrypt(b"abc")
    with pytest.raises(MalformedFrameError):
        FrameDecryptor(KEY).decrypt(frame[:HEADER_SIZE], frame[HEADER_SIZE:-1])


# ==============================================================================
# Tests: Flush, errors and lifecycle
# ==============================================================================

@pytest.mark.parametrize("cut", [1, HEADER_SIZE - 1, HEADER_SIZE, HEADER_SIZE + 5])
def test_flush_with_incomplete_frame_fails(cut):
    """Flushing with a partial frame buffered is an error."""
    stream = encrypt(b"z" * 1000)
    sink = io.BytesIO()
    writer = DecryptWriter(sink, FrameDecryptor(KEY))
    writer.write(stream[:-cut])
    with pytest.raises(MalformedFrameError, match="Incomplete"):
        writer.flush()


def test_writer_is_unusable_after_failure():
    """After a fatal error every call re-raises the same exception."""
    stream = bytearray(encrypt(b"abc"))
    stream[-1] ^= 1
    writer = DecryptWriter(io.BytesIO(), FrameDecryptor(KEY))
    with pytest.raises(AuthenticationFailedError) as first:
        writer.write(bytes(stream))
    with pytest.raises(AuthenticationFailedError) as second:
        writer.write(b"more")
    assert second.value is first.value


def test_sink_errors_propagate():
    """Sink OSErrors are not wrapped."""
    class BrokenSink:
        def write(self, b):
            raise OSError("pipe closed")

    writer = DecryptWriter(BrokenSink(), FrameDecryptor(KEY))
    with pytest.raises(OSError, match="pipe closed"):
        writer.write(encrypt(b"payload"))


def test_non_blocking_sink_is_drained_across_calls():
    """Plaintext a slow sink refused is retried until all of it is taken."""
    plaintext = b"0123456789" * 20_000
    stream = encrypt(plaintext)
    sink = ThrottledSink(limit=5000)
    writer = DecryptWriter(sink, FrameDecryptor(KEY))

    for i in range(0, len(stream), 8192):
        writer.write(stream[i : i + 8192])

    attempts = 0
    while True:
        try:
            writer.flush()
            break
        except BlockingIOError:
            attempts += 1
            assert writer.state == "writing"
            assert writer.pending > 0

    assert attempts > 0
    assert bytes(sink.data) == plaintext
    assert writer.bytes_written == len(plaintext)


def test_context_manager_flushes():
    """Leaving the with-block cleanly flushes and closes."""
    sink = io.BytesIO()
    with DecryptWriter(sink, FrameDecryptor(KEY)) as writer:
        writer.write(encrypt(b"ctx"))
    assert sink.getvalue() == b"ctx"
    assert writer.closed
    with pytest.raises(ValueError):
        writer.write(b"x")


def test_context_manager_cancel_discards_buffers():
    """Leaving on an exception closes without flushing."""
    stream = encrypt(b"partial" * 100)
    writer = DecryptWriter(io.BytesIO(), FrameDecryptor(KEY))
    with pytest.raises(RuntimeError):
        with writer:
            writer.write(stream[:20])
            raise RuntimeError("transfer cancelled")
    assert writer.closed


# ==============================================================================
# Tests: Range filtering through the writer
# ==============================================================================

PLAINTEXT = b"abcde" * 40_000


@pytest.fixture(scope="module")
def pattern_stream():
    return encrypt(PLAINTEXT)


@pytest.mark.parametrize(
    "offset,length,expected",
    [
        (0, 5, b"abcde"),
        (0, 6, b"abcdea"),
        (65533, 3, b"dea"),
        (65533, 8, b"deabcdea"),
        (69999, 1, b"e"),
        (131069, 7, b"eabcdea"),
        (196605, 6, b"abcdea"),
        (199999, 1, b"e"),
    ],
)
@pytest.mark.parametrize("step", [7, 4096, PACKAGE_SIZE, 10**7])
def test_filtered_output_is_exact(pattern_stream, offset, length, expected, step):
    """Range-filtered output is byte-exact for every chunking."""
    out = decrypt(pattern_stream, step=step, range_filter=RangeFilter.for_window(offset, length))
    assert out == expected
    assert out == PLAINTEXT[offset : offset + length]


def test_whole_object_filter_equals_unfiltered(pattern_stream):
    """A whole-object window is the same as no filter."""
    full = decrypt(pattern_stream, step=PACKAGE_SIZE)
    filtered = decrypt(
        pattern_stream, step=PACKAGE_SIZE, range_filter=RangeFilter.for_window(0, len(PLAINTEXT))
    )
    assert filtered == full == PLAINTEXT


def test_frames_after_window_are_still_authenticated(pattern_stream):
    """Tampering after the window still fails the transfer."""
    stream = bytearray(pattern_stream)
    stream[-1] ^= 1
    with pytest.raises(AuthenticationFailedError):
        decrypt(bytes(stream), step=PACKAGE_SIZE, range_filter=RangeFilter.for_window(0, 5))


def test_nothing_queued_once_window_is_emitted(pattern_stream):
    """Once the window is complete, later frames are authenticated and counted but never queued."""
    flt = RangeFilter.for_window(10, 5)
    sink = io.BytesIO()
    writer = DecryptWriter(sink, FrameDecryptor(KEY), flt)
    writer.write(pattern_stream)
    writer.flush()

    assert sink.getvalue() == PLAINTEXT[10:15]
    assert flt.done
    assert flt.consumed == len(PLAINTEXT)
    assert writer.state == "reading_header"
    assert writer.pending == 0
