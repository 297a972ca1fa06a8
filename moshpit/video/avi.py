"""AVI frame scanning and classification: split a raw stream on the 00dc delimiter and tag I/P-frames."""

import enum
import logging
from collections import Counter
from typing import BinaryIO, Iterator

from moshpit.core.channels import CancelToken, Channel, Operation
from moshpit.core.errors import FrameTooLargeError

_log = logging.getLogger(__name__)

# An AVI frame is never assumed to be larger than 1 MiB.
MAX_FRAME_BYTES = 1024 * 1024
READ_CHUNK_BYTES = 64 * 1024

FRAME_DELIMITER = b"00dc"
REFERENCE_PREFIX = bytes.fromhex("0001B0")
PREDICTED_PREFIX = bytes.fromhex("0001B6")

# The frame type marker sits right after the 4-byte chunk size that follows the previous delimiter.
FRAME_TYPE_OFFSET = 5
FRAME_TYPE_END = FRAME_TYPE_OFFSET + len(REFERENCE_PREFIX)


class FrameType(enum.Enum):
    UNKNOWN = "unknown"
    REFERENCE = "reference"
    PREDICTED = "predicted"


def classify_frame(frame: bytes) -> FrameType:
    """Classify a frame record by the 3 bytes at FRAME_TYPE_OFFSET. Short records are UNKNOWN."""
    if len(frame) < FRAME_TYPE_END:
        return FrameType.UNKNOWN
    marker = frame[FRAME_TYPE_OFFSET:FRAME_TYPE_END]
    if marker == REFERENCE_PREFIX:
        return FrameType.REFERENCE
    if marker == PREDICTED_PREFIX:
        return FrameType.PREDICTED
    return FrameType.UNKNOWN


class FrameScanner:
    """
    Forward-only iterator over the frame records of an AVI byte stream.

    Each record is the bytes up to and including the next FRAME_DELIMITER. Trailing
    bytes without a delimiter at end of input are dropped. A record that grows past
    max_frame_bytes raises FrameTooLargeError. The scanner cannot be restarted: the
    underlying reader is consumed as it goes.
    """

    def __init__(
        self,
        reader: BinaryIO,
        *,
        max_frame_bytes: int = MAX_FRAME_BYTES,
        chunk_size: int = READ_CHUNK_BYTES,
    ) -> None:
        self._reader = reader
        self._max_frame_bytes = max_frame_bytes
        self._chunk_size = chunk_size
        self._buffer = bytearray()
        # Offset in _buffer from which the delimiter search resumes.
        self._search_from = 0
        self._eof = False
        self._frames = 0
        self._dropped_bytes = 0

    @property
    def frames(self) -> int:
        """Number of records returned so far."""
        return self._frames

    @property
    def dropped_bytes(self) -> int:
        """Unterminated trailing bytes discarded at end of input."""
        return self._dropped_bytes

    def __iter__(self) -> Iterator[bytes]:
        return self

    def __next__(self) -> bytes:
        while True:
            i = self._buffer.find(FRAME_DELIMITER, self._search_from)
            if i >= 0:
                end = i + len(FRAME_DELIMITER)
                if end > self._max_frame_bytes:
                    raise FrameTooLargeError(
                        f"frame record of {end} bytes exceeds {self._max_frame_bytes} bytes"
                    )
                frame = bytes(self._buffer[:end])
                del self._buffer[:end]
                self._search_from = 0
                self._frames += 1
                return frame
            if len(self._buffer) > self._max_frame_bytes:
                raise FrameTooLargeError(
                    f"no frame delimiter within {self._max_frame_bytes} bytes"
                )
            if self._eof:
                if self._buffer:
                    self._dropped_bytes = len(self._buffer)
                    _log.debug("dropping %d unterminated trailing bytes", len(self._buffer))
                    self._buffer.clear()
                raise StopIteration
            # A delimiter may straddle the chunk boundary; rescan the last few bytes.
            self._search_from = max(0, len(self._buffer) - len(FRAME_DELIMITER) + 1)
            chunk = self._reader.read(self._chunk_size)
            if not chunk:
                self._eof = True
                continue
            self._buffer += chunk


def analyze_frames(
    reader: BinaryIO,
    frame_types: Channel[FrameType] | None = None,
    cancel: CancelToken | None = None,
) -> Counter[FrameType]:
    """
    Classify every record in the stream, sending each FrameType in order on frame_types.
    Returns the per-type counts.
    """
    counts: Counter[FrameType] = Counter()
    for frame in FrameScanner(reader):
        if cancel is not None:
            cancel.raise_if_cancelled()
        frame_type = classify_frame(frame)
        counts[frame_type] += 1
        if frame_types is not None:
            frame_types.send(frame_type, cancel=cancel)
    _log.debug(
        "analyzed %d frames: %d reference, %d predicted, %d unknown",
        sum(counts.values()),
        counts[FrameType.REFERENCE],
        counts[FrameType.PREDICTED],
        counts[FrameType.UNKNOWN],
    )
    return counts


def start_analyze_frames(
    reader: BinaryIO,
    *,
    cancel: CancelToken | None = None,
) -> tuple[Operation, Channel[FrameType]]:
    """Run analyze_frames on a background thread. Returns the operation and its frame-type channel."""
    frame_types: Channel[FrameType] = Channel("analyze.frame_types")

    def target(token: CancelToken) -> None:
        analyze_frames(reader, frame_types, cancel=token)

    op = Operation("analyze_frames", target, [frame_types], cancel=cancel)
    return op.start(), frame_types
