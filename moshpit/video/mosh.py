"""Datamoshing: drop frames from an AVI stream and repeat the next surviving frame in their place."""

import logging
from dataclasses import dataclass
from typing import BinaryIO, Iterable

from moshpit.core.channels import CancelToken, Channel, Operation
from moshpit.video.avi import FrameScanner, FrameType, classify_frame

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class MoshResult:
    """Record counts for one remove_frames run."""

    frames_read: int
    frames_written: int
    header_frames: int
    removed: int
    # Removals at the very end of the stream that no later frame could replace.
    undrained: int

    @property
    def count_preserved(self) -> bool:
        return self.frames_read == self.frames_written


def remove_frames(
    reader: BinaryIO,
    writer: BinaryIO,
    frames_to_remove: Iterable[int],
    processed: Channel[int] | None = None,
    cancel: CancelToken | None = None,
) -> MoshResult:
    """
    Copy an AVI stream from reader to writer, replacing the frames at the given indices
    with the frame that follows them.

    Records before the first reference frame are container setup data: they are copied
    verbatim and never indexed. From the first reference frame on, records are numbered
    from 0. A record whose index is in frames_to_remove is skipped and the next kept
    record is written once more for every skipped one, so the record count stays the
    same unless the removals run to the end of the stream. After each indexed record
    is handled its index is sent on processed.

    Indices that never occur in the stream are ignored. I/O errors propagate
    immediately and no further indices are reported.
    """
    remove = frozenset(frames_to_remove)
    index = -1
    duplicate = 0
    frames_read = 0
    frames_written = 0
    header_frames = 0
    removed = 0

    for frame in FrameScanner(reader):
        if cancel is not None:
            cancel.raise_if_cancelled()
        frames_read += 1
        if index < 0:
            if classify_frame(frame) is not FrameType.REFERENCE:
                writer.write(frame)
                frames_written += 1
                header_frames += 1
                continue
        index += 1

        if index in remove:
            duplicate += 1
            removed += 1
        else:
            for _ in range(duplicate + 1):
                writer.write(frame)
            frames_written += duplicate + 1
            duplicate = 0

        if processed is not None:
            processed.send(index, cancel=cancel)

    if duplicate:
        _log.warning("%d trailing frame(s) removed with no following frame to repeat", duplicate)
    result = MoshResult(
        frames_read=frames_read,
        frames_written=frames_written,
        header_frames=header_frames,
        removed=removed,
        undrained=duplicate,
    )
    _log.debug("remove_frames: %s", result)
    return result


def start_remove_frames(
    reader: BinaryIO,
    writer: BinaryIO,
    frames_to_remove: Iterable[int],
    *,
    cancel: CancelToken | None = None,
) -> tuple[Operation, Channel[int]]:
    """Run remove_frames on a background thread. Returns the operation and its processed-index channel."""
    processed: Channel[int] = Channel("mosh.processed")
    frames = list(frames_to_remove)

    def target(token: CancelToken) -> None:
        remove_frames(reader, writer, frames, processed, cancel=token)

    op = Operation("remove_frames", target, [processed], cancel=cancel)
    return op.start(), processed
