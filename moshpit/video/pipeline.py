"""End-to-end mosh pipeline: source -> AVI with forced keyframes -> frames removed -> MP4."""

import logging
import tempfile
import uuid
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

from moshpit.core.channels import CancelToken, Operation
from moshpit.core.config import Settings, get_config
from moshpit.core.errors import ValidationError
from moshpit.video.convert import (
    AVI_EXTENSION,
    MP4_EXTENSION,
    require_extension,
    start_convert_to_avi,
    start_convert_to_mp4,
)
from moshpit.video.mosh import start_remove_frames
from moshpit.video.scenes import VideoTime

_log = logging.getLogger(__name__)

STAGE_COUNT = 3
STAGE_CONVERT = "Writing moshable file"
STAGE_MOSH = "Moshing AVI file"
STAGE_BAKE = "Baking output file"

StageCallback = Callable[[int, int, str], None]
ProgressCallback = Callable[[float], None]


def parse_frame_args(args: Iterable[str], scenes: Sequence[VideoTime] = ()) -> list[int]:
    """
    Turn command-line words into frame indices.

    "all" expands to every detected scene change; words that are not non-negative
    integers are logged and skipped. Order is kept, duplicates removed.
    """
    frames: list[int] = []
    for arg in args:
        if arg.lower() == "all":
            if not scenes:
                _log.warning('option "all": no scene changes were previously found')
                continue
            frames.extend(scene.frame for scene in scenes)
            continue
        try:
            frame = int(arg)
        except ValueError:
            _log.warning('option "%s" is not a valid frame index', arg)
            continue
        if frame < 0:
            _log.warning('option "%s" is not a valid frame index', arg)
            continue
        frames.append(frame)
    return list(dict.fromkeys(frames))


def _drive(op: Operation, on_value: Callable[[Any], None]) -> None:
    """Feed every output value of op to on_value; cancel and drain op if anything fails."""
    finished = False
    try:
        for _, value in op.events():
            on_value(value)
        finished = True
    finally:
        if not finished:
            op.abandon()


def temp_avi_path(temp_dir: str | Path | None = None) -> Path:
    base = Path(temp_dir) if temp_dir else Path(tempfile.gettempdir())
    return base / f"{uuid.uuid4()}{AVI_EXTENSION}"


def mosh_video(
    input_file: str | Path,
    output_file: str | Path,
    frames: Sequence[int],
    *,
    settings: Settings | None = None,
    on_stage: StageCallback | None = None,
    on_progress: ProgressCallback | None = None,
    cancel: CancelToken | None = None,
) -> Path:
    """
    Datamosh input_file at the given frame indices and write output_file (.mp4).

    Stages: (1) convert to a mute AVI with keyframes at frames, (2) remove those
    keyframes, (3) bake to MP4 with the original audio. Temporary AVI files are always
    deleted; a partially written output_file is deleted on failure.
    """
    settings = settings or get_config()
    output_path = Path(output_file).resolve()
    require_extension(output_path, MP4_EXTENSION)
    frames = sorted(set(int(f) for f in frames))
    if not frames:
        raise ValidationError("no valid frames to mosh were specified")
    if any(f < 0 for f in frames):
        raise ValidationError("frame indices must be non-negative")

    def stage(n: int, description: str) -> None:
        _log.info("[%d/%d] %s", n, STAGE_COUNT, description)
        if on_stage is not None:
            on_stage(n, STAGE_COUNT, description)

    def report(value: float) -> None:
        if on_progress is not None:
            on_progress(min(1.0, max(0.0, value)))

    avi_path = temp_avi_path(settings.temp_dir)
    moshed_path = temp_avi_path(settings.temp_dir)
    log_path = settings.ffmpeg_log_path
    succeeded = False
    try:
        stage(1, STAGE_CONVERT)
        op, _ = start_convert_to_avi(
            settings.ffmpeg_path,
            input_file,
            avi_path,
            quality=settings.avi_quality,
            keyframes=frames,
            log_path=log_path,
            cancel=cancel,
        )
        _drive(op, report)

        stage(2, STAGE_MOSH)
        last_frame = frames[-1]
        with open(avi_path, "rb") as reader, open(moshed_path, "wb") as writer:
            op, _ = start_remove_frames(reader, writer, frames, cancel=cancel)
            _drive(op, lambda index: report((index + 1) / (last_frame + 1)))
        report(1.0)

        stage(3, STAGE_BAKE)
        op, _ = start_convert_to_mp4(
            settings.ffmpeg_path,
            moshed_path,
            output_path,
            sound_file=input_file,
            quality=settings.mp4_quality,
            log_path=log_path,
            cancel=cancel,
        )
        _drive(op, report)
        succeeded = True
    finally:
        for path in (avi_path, moshed_path):
            path.unlink(missing_ok=True)
        if not succeeded:
            output_path.unlink(missing_ok=True)
    _log.info("moshed %d frame(s) into %s", len(frames), output_path)
    return output_path
