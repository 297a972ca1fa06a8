"""Scene-change detection with ffmpeg's scene score and showinfo filter."""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from moshpit.core.channels import CancelToken, Channel, Operation
from moshpit.core.errors import FrameRateUnknownError, ProtocolError, ValidationError
from moshpit.video.ffmpeg import start_ffmpeg

_log = logging.getLogger(__name__)

# fps of the first stream, e.g. "Stream #0:0(und): Video: h264 ..., 25 fps, 25 tbr, ..."
FPS_REGEX = re.compile(r"Stream #0:0.* ([0-9.]+) fps")
# showinfo prints one line per selected frame: "[Parsed_showinfo_1 @ 0x...] n:   0 pts: ... pts_time:4.2 ..."
SHOWINFO_TIMESTAMP_REGEX = re.compile(r"\[Parsed_showinfo_\d+ .*\bpts_time:(\S+)")


def format_timecode(frame: int, fps: float) -> str:
    """
    Non-drop-frame SMPTE-style timecode HH:MM:SS:FF for a frame index.

    Fractional rates count frames at the nearest integer rate (29.97 -> 30).
    """
    nominal = max(1, round(fps))
    frame = max(0, frame)
    seconds, ff = divmod(frame, nominal)
    minutes, ss = divmod(seconds, 60)
    hh, mm = divmod(minutes, 60)
    return f"{hh:02d}:{mm:02d}:{ss:02d}:{ff:02d}"


@dataclass(frozen=True)
class VideoTime:
    """A point in a video: elapsed seconds, frame index, frame rate, and display timecode."""

    time: float
    frame: int
    fps: float
    timecode: str = field(compare=False)

    @classmethod
    def from_seconds(cls, seconds: float, fps: float) -> "VideoTime":
        if fps <= 0:
            raise FrameRateUnknownError("frame rate must be known before converting timestamps")
        frame = max(0, round(seconds * fps))
        return cls(time=seconds, frame=frame, fps=fps, timecode=format_timecode(frame, fps))

    def __str__(self) -> str:
        return f"{self.timecode} (frame {self.frame})"


def scene_filter_args(input_file: str | Path, threshold: float) -> list[str]:
    """ffmpeg arguments that print one showinfo line per scene change and write no output file."""
    return [
        "-i",
        str(input_file),
        "-filter:v",
        f"select='gte(scene,{threshold:f})',showinfo",
        "-f",
        "null",
        "-",
    ]


class SceneParser:
    """
    Stateful parser for ffmpeg stderr lines of a scene-detection run.

    The first fps line wins. A showinfo timestamp before any fps line is a protocol error.
    """

    def __init__(self) -> None:
        self.fps: float | None = None

    def feed(self, line: str) -> VideoTime | None:
        if self.fps is None:
            m = FPS_REGEX.search(line)
            if m is not None:
                try:
                    self.fps = float(m.group(1))
                except ValueError as e:
                    raise ProtocolError(f"error parsing fps value: {m.group(1)!r}") from e
                _log.debug("scene detection: stream fps %s", self.fps)

        m = SHOWINFO_TIMESTAMP_REGEX.search(line)
        if m is None:
            return None
        if self.fps is None:
            # ffmpeg prints the stream info before any filter output.
            raise FrameRateUnknownError("could not find fps value of input file")
        try:
            seconds = float(m.group(1))
        except ValueError as e:
            raise ProtocolError(f"error parsing timestamp value: {m.group(1)!r}") from e
        return VideoTime.from_seconds(seconds, self.fps)


def find_scenes(
    ffmpeg_path: str,
    input_file: str | Path,
    threshold: float,
    *,
    log_path: str | Path | None = None,
    scenes: Channel[VideoTime] | None = None,
    progress: Channel[float] | None = None,
    cancel: CancelToken | None = None,
) -> list[VideoTime]:
    """
    Find scene changes in input_file whose scene score is at least threshold (0..1).

    Each VideoTime is sent on scenes as soon as ffmpeg reports it; progress values are
    forwarded from the ffmpeg run. Returns all scene changes in order.
    """
    if threshold < 0 or threshold > 1:
        raise ValidationError("scene detection threshold must be a value between 0 and 1")

    op, ffmpeg_progress, lines = start_ffmpeg(
        ffmpeg_path,
        scene_filter_args(input_file, threshold),
        log_path=log_path,
        forward_stderr=True,
        cancel=cancel,
    )
    parser = SceneParser()
    found: list[VideoTime] = []
    finished = False
    try:
        for ch, item in op.events():
            if ch is ffmpeg_progress:
                if progress is not None:
                    progress.send(item, cancel=cancel)
                continue
            scene = parser.feed(item)
            if scene is None:
                continue
            found.append(scene)
            _log.debug("scene change at %s", scene)
            if scenes is not None:
                scenes.send(scene, cancel=cancel)
        finished = True
    finally:
        if not finished:
            op.abandon()
    _log.info("found %d scene change(s) in %s", len(found), input_file)
    return found


def start_find_scenes(
    ffmpeg_path: str,
    input_file: str | Path,
    threshold: float,
    *,
    log_path: str | Path | None = None,
    cancel: CancelToken | None = None,
) -> tuple[Operation, Channel[VideoTime], Channel[float]]:
    """
    Run find_scenes on a background thread. Returns (operation, scene channel, progress channel).

    The threshold is validated here, before the thread starts.
    """
    if threshold < 0 or threshold > 1:
        raise ValidationError("scene detection threshold must be a value between 0 and 1")
    scenes: Channel[VideoTime] = Channel("scenes.scenes")
    progress: Channel[float] = Channel("scenes.progress")

    def target(token: CancelToken) -> None:
        find_scenes(
            ffmpeg_path,
            input_file,
            threshold,
            log_path=log_path,
            scenes=scenes,
            progress=progress,
            cancel=token,
        )

    op = Operation("find_scenes", target, [scenes, progress], cancel=cancel)
    return op.start(), scenes, progress
