"""FFmpeg argument construction for the two encode directions of the mosh pipeline.

convert_to_avi: source video -> mute AVI with keyframes at chosen frames (moshing substrate).
convert_to_mp4: moshed AVI (+ audio from the original file) -> MP4 delivery file.
"""

import math
from pathlib import Path
from typing import Sequence

from moshpit.core.channels import CancelToken, Channel, Operation
from moshpit.core.errors import ValidationError
from moshpit.video.ffmpeg import run_ffmpeg, start_ffmpeg

AVI_EXTENSION = ".avi"
MP4_EXTENSION = ".mp4"

# ffmpeg's -q scale: 0 is best quality, 31 is worst.
MAX_QSCALE = 31
# Disables automatic keyframes; values above 600 need -strict experimental for mpeg4.
MAX_GOP_SIZE = 2**31 - 1
MP4_AUDIO_ARGS = ("-c:a", "aac", "-b:a", "320k")


def quality_to_qscale(quality: float) -> int:
    """
    Map quality 0.0 (lowest) .. 1.0 (highest) to ffmpeg's inverted 0..31 quantizer.

    Halves round up: 0.5 -> round_half_up(15.5) = 16.
    """
    if quality < 0 or quality > 1:
        raise ValidationError("quality setting must be a value between 0 and 1")
    return int(math.floor(MAX_QSCALE * (1 - quality) + 0.5))


def require_extension(path: str | Path, extension: str) -> None:
    if Path(path).suffix.lower() != extension:
        raise ValidationError(f"output file must have the {extension} extension")


def force_key_frames_expr(frames: Sequence[int]) -> str:
    """ffmpeg expression that is non-zero exactly at the given frame numbers: expr:eq(n,a)+eq(n,b)..."""
    return "expr:" + "+".join(f"eq(n,{int(frame)})" for frame in frames)


def avi_args(
    input_file: str | Path,
    output_file: str | Path,
    quality: float,
    keyframes: Sequence[int] | None = None,
) -> list[str]:
    """
    Arguments converting input_file to a mute AVI.

    When keyframes is given, automatic keyframe placement is disabled and keyframes are
    forced at exactly those frame indices. Otherwise ffmpeg places keyframes itself.
    """
    require_extension(output_file, AVI_EXTENSION)
    qscale = quality_to_qscale(quality)
    args = [
        "-i",
        str(input_file),
        # audio frames would get in the way of frame-level editing
        "-an",
        "-q",
        str(qscale),
        "-y",
    ]
    if keyframes is not None:
        args += ["-g", str(MAX_GOP_SIZE), "-strict", "experimental"]
        if keyframes:
            args += ["-force_key_frames", force_key_frames_expr(keyframes)]
    args.append(str(output_file))
    return args


def mp4_args(
    avi_file: str | Path,
    output_file: str | Path,
    quality: float,
    sound_file: str | Path | None = None,
) -> list[str]:
    """
    Arguments converting a (moshed) AVI to MP4, taking the audio stream from sound_file.

    The audio map is optional (`1:a:0?`) so sources without audio still work.
    """
    require_extension(output_file, MP4_EXTENSION)
    qscale = quality_to_qscale(quality)
    args = ["-i", str(avi_file)]
    if sound_file:
        args += ["-i", str(sound_file), "-map", "0:v:0", "-map", "1:a:0?", *MP4_AUDIO_ARGS]
    args += ["-q", str(qscale), "-preset", "ultrafast", "-y", str(output_file)]
    return args


def convert_to_avi(
    ffmpeg_path: str,
    input_file: str | Path,
    output_file: str | Path,
    *,
    quality: float = 1.0,
    keyframes: Sequence[int] | None = None,
    log_path: str | Path | None = None,
    progress: Channel[float] | None = None,
    cancel: CancelToken | None = None,
) -> None:
    """Blocking conversion to a mute AVI for moshing. Validation errors are raised before ffmpeg starts."""
    args = avi_args(input_file, output_file, quality, keyframes)
    run_ffmpeg(ffmpeg_path, args, log_path=log_path, progress=progress, cancel=cancel)


def convert_to_mp4(
    ffmpeg_path: str,
    avi_file: str | Path,
    output_file: str | Path,
    *,
    sound_file: str | Path | None = None,
    quality: float = 1.0,
    log_path: str | Path | None = None,
    progress: Channel[float] | None = None,
    cancel: CancelToken | None = None,
) -> None:
    """Blocking conversion of an AVI to MP4 with optional audio. Validation errors are raised before ffmpeg starts."""
    args = mp4_args(avi_file, output_file, quality, sound_file)
    run_ffmpeg(ffmpeg_path, args, log_path=log_path, progress=progress, cancel=cancel)


def start_convert_to_avi(
    ffmpeg_path: str,
    input_file: str | Path,
    output_file: str | Path,
    *,
    quality: float = 1.0,
    keyframes: Sequence[int] | None = None,
    log_path: str | Path | None = None,
    cancel: CancelToken | None = None,
) -> tuple[Operation, Channel[float]]:
    args = avi_args(input_file, output_file, quality, keyframes)
    op, progress, _ = start_ffmpeg(ffmpeg_path, args, log_path=log_path, cancel=cancel)
    return op, progress


def start_convert_to_mp4(
    ffmpeg_path: str,
    avi_file: str | Path,
    output_file: str | Path,
    *,
    sound_file: str | Path | None = None,
    quality: float = 1.0,
    log_path: str | Path | None = None,
    cancel: CancelToken | None = None,
) -> tuple[Operation, Channel[float]]:
    args = mp4_args(avi_file, output_file, quality, sound_file)
    op, progress, _ = start_ffmpeg(ffmpeg_path, args, log_path=log_path, cancel=cancel)
    return op, progress
