"""AVI frame editing and ffmpeg orchestration (progress, scene detection, conversions)."""

from moshpit.video.avi import FrameScanner, FrameType, analyze_frames, classify_frame
from moshpit.video.convert import convert_to_avi, convert_to_mp4, quality_to_qscale
from moshpit.video.ffmpeg import run_ffmpeg, start_ffmpeg
from moshpit.video.mosh import MoshResult, remove_frames
from moshpit.video.pipeline import mosh_video
from moshpit.video.scenes import VideoTime, find_scenes

__all__ = [
    "FrameScanner",
    "FrameType",
    "MoshResult",
    "VideoTime",
    "analyze_frames",
    "classify_frame",
    "convert_to_avi",
    "convert_to_mp4",
    "find_scenes",
    "mosh_video",
    "quality_to_qscale",
    "remove_frames",
    "run_ffmpeg",
    "start_ffmpeg",
]
