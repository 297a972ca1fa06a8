"""Tests for the ffmpeg orchestrator: argument rewriting, parsing, progress, logging, errors, cancel."""

import threading
from unittest.mock import MagicMock, patch

import pytest

from moshpit.core.channels import CancelToken, Channel
from moshpit.core.errors import (
    DurationUnknownError,
    FFmpegError,
    LogWriteError,
    OperationCancelled,
    PipeReadError,
    ProtocolError,
)
from moshpit.video.ffmpeg import (
    compute_progress,
    inject_progress_args,
    parse_duration,
    parse_out_time,
    run_ffmpeg,
    start_ffmpeg,
)
from tests.conftest import duration_line

pytestmark = [pytest.mark.fast]


def _collect(op, progress_ch, lines_ch=None):
    progress: list[float] = []
    lines: list[str] = []
    error: BaseException | None = None
    try:
        for ch, item in op.events():
            if ch is progress_ch:
                progress.append(item)
            elif ch is lines_ch:
                lines.append(item)
    except Exception as e:
        error = e
    return progress, lines, error


# --- pure helpers ---


def test_inject_progress_args_before_output():
    """-progress pipe:1 is inserted right before the trailing output path."""
    assert inject_progress_args(["-i", "in.mp4", "-y", "out.avi"]) == [
        "-i",
        "in.mp4",
        "-y",
        "-progress",
        "pipe:1",
        "out.avi",
    ]


def test_inject_progress_args_empty_raises():
    with pytest.raises(ValueError):
        inject_progress_args([])


def test_parse_duration_decimal_fraction():
    """Duration: 00:01:30.50 is 90.5 seconds."""
    assert parse_duration(duration_line("00:01:30.50")) == pytest.approx(90.5)


def test_parse_duration_without_trailing_fields():
    """A bare Duration line with nothing after the value still parses."""
    assert parse_duration("Duration: 00:01:30.50") == pytest.approx(90.5)
    assert parse_duration("  Duration: 00:00:10.00") == pytest.approx(10.0)


def test_parse_duration_hours_and_centiseconds():
    assert parse_duration(duration_line("01:02:03.04")) == pytest.approx(3723.04)


def test_parse_duration_ignores_other_lines():
    assert parse_duration("Stream #0:0: Video: h264, 25 fps") is None


def test_parse_duration_unparsable_value_raises():
    """A Duration line with an unexpected format is a protocol error, not a skip."""
    with pytest.raises(ProtocolError):
        parse_duration("  Duration: N/A, start: 0.000000, bitrate: N/A")


def test_parse_out_time_microseconds():
    assert parse_out_time("out_time_ms=1500000") == pytest.approx(1.5)
    assert parse_out_time("out_time_ms=N/A") is None
    assert parse_out_time("frame=10") is None


def test_compute_progress_clamps_to_one():
    """elapsed > duration is clamped to exactly 1.0."""
    assert compute_progress(12.0, 10.0) == 1.0
    assert compute_progress(5.0, 10.0) == pytest.approx(0.5)
    assert compute_progress(3.0, 0.0) == 1.0


# --- run_ffmpeg with a fake ffmpeg ---


def test_progress_values_and_forwarded_lines(fake_ffmpeg):
    """0.0 first, then elapsed/duration per out_time_ms line, clamped; stderr lines forwarded verbatim."""
    fake = fake_ffmpeg(
        [
            ("stderr", "ffmpeg version 6.0"),
            ("stderr", duration_line("00:00:10.00")),
            ("sleep", 0.3),
            ("stdout", "frame=10"),
            ("stdout", "out_time_ms=2500000"),
            ("stdout", "out_time_ms=5000000"),
            ("stdout", "out_time_ms=12000000"),
            ("stdout", "progress=end"),
        ]
    )
    op, progress_ch, lines_ch = start_ffmpeg(str(fake.path), ["-i", "in.mp4", "out.avi"], forward_stderr=True)
    progress, lines, error = _collect(op, progress_ch, lines_ch)
    assert error is None
    assert progress == [0.0, pytest.approx(0.25), pytest.approx(0.5), 1.0]
    assert lines == ["ffmpeg version 6.0", duration_line("00:00:10.00")]
    assert fake.calls() == [["-i", "in.mp4", "-progress", "pipe:1", "out.avi"]]


def test_progress_after_bare_duration_line(fake_ffmpeg):
    fake = fake_ffmpeg(
        [("stderr", "  Duration: 00:00:10.00"), ("sleep", 0.3), ("stdout", "out_time_ms=5000000")]
    )
    op, progress_ch, _ = start_ffmpeg(str(fake.path), ["-i", "in.mp4", "out.avi"])
    progress, _, error = _collect(op, progress_ch)
    assert error is None
    assert progress == [0.0, pytest.approx(0.5)]


def test_progress_before_duration_is_fatal(fake_ffmpeg):
    """An out_time_ms line before any Duration line aborts with DurationUnknownError."""
    fake = fake_ffmpeg(
        [
            ("stdout", "out_time_ms=1000000"),
            ("sleep", 0.5),
            ("stderr", duration_line()),
            ("sleep", 5),
        ]
    )
    op, progress_ch, _ = start_ffmpeg(str(fake.path), ["-i", "in.mp4", "out.avi"])
    progress, _, error = _collect(op, progress_ch)
    assert isinstance(error, DurationUnknownError)
    assert progress == [0.0]


def test_nonzero_exit_raises_ffmpeg_error(fake_ffmpeg):
    """A non-zero exit surfaces as FFmpegError with the exit code and stderr tail."""
    fake = fake_ffmpeg([("stderr", "in.mp4: No such file or directory")], exit_code=1)
    with pytest.raises(FFmpegError) as exc_info:
        run_ffmpeg(str(fake.path), ["-i", "in.mp4", "out.avi"])
    err = exc_info.value
    assert err.returncode == 1
    assert "No such file or directory" in err.stderr_tail
    assert "No such file or directory" in str(err)
    assert "-progress pipe:1" in err.repro


def test_log_file_gets_command_and_stderr_lines(fake_ffmpeg, tmp_path):
    """The log receives the invocation line, then every stderr line, appended."""
    log_path = tmp_path / "ffmpeg.log"
    log_path.write_text("previous run\n")
    fake = fake_ffmpeg([("stderr", "line one"), ("stdout", "progress=continue"), ("stderr", "line two")])
    run_ffmpeg(str(fake.path), ["-i", "in.mp4", "out.avi"], log_path=log_path)
    lines = log_path.read_text().splitlines()
    assert lines[0] == "previous run"
    assert lines[1].startswith(f"Executing {fake.path} -i in.mp4 -progress pipe:1 out.avi")
    assert lines[2:] == ["line one", "line two"]


def test_unwritable_log_is_fatal_before_spawn(tmp_path):
    """A log path that cannot be opened fails before ffmpeg is started."""
    with patch("moshpit.video.ffmpeg.subprocess.Popen") as popen:
        with pytest.raises(LogWriteError):
            run_ffmpeg("ffmpeg", ["-i", "in.mp4", "out.avi"], log_path=tmp_path)
        popen.assert_not_called()


def test_pipe_read_error_is_fatal():
    """A failed read on ffmpeg's stdout fails the run even though ffmpeg exits 0."""
    proc = MagicMock()
    proc.stdout.readline.side_effect = OSError("broken pipe")
    proc.stderr.readline.side_effect = [duration_line(), ""]
    proc.wait.return_value = 0
    proc.poll.return_value = 0
    with patch("moshpit.video.ffmpeg.subprocess.Popen", return_value=proc):
        with pytest.raises(PipeReadError, match="broken pipe"):
            run_ffmpeg("ffmpeg", ["-i", "in.mp4", "out.avi"])


def test_cancel_terminates_ffmpeg(fake_ffmpeg):
    """Cancellation kills the child and surfaces OperationCancelled promptly."""
    fake = fake_ffmpeg([("stderr", duration_line()), ("sleep", 0.3), ("stdout", "out_time_ms=0"), ("sleep", 60)])
    cancel = CancelToken()
    op, progress_ch, _ = start_ffmpeg(str(fake.path), ["-i", "in.mp4", "out.avi"], cancel=cancel)
    events = op.events()
    ch, first = next(events)
    assert ch is progress_ch and first == 0.0
    cancel.cancel()
    with pytest.raises(OperationCancelled):
        for _ in events:
            pass


def test_slow_consumer_does_not_lose_progress(fake_ffmpeg):
    """Backpressure: every progress value arrives even if the consumer is slow."""
    steps = [("stderr", duration_line("00:00:10.00")), ("sleep", 0.3)]
    steps += [("stdout", f"out_time_ms={i * 1_000_000}") for i in range(1, 11)]
    fake = fake_ffmpeg(steps)
    progress: Channel[float] = Channel("progress")
    received: list[float] = []

    def consume() -> None:
        for value in progress:
            received.append(value)

    t = threading.Thread(target=consume, daemon=True)
    t.start()
    run_ffmpeg(str(fake.path), ["-i", "in.mp4", "out.avi"], progress=progress)
    progress.close()
    t.join(5)
    assert received == [0.0] + [pytest.approx(i / 10) for i in range(1, 11)]
