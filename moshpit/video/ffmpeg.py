"""FFmpeg orchestration: run ffmpeg, demultiplex stderr/stdout, and report normalized progress.

Progress is read from ffmpeg's `-progress pipe:1` key=value output on stdout. The
reference duration comes from the `Duration:` line ffmpeg prints on stderr for the
first input.
"""

import logging
import re
import shlex
import subprocess
import threading
from collections import deque
from contextlib import ExitStack
from pathlib import Path
from typing import IO, Sequence, TextIO

from moshpit.core.channels import CLOSED, CancelToken, Channel, Operation, select
from moshpit.core.errors import (
    DurationUnknownError,
    FFmpegError,
    LogWriteError,
    OperationCancelled,
    PipeReadError,
    ProtocolError,
)

_log = logging.getLogger(__name__)

PROGRESS_ARGS = ("-progress", "pipe:1")

DURATION_LINE_REGEX = re.compile(r"Duration: ([^,\s]+)")
DURATION_VALUE_REGEX = re.compile(r"^(\d+):(\d{1,2}):(\d{1,2})(?:\.(\d+))?$")
OUT_TIME_REGEX = re.compile(r"^out_time_ms=(\d+)$")

TERMINATE_TIMEOUT = 5.0
_STDERR_TAIL_MAX_LINES = 40


def cmd_to_repro(cmd: Sequence[str]) -> str:
    """Render a shell-safe repro command line for copy/paste."""
    return " ".join(shlex.quote(str(c)) for c in cmd)


def inject_progress_args(args: Sequence[str]) -> list[str]:
    """Insert `-progress pipe:1` before the trailing output path argument."""
    if not args:
        raise ValueError("ffmpeg arguments must end with an output path")
    args = list(args)
    return args[:-1] + list(PROGRESS_ARGS) + args[-1:]


def parse_duration(line: str) -> float | None:
    """
    Return the duration in seconds from a `Duration: HH:MM:SS.ff,` stderr line, or None
    if the line is not a duration line. The fraction is a decimal fraction of a second.
    Raises ProtocolError when the line is a duration line with an unparsable value.
    """
    m = DURATION_LINE_REGEX.search(line)
    if m is None:
        return None
    value = m.group(1).strip()
    v = DURATION_VALUE_REGEX.match(value)
    if v is None:
        raise ProtocolError(f"error parsing duration value: {value!r}")
    hours, minutes, seconds, fraction = v.groups()
    duration = int(hours) * 3600 + int(minutes) * 60 + int(seconds)
    if fraction:
        duration += int(fraction) / 10 ** len(fraction)
    return float(duration)


def parse_out_time(line: str) -> float | None:
    """Return elapsed seconds from an `out_time_ms=<microseconds>` progress line, or None."""
    m = OUT_TIME_REGEX.match(line.strip())
    if m is None:
        return None
    return int(m.group(1)) / 1_000_000


def compute_progress(elapsed: float, duration: float) -> float:
    """elapsed / duration clamped to [0, 1]. The duration ffmpeg prints is approximate."""
    if duration <= 0:
        return 1.0
    return max(0.0, min(1.0, elapsed / duration))


def _read_lines(
    stream: IO[str],
    lines: Channel[str],
    cancel: CancelToken,
    failures: list[BaseException],
) -> None:
    """
    Reader thread: forward each line of a pipe to a channel, closing it on EOF.

    A read error while not cancelled is recorded in failures before the channel closes.
    """
    try:
        for line in iter(stream.readline, ""):
            lines.send(line.rstrip("\r\n"), cancel=cancel)
    except OperationCancelled:
        pass
    except (ValueError, OSError) as e:
        # The dispatch loop closes the pipes only after cancelling the readers.
        if not cancel.cancelled:
            failures.append(e)
    finally:
        lines.close()


def _terminate(proc: subprocess.Popen[str]) -> None:
    if proc.poll() is not None:
        return
    try:
        proc.terminate()
        proc.wait(timeout=TERMINATE_TIMEOUT)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()
    except OSError:
        pass


def _wait(proc: subprocess.Popen[str], cancel: CancelToken | None) -> int:
    while True:
        try:
            return proc.wait(timeout=0.1)
        except subprocess.TimeoutExpired:
            if cancel is not None:
                cancel.raise_if_cancelled()


def _write_log(log_file: TextIO | None, text: str) -> None:
    if log_file is None:
        return
    try:
        log_file.write(text + "\n")
        log_file.flush()
    except OSError as e:
        raise LogWriteError(f"error writing to log file: {e}") from e


def run_ffmpeg(
    ffmpeg_path: str,
    args: Sequence[str],
    *,
    log_path: str | Path | None = None,
    progress: Channel[float] | None = None,
    stderr_lines: Channel[str] | None = None,
    cancel: CancelToken | None = None,
) -> None:
    """
    Run ffmpeg with the given arguments (output path last) and block until it exits.

    Sends 0.0 on progress right after spawning, then min(1, elapsed / duration) for
    every out_time_ms line. Every stderr line is appended to the log file (if any) and
    forwarded verbatim to stderr_lines (if given).

    Raises:
        DurationUnknownError: a progress line arrived before the Duration line.
        ProtocolError: the Duration line could not be parsed.
        LogWriteError: the log file could not be opened or written.
        PipeReadError: reading ffmpeg's stdout or stderr failed.
        OperationCancelled: cancel fired; the child process is terminated.
        FFmpegError: ffmpeg exited with a non-zero status.
    """
    cmd = [str(ffmpeg_path), *inject_progress_args(args)]
    stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_MAX_LINES)
    readers_token = cancel.child() if cancel is not None else CancelToken()

    with ExitStack() as stack:
        log_file: TextIO | None = None
        if log_path is not None:
            try:
                log_file = stack.enter_context(open(log_path, "a", encoding="utf-8"))
            except OSError as e:
                raise LogWriteError(f"error opening log file: {e}") from e
        _write_log(log_file, f"Executing {' '.join(cmd)}")
        _log.debug("ffmpeg: %s", cmd_to_repro(cmd))

        if cancel is not None:
            cancel.raise_if_cancelled()
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
        readers: list[threading.Thread] = []
        read_failures: list[BaseException] = []

        def _cleanup() -> None:
            _terminate(proc)
            readers_token.cancel()
            for t in readers:
                t.join(timeout=TERMINATE_TIMEOUT)
            for stream in (proc.stdout, proc.stderr):
                if stream is not None:
                    stream.close()

        stack.callback(_cleanup)

        err_ch: Channel[str] = Channel("ffmpeg.stderr")
        out_ch: Channel[str] = Channel("ffmpeg.stdout")
        for stream, ch in ((proc.stderr, err_ch), (proc.stdout, out_ch)):
            t = threading.Thread(
                target=_read_lines, args=(stream, ch, readers_token, read_failures), daemon=True
            )
            t.start()
            readers.append(t)

        if progress is not None:
            progress.send(0.0, cancel=cancel)

        duration: float | None = None
        pending: list[Channel[str]] = [err_ch, out_ch]
        while pending:
            ch, line = select(pending, cancel=cancel)
            if line is CLOSED:
                if read_failures:
                    e = read_failures[0]
                    raise PipeReadError(f"error reading ffmpeg output: {e}") from e
                pending.remove(ch)
                continue
            if ch is err_ch:
                stderr_tail.append(line)
                _write_log(log_file, line)
                if stderr_lines is not None:
                    stderr_lines.send(line, cancel=cancel)
                if duration is None:
                    duration = parse_duration(line)
                    if duration is not None:
                        _log.debug("ffmpeg input duration: %.3fs", duration)
                continue
            elapsed = parse_out_time(line)
            if elapsed is None:
                continue
            if duration is None:
                # The Duration line is always printed before -progress output starts.
                raise DurationUnknownError("could not find duration of input file")
            if progress is not None:
                progress.send(compute_progress(elapsed, duration), cancel=cancel)

        returncode = _wait(proc, cancel)
        if cancel is not None:
            cancel.raise_if_cancelled()
        if returncode != 0:
            raise FFmpegError(cmd, returncode, "\n".join(stderr_tail))
        _log.debug("ffmpeg finished: %s", args[-1])


def start_ffmpeg(
    ffmpeg_path: str,
    args: Sequence[str],
    *,
    log_path: str | Path | None = None,
    forward_stderr: bool = False,
    cancel: CancelToken | None = None,
) -> tuple[Operation, Channel[float], Channel[str] | None]:
    """
    Run run_ffmpeg on a background thread.

    Returns (operation, progress channel, stderr line channel or None). When
    forward_stderr is False no line channel is created, so nothing has to drain it.
    """
    progress: Channel[float] = Channel("ffmpeg.progress")
    stderr_lines: Channel[str] | None = Channel("ffmpeg.lines") if forward_stderr else None
    args = list(args)

    def target(token: CancelToken) -> None:
        run_ffmpeg(
            ffmpeg_path,
            args,
            log_path=log_path,
            progress=progress,
            stderr_lines=stderr_lines,
            cancel=token,
        )

    outputs: list[Channel] = [progress]
    if stderr_lines is not None:
        outputs.append(stderr_lines)
    op = Operation("ffmpeg", target, outputs, cancel=cancel)
    return op.start(), progress, stderr_lines
