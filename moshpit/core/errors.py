"""Error hierarchy. Every operation reports at most one of these as its terminal error."""

import shlex


class MoshpitError(Exception):
    """Base class for all errors raised by moshpit."""


class ValidationError(MoshpitError, ValueError):
    """Invalid user input (quality/threshold range, file extension). Raised before any process is spawned."""


class ProtocolError(MoshpitError):
    """FFmpeg output did not follow the expected textual protocol (unparsable or out-of-order lines)."""


class DurationUnknownError(ProtocolError):
    """A progress line arrived before the input duration was parsed from stderr."""


class FrameRateUnknownError(ProtocolError):
    """A scene-change timestamp arrived before the stream frame rate was parsed from stderr."""


class FrameTooLargeError(MoshpitError, OSError):
    """An AVI frame record exceeded MAX_FRAME_BYTES without a terminating delimiter."""


class LogWriteError(MoshpitError, OSError):
    """The FFmpeg log file could not be opened or written."""


class PipeReadError(MoshpitError, OSError):
    """Reading FFmpeg's stdout or stderr failed while the process was running."""


class OperationCancelled(MoshpitError):
    """The operation was cancelled before it finished."""

    def __init__(self, message: str = "operation cancelled") -> None:
        super().__init__(message)


class FFmpegError(MoshpitError):
    """FFmpeg exited with a non-zero status."""

    def __init__(self, cmd: list[str], returncode: int, stderr_tail: str = "") -> None:
        self.cmd = cmd
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        message = f"ffmpeg exited with status {returncode}"
        lines = stderr_tail.strip().splitlines()
        if lines:
            message += f": {lines[-1]}"
        super().__init__(message)

    @property
    def repro(self) -> str:
        """Shell-safe command line for copy/paste."""
        return " ".join(shlex.quote(str(c)) for c in self.cmd)
