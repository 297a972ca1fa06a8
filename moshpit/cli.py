"""Typer CLI: scene detection, datamoshing, and AVI frame analysis."""

import contextlib
import logging
import signal
import threading
import time
from pathlib import Path
from typing import Any, Iterator, Optional

import typer
import yaml
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table

from moshpit.core.channels import CancelToken
from moshpit.core.config import Settings, get_config
from moshpit.core.errors import FFmpegError, MoshpitError, OperationCancelled
from moshpit.core.logging import setup_logging
from moshpit.video.avi import FrameType, analyze_frames
from moshpit.video.pipeline import mosh_video, parse_frame_args
from moshpit.video.scenes import VideoTime, start_find_scenes

_log = logging.getLogger(__name__)

app = typer.Typer(no_args_is_help=True, help="Datamosh videos by removing keyframes at scene changes.")
console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    ffmpeg: Optional[str] = typer.Option(None, "--ffmpeg", help="Path to the ffmpeg executable"),
    log: Optional[Path] = typer.Option(None, "--log", help="Append ffmpeg output to this file"),
    config: Optional[Path] = typer.Option(None, "--config", help="YAML config file (default: moshpit.yml)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output to stderr"),
) -> None:
    """Resolve settings from config file, environment, and command-line overrides."""
    try:
        settings = get_config(config) if config is not None else get_config()
    except (OSError, ValueError, yaml.YAMLError) as e:
        typer.secho(f"Error: could not load config: {e}", fg=typer.colors.RED)
        raise typer.Exit(1)
    updates: dict[str, Any] = {}
    if ffmpeg:
        updates["ffmpeg_path"] = ffmpeg
    if log is not None:
        updates["ffmpeg_log_path"] = str(log.resolve())
    if verbose:
        updates["log_level"] = "DEBUG"
    if updates:
        settings = settings.model_copy(update=updates)
    setup_logging(settings.log_level)
    ctx.obj = settings


@contextlib.contextmanager
def _cancel_on_signal() -> Iterator[CancelToken]:
    """Yield a CancelToken that SIGINT/SIGTERM cancel (main thread only); restore handlers after."""
    token = CancelToken()
    if threading.current_thread() is not threading.main_thread():
        yield token
        return

    def _handler(_signum: int, _frame: Any) -> None:
        token.cancel()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield token
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _progress() -> Progress:
    return Progress(
        TextColumn("{task.description}"),
        BarColumn(bar_width=15),
        TaskProgressColumn(),
        console=console,
        transient=True,
    )


def _fail(e: MoshpitError) -> None:
    if isinstance(e, OperationCancelled):
        typer.secho("Cancelled.", fg=typer.colors.YELLOW)
        raise typer.Exit(130)
    if isinstance(e, FFmpegError):
        _log.debug("ffmpeg repro: %s\n%s", e.repro, e.stderr_tail)
    typer.secho(f"Error: {e}", fg=typer.colors.RED)
    raise typer.Exit(1)


def _detect_scenes(settings: Settings, input_file: Path, threshold: float, cancel: CancelToken) -> list[VideoTime]:
    op, scenes_ch, progress_ch = start_find_scenes(
        settings.ffmpeg_path,
        input_file,
        threshold,
        log_path=settings.ffmpeg_log_path,
        cancel=cancel,
    )
    found: list[VideoTime] = []
    with _progress() as progress:
        task = progress.add_task("Detecting scene changes...", total=1.0)
        for ch, item in op.events():
            if ch is scenes_ch:
                found.append(item)
                progress.console.print(
                    f"Found scene change at [cyan]{item.timecode}[/cyan] (frame [red]{item.frame}[/red])"
                )
            elif ch is progress_ch:
                progress.update(task, completed=item)
    return found


@app.command("scenes")
def scenes(
    ctx: typer.Context,
    input_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Video file to analyze"),
    threshold: Optional[float] = typer.Option(
        None, "--threshold", "-t", help="Scene change threshold between 0 and 1 (default from config)"
    ),
) -> None:
    """Find scene changes in the video file."""
    settings: Settings = ctx.obj
    if threshold is None:
        threshold = settings.scene_threshold
    with _cancel_on_signal() as cancel:
        try:
            found = _detect_scenes(settings, input_file, threshold, cancel)
        except MoshpitError as e:
            _fail(e)
            return
    console.print(f"Found [green]{len(found)}[/green] scene changes.")
    if not found:
        console.print("Try using a lower threshold value.")


@app.command("mosh")
def mosh(
    ctx: typer.Context,
    input_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Video file to mosh"),
    output_file: Path = typer.Argument(..., help="Output .mp4 file"),
    frames: list[str] = typer.Argument(..., help="Frame indices to mosh, or 'all' for every scene change"),
    threshold: Optional[float] = typer.Option(
        None, "--scenes-threshold", help="Threshold used to find scene changes for 'all'"
    ),
) -> None:
    """Apply a datamoshing effect at the given frames and write the result to an MP4 file."""
    settings: Settings = ctx.obj
    if threshold is None:
        threshold = settings.scene_threshold
    start = time.monotonic()
    with _cancel_on_signal() as cancel:
        try:
            found: list[VideoTime] = []
            if any(f.lower() == "all" for f in frames):
                found = _detect_scenes(settings, input_file, threshold, cancel)
            moshed = parse_frame_args(frames, found)
            if not moshed:
                typer.secho("Error: no valid frames to mosh were specified", fg=typer.colors.RED)
                raise typer.Exit(1)

            with _progress() as progress:
                tasks: dict[str, Any] = {}

                def on_stage(n: int, total: int, description: str) -> None:
                    if "current" in tasks:
                        progress.update(tasks["current"], completed=1.0)
                        progress.console.print(f"[cyan][{n - 1}/{total}][/cyan] done")
                    tasks["current"] = progress.add_task(f"[cyan][{n}/{total}][/cyan] {description}...", total=1.0)

                def on_progress(value: float) -> None:
                    if "current" in tasks:
                        progress.update(tasks["current"], completed=value)

                output = mosh_video(
                    input_file,
                    output_file,
                    moshed,
                    settings=settings,
                    on_stage=on_stage,
                    on_progress=on_progress,
                    cancel=cancel,
                )
        except MoshpitError as e:
            _fail(e)
            return
    elapsed = round(time.monotonic() - start)
    console.print(f"Wrote [green]{output}[/green]. Moshing took [green]{elapsed}s[/green].")


@app.command("analyze")
def analyze(
    input_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="AVI file to analyze"),
) -> None:
    """Count reference, predicted, and unknown frame records in an AVI file."""
    try:
        with open(input_file, "rb") as f:
            counts = analyze_frames(f)
    except MoshpitError as e:
        _fail(e)
        return
    except OSError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED)
        raise typer.Exit(1)
    table = Table(title=None)
    table.add_column("Frame type")
    table.add_column("Count", justify="right")
    for frame_type in FrameType:
        table.add_row(frame_type.value, str(counts[frame_type]))
    table.add_row("total", str(sum(counts.values())))
    console.print(table)
