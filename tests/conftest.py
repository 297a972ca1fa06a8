"""Pytest fixtures: synthetic AVI records and a scriptable fake ffmpeg executable."""

import json
import shutil
import stat
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import pytest

from moshpit.core import config as config_module
from moshpit.video.avi import FRAME_DELIMITER, PREDICTED_PREFIX, REFERENCE_PREFIX


def make_record(body: bytes) -> bytes:
    """One frame record: 4-byte chunk size, body, then the delimiter that ends it."""
    return len(body).to_bytes(4, "little") + body + FRAME_DELIMITER


def reference_frame(payload: bytes = b"I-frame") -> bytes:
    return make_record(b"\x00" + REFERENCE_PREFIX + payload)


def predicted_frame(payload: bytes = b"P-frame") -> bytes:
    return make_record(b"\x00" + PREDICTED_PREFIX + payload)


def header_record(payload: bytes = b"RIFF....AVI LIST....hdrlavih....movi") -> bytes:
    return payload + FRAME_DELIMITER


_FAKE_FFMPEG = """#!{python}
import json
import os
import shutil
import sys
import time

with open({calls_path!r}, "a") as f:
    f.write(json.dumps(sys.argv[1:]) + "\\n")
with open({pids_path!r}, "a") as f:
    f.write(str(os.getpid()) + "\\n")
with open({scenario_path!r}) as f:
    scenario = json.load(f)
for stream, value in scenario["steps"]:
    if stream == "sleep":
        time.sleep(value)
        continue
    out = sys.stderr if stream == "stderr" else sys.stdout
    out.write(value + "\\n")
    out.flush()
output = sys.argv[-1]
for suffix, source in scenario.get("outputs", {{}}).items():
    if output.endswith(suffix):
        shutil.copyfile(source, output)
sys.exit(scenario.get("exit", 0))
"""


@dataclass
class FakeFFmpeg:
    path: Path
    calls_path: Path
    pids_path: Path

    def calls(self) -> list[list[str]]:
        if not self.calls_path.exists():
            return []
        return [json.loads(line) for line in self.calls_path.read_text().splitlines() if line]

    def pids(self) -> list[int]:
        if not self.pids_path.exists():
            return []
        return [int(line) for line in self.pids_path.read_text().splitlines() if line]


@pytest.fixture
def fake_ffmpeg(tmp_path) -> Callable[..., FakeFFmpeg]:
    """
    Factory for a fake ffmpeg script. steps is a list of ("stderr"|"stdout", line) or
    ("sleep", seconds); outputs maps an output suffix to a file copied to the output path.
    """
    counter = {"n": 0}

    def make(
        steps: list[tuple[str, Any]],
        *,
        exit_code: int = 0,
        outputs: dict[str, str] | None = None,
    ) -> FakeFFmpeg:
        counter["n"] += 1
        base = tmp_path / f"fake_ffmpeg_{counter['n']}"
        base.mkdir()
        scenario_path = base / "scenario.json"
        calls_path = base / "calls.jsonl"
        pids_path = base / "pids.txt"
        scenario_path.write_text(
            json.dumps({"steps": steps, "exit": exit_code, "outputs": outputs or {}})
        )
        script = base / "ffmpeg"
        script.write_text(
            _FAKE_FFMPEG.format(
                python=sys.executable,
                calls_path=str(calls_path),
                pids_path=str(pids_path),
                scenario_path=str(scenario_path),
            )
        )
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return FakeFFmpeg(path=script, calls_path=calls_path, pids_path=pids_path)

    return make


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    """Each test starts from default settings, unaffected by the caller's environment."""
    monkeypatch.delenv("FFMPEG_PATH", raising=False)
    monkeypatch.delenv("MOSHPIT_LOG_LEVEL", raising=False)
    monkeypatch.setenv("MOSHPIT_CONFIG", str(tmp_path / "missing-moshpit.yml"))
    config_module.reset_config()
    yield
    config_module.reset_config()


def duration_line(value: str = "00:00:10.00") -> str:
    return f"  Duration: {value}, start: 0.000000, bitrate: 1205 kb/s"


requires_ffmpeg = pytest.mark.skipif(shutil.which("ffmpeg") is None, reason="ffmpeg not on PATH")
