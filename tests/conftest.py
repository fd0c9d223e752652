"""Shared test fixtures and fakes."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import pytest

from dlengine.config import Settings
from dlengine.process import CommandOutput, ProcessResult, ProcessSupervisor
from dlengine.registry import JobRegistry
from dlengine.tools import ToolResolution


def system_tool(name: str) -> ToolResolution:
    return ToolResolution(command=name, path=name, is_local=False)


def make_resolver(local: Tuple[str, ...] = ()) -> Callable[[str], ToolResolution]:
    """Resolves tools to bare names, or to /opt/tools/<name> for the ones listed as local."""
    def resolve(name: str) -> ToolResolution:
        if name in local:
            path = f"/opt/tools/{name}"
            return ToolResolution(command=path, path=path, is_local=True)
        return system_tool(name)
    return resolve


@dataclass
class ScriptedRun:
    """Lines a fake yt-dlp run prints, as (stream, line) pairs, and its exit code."""
    lines: List[Tuple[str, str]] = field(default_factory=list)
    exit_code: int = 0
    on_start: Optional[Callable[[List[str]], None]] = None


class FakeSupervisor(ProcessSupervisor):
    """
    Replays scripted runs through the real line handling.

    `execute` answers with a responder called as (tool, args) -> CommandOutput.
    """

    def __init__(self, runs: Optional[List[ScriptedRun]] = None,
                 responder: Optional[Callable[[ToolResolution, List[str]], CommandOutput]] = None):
        super().__init__()
        self.runs = list(runs or [])
        self.responder = responder
        self.run_calls: List[List[str]] = []
        self.execute_calls: List[Tuple[str, List[str]]] = []

    async def run(self, tool, args, env, on_line) -> ProcessResult:
        self.run_calls.append(list(args))
        await asyncio.sleep(0)
        script = self.runs.pop(0)
        if script.on_start:
            script.on_start(list(args))
        result = ProcessResult(exit_code=script.exit_code)
        for stream, line in script.lines:
            self._handle_line(stream, line, on_line, result)
        return result

    async def execute(self, tool, args, env=None, timeout=None) -> CommandOutput:
        self.execute_calls.append((tool.command, list(args)))
        if self.responder is None:
            return CommandOutput(exit_code=1, stderr="no responder")
        return self.responder(tool, list(args))


class StubMetadata:
    """Records metadata requests instead of running the pipeline."""

    def __init__(self, thumbnail_dir):
        self.thumbnail_dir = thumbnail_dir
        self.calls: List[str] = []

    async def fetch_metadata(self, job_id: str) -> None:
        self.calls.append(job_id)


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(default_download_dir=str(tmp_path))


@pytest.fixture()
def registry() -> JobRegistry:
    return JobRegistry()


@pytest.fixture()
def thumbnail_dir(tmp_path):
    path = tmp_path / "thumbnails"
    path.mkdir()
    return path
