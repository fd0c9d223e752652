"""Runs download jobs: builds the yt-dlp command, supervises it, and recovers failures."""
import asyncio
import logging
import time
from typing import Callable, Optional, Set

from .arguments import build_download_args, quote_args
from .config import Settings
from .constants import ARIA2C, AUTO_CLEAR_DELAY, FFMPEG, PROGRESS_UPDATE_INTERVAL, YT_DLP
from .exceptions import PresetNotFoundError
from .failures import FailureKind, classify_stderr_line, failure_detail, failure_kind
from .fallback import FallbackEngine
from .jobs import (
    PHASE_RESOLVING, PHASE_THUMBNAIL, STATUS_DONE, STATUS_DOWNLOADING,
    STATUS_FAILED, STATUS_POST_PROCESSING, THUMB_PENDING,
)
from .metadata import MetadataFetcher
from .output_parser import DownloadUpdate, parse
from .presets import PresetStore
from .process import STDERR, ProcessResult, ProcessSupervisor
from .registry import JobRegistry
from .thumbnails import cleanup_thumbnails_for_job
from .tools import ToolResolution, resolve_tool, tool_env


class _RunOutputHandler:
    """
    Turns the lines of one yt-dlp run into job updates.

    Holds the per-run state the parser does not keep: the time of the last
    progress merge, so progress, speed and eta reach the registry at most
    once per PROGRESS_UPDATE_INTERVAL.
    """

    def __init__(self, registry: JobRegistry, job_id: str, clock: Callable[[], float] = time.monotonic):
        self.registry = registry
        self.job_id = job_id
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._last_progress_update: Optional[float] = None

    def __call__(self, stream: str, raw_line: str) -> Optional[DownloadUpdate]:
        line = raw_line.replace('\r', '')
        if not line.strip():
            return None

        if stream == STDERR:
            self._log_stderr(line)
        else:
            self.logger.info(f"[{self.job_id}] {line}")

        update = parse(line)
        if update is None:
            return None

        changes = update.as_changes()
        # The path is committed once, when the job completes.
        changes.pop('output_path', None)
        if update.has_transfer_stats:
            now = self.clock()
            if self._last_progress_update is not None and now - self._last_progress_update < PROGRESS_UPDATE_INTERVAL:
                for name in ('progress', 'speed', 'eta'):
                    changes.pop(name, None)
            else:
                self._last_progress_update = now
        if changes:
            self.registry.update(self.job_id, **changes)
        return update

    def _log_stderr(self, line: str):
        signal = classify_stderr_line(line)
        if signal.is_warning:
            self.logger.warning(f"[{self.job_id}] STDERR: {line}")
        else:
            self.logger.error(f"[{self.job_id}] STDERR: {line}")
        if signal.format_unavailable:
            self.logger.warning(f"[{self.job_id}] Requested format is not available, preparing fallback")
            self.registry.update(
                self.job_id, phase=PHASE_RESOLVING,
                status_detail="Requested format unavailable, trying adaptive fallback",
            )
        if signal.downloader_error:
            self.logger.error(f"[{self.job_id}] Downloader specific error detected")


class DownloadManager:
    """Starts jobs held in a JobRegistry and drives each one to a terminal state."""

    def __init__(self, registry: JobRegistry, presets: PresetStore, settings: Settings,
                 supervisor: Optional[ProcessSupervisor] = None,
                 metadata: Optional[MetadataFetcher] = None,
                 tool_resolver: Callable[[str], ToolResolution] = resolve_tool):
        """
        Initializes the DownloadManager.

        Args:
            registry: The shared job registry.
            presets: Source of preset argument templates.
            settings: Engine settings used when building commands.
            supervisor: Runs yt-dlp and ffmpeg.
            metadata: Runs the metadata and thumbnail pipeline after success.
            tool_resolver: Resolves tools freshly for every run.
        """
        self.registry = registry
        self.presets = presets
        self.settings = settings
        self.supervisor = supervisor or ProcessSupervisor()
        self.tool_resolver = tool_resolver
        self.metadata = metadata or MetadataFetcher(registry, self.supervisor, tool_resolver)
        self.fallback = FallbackEngine(registry, self.supervisor, tool_resolver)
        self.logger = logging.getLogger(__name__)
        self.running_jobs: Set[str] = set()
        self.background_tasks: Set[asyncio.Task] = set()

    def is_running(self, job_id: str) -> bool:
        return job_id in self.running_jobs

    async def start_download(self, job_id: str) -> bool:
        """
        Runs a job from the beginning until Done or Failed.

        A Failed job is restarted by calling this again; nothing restarts it
        automatically. A job that is already running is left alone.

        Returns:
            True if the job ended Done, False otherwise (including unknown
            and already running jobs).
        """
        job = self.registry.get(job_id)
        if job is None:
            self.logger.warning(f"Cannot start unknown job {job_id}")
            return False
        if job_id in self.running_jobs:
            self.logger.warning(f"[{job_id}] Job is already running. Ignoring start request.")
            return False

        self.running_jobs.add(job_id)
        try:
            return await self._run_job(job_id)
        finally:
            self.running_jobs.discard(job_id)

    async def _run_job(self, job_id: str) -> bool:
        job = self.registry.get(job_id)
        try:
            preset = self.presets.get(job.preset_id or self.settings.default_preset)
        except PresetNotFoundError as e:
            self.logger.error(f"[{job_id}] {e}")
            self.registry.update(job_id, status=STATUS_FAILED, status_detail=str(e))
            return False
        yt_dlp = self.tool_resolver(YT_DLP)
        ffmpeg = self.tool_resolver(FFMPEG)
        aria2c = self.tool_resolver(ARIA2C)

        if job.overrides.format:
            self.logger.info(f"[{job_id}] Format override applied: {job.overrides.format}")
        if aria2c.is_local:
            self.logger.info(f"[{job_id}] Using local aria2c: {aria2c.path}")
        self.logger.info(f"[{job_id}] File collision policy: {self.settings.file_collision}")

        args = build_download_args(preset.args, job, self.settings, ffmpeg, aria2c)
        self.logger.info(f"[{job_id}] Executing command: {yt_dlp.path} {quote_args(args)}")

        self.registry.update(
            job_id, status=STATUS_DOWNLOADING, phase=PHASE_RESOLVING, status_detail="Preparing download",
            progress=0.0, speed=None, eta=None, thumbnail_status=THUMB_PENDING, thumbnail_error=None,
            fallback_used=False, fallback_format=None,
        )

        async def attempt(run_args) -> ProcessResult:
            return await self.supervisor.run(yt_dlp, run_args, tool_env(), _RunOutputHandler(self.registry, job_id))

        try:
            result = await self.fallback.run(job_id, args, attempt)
        except Exception:
            self.logger.exception(f"[{job_id}] Unexpected error during download")
            self.registry.update(job_id, status=STATUS_FAILED, phase=PHASE_RESOLVING,
                                 status_detail="Download failed (see logs)")
            return False

        kind = failure_kind(result)
        if not result.succeeded:
            if kind == FailureKind.FORMAT_UNAVAILABLE:
                self.logger.error(f"[{job_id}] Fallback failed: format unavailable after retry")
            self.logger.error(f"[{job_id}] Download failed ({kind.value}), exit code {result.exit_code}")
            self.registry.update(job_id, status=STATUS_FAILED, phase=PHASE_RESOLVING,
                                 status_detail=failure_detail(kind))
            return False
        if kind == FailureKind.DECODE_WARNING:
            self.logger.warning(f"[{job_id}] Output was not valid UTF-8; some characters were replaced")

        self._finish(job_id, result)
        return True

    def _finish(self, job_id: str, result: ProcessResult):
        self.registry.update(job_id, status=STATUS_POST_PROCESSING, phase=PHASE_THUMBNAIL,
                             status_detail="Finalizing download", progress=100.0)
        if result.last_known_output_path:
            self.registry.update(job_id, output_path=result.last_known_output_path)

        self._spawn(self.metadata.fetch_metadata(job_id), f"metadata-{job_id}")
        if self.settings.auto_clear_finished:
            self._spawn(self._auto_clear(job_id), f"auto-clear-{job_id}")

        self.registry.update(job_id, status=STATUS_DONE, status_detail="Completed")
        self.logger.info(f"[{job_id}] Download complete: {result.last_known_output_path or '(path unknown)'}")

    async def _auto_clear(self, job_id: str):
        await asyncio.sleep(AUTO_CLEAR_DELAY)
        await self.remove_job(job_id)

    async def remove_job(self, job_id: str) -> bool:
        """
        Removes a job and deletes its thumbnail files.

        Returns:
            False if the job is currently running and was not removed.
        """
        if job_id in self.running_jobs:
            self.logger.warning(f"[{job_id}] Cannot remove a running job.")
            return False
        await cleanup_thumbnails_for_job(job_id, self.metadata.thumbnail_dir)
        self.registry.remove(job_id)
        return True

    async def wait_for_background_tasks(self):
        """Waits until metadata and auto-clear tasks started so far have finished."""
        while self.background_tasks:
            await asyncio.gather(*list(self.background_tasks), return_exceptions=True)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self.background_tasks.add(task)
        task.add_done_callback(self._task_done_callback(self.background_tasks))
        return task

    def _task_done_callback(self, task_set: set) -> Callable:
        """Creates a callback to remove a task from a set and log exceptions."""
        def callback(task: asyncio.Task):
            task_set.discard(task)
            try:
                task.result()
            except asyncio.CancelledError:
                pass
            except Exception:
                self.logger.exception(f"Exception in background task {task.get_name()}:")
        return callback
