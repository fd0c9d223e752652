"""
Defines the AppController class, the facade consumers drive the engine through.
"""
import asyncio
import logging
import uuid
from pydantic import ValidationError
from typing import Any, Dict, List, Optional, Tuple

from .config import ConfigManager, Settings, validate_filename_template
from .downloads import DownloadManager
from .exceptions import JobNotFoundError
from .jobs import STATUS_FAILED, STATUS_QUEUED, DownloadJob, JobOverrides
from .metadata import MetadataFetcher
from .presets import PresetStore
from .process import ProcessSupervisor
from .registry import JobRegistry


class AppController:
    """The central controller for adding, running and clearing download jobs."""

    def __init__(self, config_manager: ConfigManager, config: Settings,
                 presets: Optional[PresetStore] = None,
                 registry: Optional[JobRegistry] = None,
                 download_manager: Optional[DownloadManager] = None):
        """
        Initializes the AppController.

        Args:
            config_manager: The manager for handling configuration persistence.
            config: The loaded engine settings.
            presets: Source of preset argument templates; the built-in table by default.
            registry: The job registry; a new one by default.
            download_manager: The orchestrator; built from the other arguments by default.
        """
        self.config_manager = config_manager
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.presets = presets if presets is not None else PresetStore()
        self.registry = registry if registry is not None else JobRegistry()
        if download_manager is None:
            supervisor = ProcessSupervisor()
            download_manager = DownloadManager(
                self.registry, self.presets, self.config, supervisor,
                MetadataFetcher(self.registry, supervisor),
            )
        self.download_manager = download_manager

    def _require_job(self, job_id: str) -> DownloadJob:
        job = self.registry.get(job_id)
        if job is None:
            raise JobNotFoundError(f"No job with id {job_id}")
        return job

    def add_job(self, url: str, preset_id: Optional[str] = None,
                overrides: Optional[JobOverrides] = None) -> str:
        """
        Queues a new job. It does not start until start_download or start_all.

        Raises:
            ValueError: If the URL is empty or the filename template override is invalid.
        """
        url = url.strip()
        if not url:
            raise ValueError("URL must not be empty.")
        overrides = overrides or JobOverrides()
        validate_filename_template(overrides.filename_template)

        job_id = uuid.uuid4().hex[:12]
        self.registry.add(DownloadJob(
            job_id=job_id, url=url,
            preset_id=preset_id or self.config.default_preset,
            overrides=overrides,
        ))
        self.logger.info(f"[{job_id}] Queued {url}")
        return job_id

    async def start_download(self, job_id: str) -> bool:
        """
        Runs one job to a terminal state.

        Raises:
            JobNotFoundError: If the job id is unknown.
        """
        self._require_job(job_id)
        return await self.download_manager.start_download(job_id)

    async def fetch_metadata(self, job_id: str):
        """Runs the metadata and thumbnail pipeline for a job on its own."""
        self._require_job(job_id)
        await self.download_manager.metadata.fetch_metadata(job_id)

    async def retry_job(self, job_id: str) -> bool:
        """Restarts a Failed job from the beginning."""
        job = self._require_job(job_id)
        if job.status != STATUS_FAILED:
            self.logger.warning(f"[{job_id}] Only failed jobs can be retried (status: {job.status})")
            return False
        self.logger.info(f"[{job_id}] Retrying failed job")
        return await self.download_manager.start_download(job_id)

    async def start_all(self) -> Dict[str, bool]:
        """
        Starts every Queued job, running at most max_concurrent_downloads at once.

        Returns:
            A mapping of job id to whether the job ended Done.
        """
        queued = [job.job_id for job in reversed(self.registry.jobs()) if job.status == STATUS_QUEUED]
        if not queued:
            return {}

        semaphore = asyncio.Semaphore(self.config.max_concurrent_downloads)
        self.logger.info(f"--- Starting {len(queued)} job(s), {self.config.max_concurrent_downloads} at a time ---")

        async def run_one(job_id: str) -> bool:
            async with semaphore:
                return await self.download_manager.start_download(job_id)

        results = await asyncio.gather(*(run_one(job_id) for job_id in queued))
        completed = sum(1 for ok in results if ok)
        self.logger.info(f"--- {completed}/{len(queued)} download(s) completed ---")
        return dict(zip(queued, results))

    async def remove_job(self, job_id: str) -> bool:
        """Removes a job that is not running, together with its thumbnail files."""
        self._require_job(job_id)
        return await self.download_manager.remove_job(job_id)

    async def clear_finished(self) -> List[str]:
        """Removes all Done and Failed jobs from the registry."""
        finished = [job.job_id for job in self.registry.jobs() if job.is_finished]
        removed = []
        for job_id in finished:
            if await self.download_manager.remove_job(job_id):
                removed.append(job_id)
        self.logger.info(f"Cleared {len(removed)} finished item(s) from the list.")
        return removed

    def save_settings(self, new_settings_data: Dict[str, Any]) -> Tuple[bool, str]:
        """Validates and saves new settings."""
        try:
            new_settings = Settings.model_validate({**self.config.model_dump(), **new_settings_data})
            self.config_manager.save(new_settings)
            self.config.__dict__.update(new_settings.model_dump())
            return True, "Settings have been saved."
        except ValidationError as e:
            error_details = e.errors()[0]
            field, msg = error_details['loc'][0], error_details['msg']
            return False, f"Error in field '{field}': {msg}"

    async def shutdown(self):
        """Waits for metadata and auto-clear tasks, then saves the configuration."""
        self.logger.info("Engine shutting down.")
        await self.download_manager.wait_for_background_tasks()
        self.config_manager.save(self.config)
