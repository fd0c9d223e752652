from __future__ import annotations

import asyncio

import allure
import pytest

from dlengine.config import ConfigManager, Settings
from dlengine.controller import AppController
from dlengine.exceptions import JobNotFoundError
from dlengine.jobs import STATUS_DONE, STATUS_FAILED, STATUS_QUEUED, JobOverrides
from dlengine.presets import PresetStore
from dlengine.registry import JobRegistry

pytestmark = [
    allure.epic("Download Engine"),
    allure.feature("Controller"),
]


class RecordingDownloads:
    """Stands in for DownloadManager, tracking how many jobs run at once."""

    def __init__(self, registry: JobRegistry):
        self.registry = registry
        self.started = []
        self.removed = []
        self.active = 0
        self.max_active = 0
        self.metadata = self
        self.metadata_calls = []

    async def start_download(self, job_id: str) -> bool:
        self.started.append(job_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0.01)
        self.active -= 1
        self.registry.update(job_id, status=STATUS_DONE)
        return True

    async def fetch_metadata(self, job_id: str) -> None:
        self.metadata_calls.append(job_id)

    async def remove_job(self, job_id: str) -> bool:
        self.removed.append(job_id)
        self.registry.remove(job_id)
        return True

    async def wait_for_background_tasks(self) -> None:
        return None


def _controller(tmp_path, **settings):
    registry = JobRegistry()
    downloads = RecordingDownloads(registry)
    config = Settings(**settings)
    controller = AppController(ConfigManager(tmp_path / "config.json"), config,
                               registry=registry, download_manager=downloads)
    return controller, downloads


def test_add_job_queues_with_default_preset(tmp_path) -> None:
    controller, _ = _controller(tmp_path)
    job_id = controller.add_job("  https://example.com/v/1  ")

    job = controller.registry.get(job_id)
    assert job.status == STATUS_QUEUED
    assert job.url == "https://example.com/v/1"
    assert job.preset_id == "default"


def test_add_job_rejects_bad_input(tmp_path) -> None:
    controller, _ = _controller(tmp_path)
    with pytest.raises(ValueError):
        controller.add_job("   ")
    with pytest.raises(ValueError):
        controller.add_job("https://example.com/v/1", overrides=JobOverrides(filename_template="../x.%(ext)s"))
    assert len(controller.registry) == 0


def test_unknown_jobs_raise(tmp_path) -> None:
    controller, _ = _controller(tmp_path)
    with pytest.raises(JobNotFoundError):
        asyncio.run(controller.start_download("missing"))
    with pytest.raises(JobNotFoundError):
        asyncio.run(controller.fetch_metadata("missing"))


def test_start_all_respects_the_concurrency_cap(tmp_path) -> None:
    controller, downloads = _controller(tmp_path, max_concurrent_downloads=2)
    ids = [controller.add_job(f"https://example.com/v/{n}") for n in range(5)]

    results = asyncio.run(controller.start_all())

    assert downloads.started == ids
    assert downloads.max_active == 2
    assert all(results[job_id] for job_id in ids)
    assert asyncio.run(controller.start_all()) == {}


def test_retry_only_restarts_failed_jobs(tmp_path) -> None:
    controller, downloads = _controller(tmp_path)
    job_id = controller.add_job("https://example.com/v/1")

    assert asyncio.run(controller.retry_job(job_id)) is False
    controller.registry.update(job_id, status=STATUS_FAILED)
    assert asyncio.run(controller.retry_job(job_id)) is True
    assert downloads.started == [job_id]


def test_fetch_metadata_delegates(tmp_path) -> None:
    controller, downloads = _controller(tmp_path)
    job_id = controller.add_job("https://example.com/v/1")
    asyncio.run(controller.fetch_metadata(job_id))
    assert downloads.metadata_calls == [job_id]


def test_clear_finished_keeps_queued_jobs(tmp_path) -> None:
    controller, downloads = _controller(tmp_path)
    done = controller.add_job("https://example.com/v/1")
    failed = controller.add_job("https://example.com/v/2")
    queued = controller.add_job("https://example.com/v/3")
    controller.registry.update(done, status=STATUS_DONE)
    controller.registry.update(failed, status=STATUS_FAILED)

    removed = asyncio.run(controller.clear_finished())

    assert sorted(removed) == sorted([done, failed])
    assert [job.job_id for job in controller.registry.jobs()] == [queued]


def test_save_settings_validates_and_persists(tmp_path) -> None:
    controller, _ = _controller(tmp_path)

    ok, message = controller.save_settings({"max_concurrent_downloads": 0})
    assert not ok
    assert "max_concurrent_downloads" in message

    ok, _ = controller.save_settings({"max_concurrent_downloads": 4})
    assert ok
    assert controller.config.max_concurrent_downloads == 4
    assert ConfigManager(tmp_path / "config.json").load().max_concurrent_downloads == 4


def test_default_wiring_builds_a_download_manager(tmp_path) -> None:
    controller = AppController(ConfigManager(tmp_path / "config.json"), Settings())
    assert controller.download_manager.registry is controller.registry
    assert controller.download_manager.metadata.registry is controller.registry


def test_injected_registry_and_presets_are_kept(tmp_path) -> None:
    registry = JobRegistry()
    presets = PresetStore()
    seen = []
    registry.subscribe(lambda job_id, changes: seen.append(job_id))

    controller = AppController(ConfigManager(tmp_path / "config.json"), Settings(),
                               presets=presets, registry=registry)
    job_id = controller.add_job("https://example.com/v/1")

    assert controller.registry is registry
    assert controller.presets is presets
    assert controller.download_manager.registry is registry
    assert registry.get(job_id) is not None
    assert job_id in seen
