from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import allure

import dlengine.downloads as downloads_module
from dlengine.config import Settings
from dlengine.constants import OUTPUT_MARKER
from dlengine.downloads import DownloadManager, _RunOutputHandler
from dlengine.jobs import (
    PHASE_RESOLVING,
    STATUS_DONE,
    STATUS_FAILED,
    DownloadJob,
    JobOverrides,
)
from dlengine.presets import Preset, PresetStore
from dlengine.process import STDERR, STDOUT, CommandOutput, ProcessResult
from dlengine.registry import JobRegistry

from conftest import FakeSupervisor, ScriptedRun, StubMetadata, make_resolver

pytestmark = [
    allure.epic("Download Engine"),
    allure.feature("Orchestrator"),
]

MP4_PRESET = Preset(
    id="mp4-only", name="MP4 only",
    args=["-f", "bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best"],
)
FORMAT_UNAVAILABLE = (STDERR, "ERROR: [site] abc123: Requested format is not available")


def _manager(registry, settings, supervisor, thumbnail_dir, presets=None, local=()):
    return DownloadManager(
        registry, presets or PresetStore([MP4_PRESET]), settings, supervisor,
        StubMetadata(thumbnail_dir), tool_resolver=make_resolver(local),
    )


def _add(registry: JobRegistry, job_id: str = "job1", **overrides) -> DownloadJob:
    return registry.add(DownloadJob(
        job_id=job_id, url=f"https://example.com/{job_id}", preset_id="mp4-only",
        overrides=JobOverrides(**overrides),
    ))


def _start(manager: DownloadManager, job_id: str = "job1") -> bool:
    async def main():
        ok = await manager.start_download(job_id)
        await manager.wait_for_background_tasks()
        return ok
    return asyncio.run(main())


def test_successful_run_reaches_done(registry, settings, thumbnail_dir) -> None:
    _add(registry)
    supervisor = FakeSupervisor([ScriptedRun(lines=[
        (STDOUT, "[download] Destination: /videos/clip.f137.mp4"),
        (STDOUT, "[download]  50.0% of 10.00MiB at  1.00MiB/s ETA 00:05"),
        (STDOUT, f"{OUTPUT_MARKER}:/videos/clip.mp4"),
    ])])
    manager = _manager(registry, settings, supervisor, thumbnail_dir)
    output_path_updates = []
    registry.subscribe(
        lambda job_id, changes: "output_path" in changes and output_path_updates.append(changes["output_path"])
    )

    assert _start(manager) is True

    job = registry.get("job1")
    assert job.status == STATUS_DONE
    assert job.status_detail == "Completed"
    assert job.progress == 100.0
    assert job.output_path == "/videos/clip.mp4"
    assert job.title == "clip.mp4"
    assert job.speed == "1.00MiB/s"
    assert output_path_updates == ["/videos/clip.mp4"]
    assert manager.metadata.calls == ["job1"]
    assert not manager.is_running("job1")


def test_command_carries_marker_and_url(registry, settings, thumbnail_dir) -> None:
    _add(registry)
    supervisor = FakeSupervisor([ScriptedRun()])
    _start(_manager(registry, settings, supervisor, thumbnail_dir))

    args = supervisor.run_calls[0]
    assert args[-1] == "https://example.com/job1"
    assert f"after_move:{OUTPUT_MARKER}:%(filepath)s" in args
    assert "--newline" in args


def test_webm_only_source_falls_back_to_best(registry, settings, thumbnail_dir) -> None:
    _add(registry)
    supervisor = FakeSupervisor([
        ScriptedRun(lines=[FORMAT_UNAVAILABLE], exit_code=1),
        ScriptedRun(lines=[FORMAT_UNAVAILABLE], exit_code=1),
        ScriptedRun(lines=[(STDOUT, f"{OUTPUT_MARKER}:/videos/clip.webm")]),
    ])

    assert _start(_manager(registry, settings, supervisor, thumbnail_dir)) is True

    job = registry.get("job1")
    assert job.status == STATUS_DONE
    assert job.fallback_used is True
    assert job.fallback_format == "best"
    assert job.output_path == "/videos/clip.webm"
    formats = [call[call.index("-f") + 1] for call in supervisor.run_calls]
    assert formats[1:] == ["bestvideo+bestaudio/best", "best"]
    assert len(formats) == len(set(formats))


def test_all_candidates_failing_ends_failed(registry, settings, thumbnail_dir) -> None:
    _add(registry)
    supervisor = FakeSupervisor([ScriptedRun(lines=[FORMAT_UNAVAILABLE], exit_code=1) for _ in range(3)])
    manager = _manager(registry, settings, supervisor, thumbnail_dir)

    assert _start(manager) is False

    job = registry.get("job1")
    assert job.status == STATUS_FAILED
    assert job.phase == PHASE_RESOLVING
    assert job.status_detail == "Failed to resolve a compatible format"
    assert job.fallback_used is False
    assert job.output_path is None
    assert manager.metadata.calls == []


def test_generic_failure_detail(registry, settings, thumbnail_dir) -> None:
    _add(registry)
    supervisor = FakeSupervisor([ScriptedRun(lines=[(STDERR, "ERROR: Unable to download webpage")], exit_code=1)])

    assert _start(_manager(registry, settings, supervisor, thumbnail_dir)) is False
    assert registry.get("job1").status_detail == "Download failed (see logs)"
    assert len(supervisor.run_calls) == 1


def test_terminal_failure_is_logged_with_its_kind(registry, settings, thumbnail_dir, caplog) -> None:
    _add(registry)
    supervisor = FakeSupervisor([ScriptedRun(lines=[(STDERR, "ERROR: external downloader exited")], exit_code=1)])

    with caplog.at_level(logging.ERROR, logger="dlengine.downloads"):
        assert _start(_manager(registry, settings, supervisor, thumbnail_dir)) is False

    assert "Download failed (DownloaderError), exit code 1" in caplog.text
    assert registry.get("job1").status_detail == "Download failed (see logs)"
    assert len(supervisor.run_calls) == 1


def test_local_aria2c_failure_retries_with_native_downloader(registry, settings, thumbnail_dir) -> None:
    _add(registry)
    supervisor = FakeSupervisor([
        ScriptedRun(lines=[(STDERR, "ERROR: aria2c exited with code 1")], exit_code=1),
        ScriptedRun(lines=[(STDOUT, f"{OUTPUT_MARKER}:/videos/clip.mp4")]),
    ])
    manager = _manager(registry, settings, supervisor, thumbnail_dir, local=("aria2c",))

    assert _start(manager) is True
    assert "--external-downloader" in supervisor.run_calls[0]
    assert "--external-downloader" not in supervisor.run_calls[1]
    assert "--external-downloader-args" not in supervisor.run_calls[1]
    assert registry.get("job1").fallback_used is False


def test_failed_job_can_be_started_again(registry, settings, thumbnail_dir) -> None:
    _add(registry)
    supervisor = FakeSupervisor([
        ScriptedRun(exit_code=1),
        ScriptedRun(lines=[(STDOUT, f"{OUTPUT_MARKER}:/videos/clip.mp4")]),
    ])
    manager = _manager(registry, settings, supervisor, thumbnail_dir)

    assert _start(manager) is False
    assert registry.get("job1").status == STATUS_FAILED
    assert _start(manager) is True
    assert registry.get("job1").status == STATUS_DONE


def test_second_start_of_a_running_job_is_ignored(registry, settings, thumbnail_dir) -> None:
    _add(registry)
    supervisor = FakeSupervisor([ScriptedRun(), ScriptedRun()])
    manager = _manager(registry, settings, supervisor, thumbnail_dir)

    async def main():
        results = await asyncio.gather(manager.start_download("job1"), manager.start_download("job1"))
        await manager.wait_for_background_tasks()
        return results

    assert asyncio.run(main()) == [True, False]
    assert len(supervisor.run_calls) == 1


def test_unknown_job_is_not_started(registry, settings, thumbnail_dir) -> None:
    supervisor = FakeSupervisor()
    assert _start(_manager(registry, settings, supervisor, thumbnail_dir), "missing") is False
    assert supervisor.run_calls == []


def test_empty_preset_store_fails_the_job(registry, settings, thumbnail_dir) -> None:
    _add(registry)
    supervisor = FakeSupervisor()
    manager = _manager(registry, settings, supervisor, thumbnail_dir, presets=PresetStore([]))

    assert _start(manager) is False
    assert registry.get("job1").status == STATUS_FAILED
    assert supervisor.run_calls == []


def test_concurrent_jobs_do_not_mix_fields(registry, settings, thumbnail_dir) -> None:
    _add(registry, "A")
    _add(registry, "B")

    class TwoJobSupervisor(FakeSupervisor):
        async def run(self, tool, args, env, on_line):
            job_id = args[-1].rsplit("/", 1)[-1]
            result = ProcessResult(exit_code=0)
            for line in (
                f"[download]  {10 if job_id == 'A' else 20}.0% ETA 00:0{1 if job_id == 'A' else 2}",
                f"{OUTPUT_MARKER}:/videos/{job_id}.mp4",
            ):
                self._handle_line(STDOUT, line, on_line, result)
                await asyncio.sleep(0)
            return result

    manager = _manager(registry, settings, TwoJobSupervisor(), thumbnail_dir)

    async def main():
        await asyncio.gather(manager.start_download("A"), manager.start_download("B"))
        await manager.wait_for_background_tasks()

    asyncio.run(main())

    a, b = registry.get("A"), registry.get("B")
    assert (a.output_path, a.title, a.eta) == ("/videos/A.mp4", "A.mp4", "00:01")
    assert (b.output_path, b.title, b.eta) == ("/videos/B.mp4", "B.mp4", "00:02")


def test_remove_job_refuses_running_jobs_and_cleans_thumbnails(registry, settings, thumbnail_dir) -> None:
    _add(registry)
    (thumbnail_dir / "job1.jpg").write_bytes(b"x")
    manager = _manager(registry, settings, FakeSupervisor(), thumbnail_dir)

    manager.running_jobs.add("job1")
    assert asyncio.run(manager.remove_job("job1")) is False
    assert "job1" in registry

    manager.running_jobs.discard("job1")
    assert asyncio.run(manager.remove_job("job1")) is True
    assert "job1" not in registry
    assert not (thumbnail_dir / "job1.jpg").exists()


def test_auto_clear_removes_finished_jobs(registry, tmp_path, thumbnail_dir, monkeypatch) -> None:
    monkeypatch.setattr(downloads_module, "AUTO_CLEAR_DELAY", 0)
    settings = Settings(default_download_dir=str(tmp_path), auto_clear_finished=True)
    _add(registry)
    manager = _manager(registry, settings, FakeSupervisor([ScriptedRun()]), thumbnail_dir)

    assert _start(manager) is True
    assert "job1" not in registry


def test_metadata_runs_with_the_real_fetcher(registry, settings, thumbnail_dir) -> None:
    from dlengine.metadata import MetadataFetcher

    _add(registry)

    def responder(tool, args):
        if "--write-thumbnail" in args:
            (thumbnail_dir / "job1.jpg").write_bytes(b"jpeg")
            return CommandOutput(exit_code=0, stdout="Clip Title:::NA\n")
        return CommandOutput(exit_code=1)

    supervisor = FakeSupervisor([ScriptedRun(lines=[(STDOUT, f"{OUTPUT_MARKER}:/videos/clip.mp4")])], responder)
    metadata = MetadataFetcher(registry, supervisor, make_resolver(), thumbnail_dir)
    manager = DownloadManager(registry, PresetStore([MP4_PRESET]), settings, supervisor, metadata,
                              tool_resolver=make_resolver())

    assert _start(manager) is True

    job = registry.get("job1")
    assert job.status == STATUS_DONE
    assert job.title == "Clip Title"
    assert job.thumbnail_status == "ready"
    assert job.thumbnail == Path(thumbnail_dir / "job1.jpg").as_uri()


def test_progress_updates_are_throttled(registry) -> None:
    registry.add(DownloadJob(job_id="j", url="u"))
    now = [0.0]
    handler = _RunOutputHandler(registry, "j", clock=lambda: now[0])

    handler(STDOUT, "[download]  10.0%")
    now[0] = 0.2
    handler(STDOUT, "[download]  20.0%")
    assert registry.get("j").progress == 10.0

    now[0] = 0.6
    handler(STDOUT, "[download]  30.0%")
    assert registry.get("j").progress == 30.0


def test_output_handler_marks_format_trouble_and_skips_live_paths(registry) -> None:
    registry.add(DownloadJob(job_id="j", url="u"))
    handler = _RunOutputHandler(registry, "j")

    update = handler(STDOUT, "[download] Destination: /videos/a.mp4\r")
    handler(STDERR, "ERROR: [site] abc123: Requested format is not available")

    assert update.output_path == "/videos/a.mp4"
    job = registry.get("j")
    assert job.output_path is None
    assert job.title == "a.mp4"
    assert job.phase == PHASE_RESOLVING
    assert job.status_detail.startswith("Requested format unavailable")
