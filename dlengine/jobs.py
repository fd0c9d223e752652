"""
Defines the data classes for a download job and its per-job overrides.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

# --- Job status (coarse lifecycle) ---
STATUS_QUEUED = "Queued"
STATUS_DOWNLOADING = "Downloading"
STATUS_POST_PROCESSING = "Post-processing"
STATUS_DONE = "Done"
STATUS_FAILED = "Failed"
JOB_STATUSES = (STATUS_QUEUED, STATUS_DOWNLOADING, STATUS_POST_PROCESSING, STATUS_DONE, STATUS_FAILED)
FINISHED_STATUSES = frozenset({STATUS_DONE, STATUS_FAILED})

# --- Job phase (display only, ordered) ---
PHASE_RESOLVING = "Resolving formats"
PHASE_DOWNLOADING = "Downloading streams"
PHASE_MERGING = "Merging streams"
PHASE_CONVERTING = "Converting"
PHASE_THUMBNAIL = "Generating thumbnail"
JOB_PHASES = (PHASE_RESOLVING, PHASE_DOWNLOADING, PHASE_MERGING, PHASE_CONVERTING, PHASE_THUMBNAIL)

# --- Thumbnail status ---
THUMB_PENDING = "pending"
THUMB_GENERATING = "generating"
THUMB_READY = "ready"
THUMB_FAILED = "failed"


@dataclass
class JobOverrides:
    """
    Per-job replacements for preset and settings values.

    Attributes:
        format: A format shortcut ('mp4', 'mp3', ...) or a raw yt-dlp format expression.
        download_dir: Destination directory, replacing the configured default.
        filename_template: yt-dlp output template, replacing the generated default.
    """
    format: Optional[str] = None
    download_dir: Optional[str] = None
    filename_template: Optional[str] = None


@dataclass
class DownloadJob:
    """
    Represents a single download task.

    Attributes:
        job_id: A unique identifier for the job.
        url: The URL provided by the user.
        preset_id: The preset whose argument template the job is built from.
        overrides: Per-job overrides applied on top of the preset.
        status: The coarse lifecycle status (one of JOB_STATUSES).
        phase: A display-only progress indicator (one of JOB_PHASES), independent of status.
        status_detail: A short user-facing description of the current state.
        progress: Download progress as a float between 0 and 100.
        speed: Transfer speed as reported by yt-dlp (e.g. "1.20MiB/s").
        eta: Remaining time as reported by yt-dlp (e.g. "00:12").
        output_path: The final file, only set from a confirmed completion marker or destination line.
        title: The file name or the title reported by yt-dlp.
        thumbnail: A file URI or remote URL of the thumbnail.
        thumbnail_status: One of pending, generating, ready, failed.
        thumbnail_error: Reason the thumbnail pipeline failed.
        fallback_used: Whether a fallback format produced the file.
        fallback_format: The fallback format that succeeded.
        created_at: When the job was added.
        status_changed_at: When status last changed.
    """
    job_id: str
    url: str
    preset_id: Optional[str] = None
    overrides: JobOverrides = field(default_factory=JobOverrides)
    status: str = STATUS_QUEUED
    phase: Optional[str] = None
    status_detail: Optional[str] = None
    progress: float = 0.0
    speed: Optional[str] = None
    eta: Optional[str] = None
    output_path: Optional[str] = None
    title: Optional[str] = None
    thumbnail: Optional[str] = None
    thumbnail_status: str = THUMB_PENDING
    thumbnail_error: Optional[str] = None
    fallback_used: bool = False
    fallback_format: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    status_changed_at: datetime = field(default_factory=datetime.now)

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES
