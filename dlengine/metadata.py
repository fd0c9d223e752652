"""
Resolves a finished job's title and thumbnail.

The pipeline is best-effort and runs after a job has succeeded. Each phase is
tried only if the previous ones produced no thumbnail, and no failure here
ever changes the job's status:

1. Ask yt-dlp for the title and thumbnail URL, and to write the embedded
   thumbnail next to the other thumbnails.
2. Download the thumbnail URL directly; if that fails, show the remote URL.
3. For sources other than YouTube, resolve a direct media URL and extract a
   frame with ffmpeg.
"""

import logging
import re
from pathlib import Path
from typing import Callable, Optional, Tuple

from .constants import FFMPEG, THUMBNAIL_DIR, YT_DLP
from .exceptions import ThumbnailDownloadError
from .jobs import PHASE_THUMBNAIL, THUMB_FAILED, THUMB_GENERATING, THUMB_READY
from .process import ProcessSupervisor
from .registry import JobRegistry
from .thumbnails import (
    download_thumbnail, ensure_thumbnail_dir, find_local_thumbnail,
    generate_thumbnail_from_media_url, is_youtube_url, thumbnail_extension_from_url,
)
from .tools import ToolResolution, resolve_tool, tool_env

METADATA_SEPARATOR = ':::'
HTTP_URL_RE = re.compile(r'^https?://', re.IGNORECASE)


def parse_metadata_line(stdout: str) -> Tuple[str, str]:
    """Splits the first `title:::thumbnail` line printed by yt-dlp."""
    lines = stdout.strip().splitlines()
    raw = lines[0] if lines else ''
    title, sep, thumbnail_url = raw.partition(METADATA_SEPARATOR)
    if not sep:
        return raw.strip(), ''
    return title.strip(), thumbnail_url.strip()


def is_usable_thumbnail_url(url: str) -> bool:
    return bool(url) and url.upper() != 'NA' and bool(HTTP_URL_RE.match(url))


class MetadataFetcher:
    """Runs the metadata and thumbnail pipeline for jobs in a registry."""

    def __init__(self, registry: JobRegistry, supervisor: Optional[ProcessSupervisor] = None,
                 tool_resolver: Callable[[str], ToolResolution] = resolve_tool,
                 thumbnail_dir: Path = THUMBNAIL_DIR):
        """
        Initializes the MetadataFetcher.

        Args:
            registry: The shared job registry.
            supervisor: Runs yt-dlp and ffmpeg queries.
            tool_resolver: Resolves tools freshly on every call.
            thumbnail_dir: Where thumbnails are written, named by job id.
        """
        self.registry = registry
        self.supervisor = supervisor or ProcessSupervisor()
        self.tool_resolver = tool_resolver
        self.thumbnail_dir = thumbnail_dir
        self.logger = logging.getLogger(__name__)

    async def fetch_metadata(self, job_id: str):
        """
        Fetches title and thumbnail for a job and records them on it.

        Safe to call independently of a download; unknown jobs are ignored.
        """
        job = self.registry.get(job_id)
        if job is None:
            return
        try:
            await self._run_phases(job_id, job.url)
        except Exception as e:
            self.logger.exception(f"[{job_id}] [meta] Unexpected error in metadata pipeline")
            self._fail(job_id, str(e))

    async def _run_phases(self, job_id: str, url: str):
        self.registry.update(job_id, phase=PHASE_THUMBNAIL)
        await ensure_thumbnail_dir(self.thumbnail_dir)

        thumbnail_url = await self._phase_embedded_thumbnail(job_id, url)

        if local := await find_local_thumbnail(job_id, self.thumbnail_dir):
            self.logger.info(f"[{job_id}] [meta] Thumbnail file found locally: {local.name}")
            self._ready(job_id, local.as_uri())
            return
        self.logger.warning(f"[{job_id}] [meta] No local thumbnail file produced by --write-thumbnail")

        if is_usable_thumbnail_url(thumbnail_url):
            await self._phase_direct_download(job_id, url, thumbnail_url)
            return
        self.logger.warning(f"[{job_id}] [meta] No usable thumbnail URL from yt-dlp (got: '{thumbnail_url}')")

        if is_youtube_url(url):
            self.logger.info(f"[{job_id}] [meta] YouTube source, skipping ffmpeg extraction")
            self._fail(job_id, "No thumbnail available")
            return

        await self._phase_frame_extraction(job_id, url)

    async def _phase_embedded_thumbnail(self, job_id: str, url: str) -> str:
        """Phase 1. Returns the thumbnail URL reported by yt-dlp, or ''."""
        yt_dlp = self.tool_resolver(YT_DLP)
        ffmpeg = self.tool_resolver(FFMPEG)
        args = [
            '--print', f'%(title)s{METADATA_SEPARATOR}%(thumbnail)s',
            '--write-thumbnail',
            '--convert-thumbnails', 'jpg',
            '--skip-download',
            '--flat-playlist',
            '--no-playlist',
            '--referer', url,
            '-o', str(self.thumbnail_dir / job_id),
            url,
        ]
        if ffmpeg.is_local:
            args = ['--ffmpeg-location', ffmpeg.directory, *args]

        self.logger.info(f"[{job_id}] [meta] Phase 1: {yt_dlp.path} {' '.join(args)}")
        output = await self.supervisor.execute(yt_dlp, args, env=tool_env())
        self.logger.info(f"[{job_id}] [meta] Phase 1 exit code: {output.exit_code}")
        if output.stderr.strip():
            self.logger.warning(f"[{job_id}] [meta] Phase 1 stderr: {output.stderr.strip()[:500]}")

        if output.exit_code != 0:
            self.logger.warning(f"[{job_id}] [meta] Phase 1 failed (exit {output.exit_code}), continuing to fallbacks")
            return ''

        title, thumbnail_url = parse_metadata_line(output.stdout)
        if title:
            self.registry.update(job_id, title=title)
        self.logger.info(f"[{job_id}] [meta] Parsed title: '{title}', thumbnail URL: '{thumbnail_url[:200]}'")
        return thumbnail_url

    async def _phase_direct_download(self, job_id: str, url: str, thumbnail_url: str):
        """Phase 2."""
        dest = self.thumbnail_dir / f'{job_id}.{thumbnail_extension_from_url(thumbnail_url)}'
        self.logger.info(f"[{job_id}] [meta] Phase 2: direct HTTP download to {dest.name}")
        try:
            await download_thumbnail(thumbnail_url, dest, referer=url)
        except (ThumbnailDownloadError, OSError) as e:
            self.logger.warning(f"[{job_id}] [meta] Phase 2 HTTP download failed: {e}. Using the remote URL directly.")
            self._ready(job_id, thumbnail_url)
            return
        self._ready(job_id, dest.as_uri())

    async def _phase_frame_extraction(self, job_id: str, url: str):
        """Phase 3."""
        yt_dlp = self.tool_resolver(YT_DLP)
        self.logger.info(f"[{job_id}] [meta] Phase 3: fetching media URL for ffmpeg extraction")
        output = await self.supervisor.execute(
            yt_dlp, ['-f', 'best', '-g', '--no-playlist', '--referer', url, url], env=tool_env()
        )
        if output.exit_code != 0:
            self.logger.error(f"[{job_id}] [meta] Phase 3: yt-dlp -g failed (exit {output.exit_code})")
            self._fail(job_id, "Failed to fetch media URL")
            return

        media_url = next((line.strip() for line in output.stdout.splitlines() if line.strip()), '')
        if not media_url:
            self.logger.error(f"[{job_id}] [meta] Phase 3: no media URL in stdout")
            self._fail(job_id, "No media URL found for thumbnail generation")
            return

        self.registry.update(job_id, thumbnail_status=THUMB_GENERATING, thumbnail_error=None)
        generated = await generate_thumbnail_from_media_url(
            self.supervisor, self.tool_resolver(FFMPEG), job_id, media_url, self.thumbnail_dir
        )
        if generated is None:
            self._fail(job_id, "Could not generate thumbnail")
            return
        self._ready(job_id, generated.as_uri())

    def _ready(self, job_id: str, thumbnail: str):
        self.registry.update(job_id, thumbnail=thumbnail, thumbnail_status=THUMB_READY, thumbnail_error=None)

    def _fail(self, job_id: str, reason: str):
        self.logger.warning(f"[{job_id}] [meta] Thumbnail unavailable: {reason}")
        self.registry.update(job_id, thumbnail_status=THUMB_FAILED, thumbnail_error=reason)
