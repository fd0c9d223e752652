"""Thumbnail files: where they live, how they are generated, and cleanup."""
import asyncio
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import aiofiles
import aiohttp

from .constants import (
    BLACKFRAME_SKIP_FILTER, FIRST_FRAME_FILTER, REQUEST_HEADERS,
    THUMBNAIL_CLEANUP_EXTENSIONS, THUMBNAIL_DIR, THUMBNAIL_EXTENSIONS,
    THUMBNAIL_FETCH_TIMEOUT, YOUTUBE_HOSTS,
)
from .exceptions import ThumbnailDownloadError
from .process import ProcessSupervisor
from .tools import ToolResolution

logger = logging.getLogger(__name__)


def is_youtube_url(url: str) -> bool:
    try:
        host = (urlparse(url).hostname or '').lower()
    except ValueError:
        host = ''
    if host:
        return host in YOUTUBE_HOSTS
    lower = url.lower()
    return 'youtube.com' in lower or 'youtu.be' in lower


def thumbnail_extension_from_url(url: str) -> str:
    """Guesses the file extension from a thumbnail URL, defaulting to jpg."""
    suffix = Path(urlparse(url).path).suffix.lower().lstrip('.')
    if suffix == 'jpeg':
        return 'jpg'
    return suffix if suffix in THUMBNAIL_EXTENSIONS else 'jpg'


async def ensure_thumbnail_dir(thumbnail_dir: Path = THUMBNAIL_DIR) -> Path:
    await asyncio.to_thread(thumbnail_dir.mkdir, parents=True, exist_ok=True)
    return thumbnail_dir


async def find_local_thumbnail(job_id: str, thumbnail_dir: Path = THUMBNAIL_DIR) -> Optional[Path]:
    """Returns the first existing thumbnail file for the job, if any."""
    for ext in THUMBNAIL_EXTENSIONS:
        candidate = thumbnail_dir / f'{job_id}.{ext}'
        if await asyncio.to_thread(candidate.is_file):
            return candidate
    return None


async def download_thumbnail(url: str, dest: Path, referer: Optional[str] = None,
                             timeout: float = THUMBNAIL_FETCH_TIMEOUT):
    """
    Downloads a thumbnail over HTTP(S) with a bounded timeout.

    Raises:
        ThumbnailDownloadError: On network errors, non-2xx responses, timeouts,
            or an empty body.
    """
    headers = dict(REQUEST_HEADERS)
    if referer:
        headers['Referer'] = referer
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(url, headers=headers) as r:
                r.raise_for_status()
                body = await r.read()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise ThumbnailDownloadError(f"Download failed: {e}") from e
    if not body:
        raise ThumbnailDownloadError("Empty response body")

    await asyncio.to_thread(dest.parent.mkdir, parents=True, exist_ok=True)
    async with aiofiles.open(dest, 'wb') as f_out:
        await f_out.write(body)


async def generate_thumbnail_from_media_url(supervisor: ProcessSupervisor, ffmpeg: ToolResolution,
                                            job_id: str, media_url: str,
                                            thumbnail_dir: Path = THUMBNAIL_DIR) -> Optional[Path]:
    """
    Extracts a single frame from a media URL with ffmpeg.

    The first attempt skips black frames so intros and fades are not picked;
    the second takes a representative early frame.

    Returns:
        The thumbnail path, or None when both attempts produced nothing.
    """
    output_path = thumbnail_dir / f'{job_id}.jpg'
    for label, video_filter in (('primary', BLACKFRAME_SKIP_FILTER), ('fallback', FIRST_FRAME_FILTER)):
        logger.info(f"[{job_id}] [thumb] ffmpeg {label}: extracting frame from {media_url[:150]}")
        output = await supervisor.execute(
            ffmpeg, ['-y', '-i', media_url, '-frames:v', '1', '-vf', video_filter, str(output_path)]
        )
        logger.info(f"[{job_id}] [thumb] ffmpeg {label} exit code: {output.exit_code}")
        if output.stderr.strip():
            logger.debug(f"[{job_id}] [thumb] ffmpeg {label} stderr (tail): {output.stderr.strip()[-300:]}")
        if output.exit_code == 0 and await asyncio.to_thread(output_path.is_file):
            return output_path
        logger.warning(f"[{job_id}] [thumb] {label.capitalize()} extraction produced no thumbnail")
    return None


async def cleanup_thumbnails_for_job(job_id: str, thumbnail_dir: Path = THUMBNAIL_DIR) -> int:
    """Deletes every thumbnail file of a job. Failures are logged, never raised."""
    count = 0
    for ext in THUMBNAIL_CLEANUP_EXTENSIONS:
        path = thumbnail_dir / f'{job_id}.{ext}'
        try:
            if await asyncio.to_thread(path.exists):
                await asyncio.to_thread(path.unlink)
                count += 1
        except OSError as e:
            logger.warning(f"[{job_id}] Thumbnail cleanup failed for {path.name}: {e}")
    return count
