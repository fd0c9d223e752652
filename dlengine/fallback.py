"""
Recovers failed yt-dlp runs with alternate arguments.

Recovery happens in three steps, each only when the previous state calls for it:

1. A run that failed inside an external downloader (aria2c) is retried once
   with the native downloader.
2. A run that failed because the requested format is not available is
   retried with progressively more generic format expressions.
3. When a generic format produced the file but the original request asked
   for a specific container or codec, the file is converted with ffmpeg.
"""

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple

from .arguments import (
    FORMAT_FLAG, MERGE_OUTPUT_FORMAT_FLAG, POSTPROCESSOR_ARGS_FLAG, RECODE_VIDEO_FLAG,
    get_flag_value, is_audio_only, quote_args, remove_flag_with_value, simplify_format,
    strip_external_downloader_args, uses_external_downloader, with_format,
)
from .constants import FFMPEG
from .failures import FailureKind, failure_kind
from .jobs import PHASE_CONVERTING, PHASE_DOWNLOADING, PHASE_RESOLVING, STATUS_POST_PROCESSING
from .process import ProcessResult, ProcessSupervisor
from .registry import JobRegistry
from .tools import ToolResolution, resolve_tool

RunAttempt = Callable[[List[str]], Awaitable[ProcessResult]]

GENERIC_AUDIO_FORMAT = 'bestaudio'
GENERIC_VIDEO_FORMAT = 'bestvideo+bestaudio/best'
LAST_RESORT_FORMAT = 'best'
AVC1_FILTER_RE = re.compile(r'\[vcodec\^=avc1\]')
H264_CONVERSION_ARGS = ['-c:v', 'libx264', '-pix_fmt', 'yuv420p', '-c:a', 'aac', '-movflags', '+faststart']
REMUX_CONVERSION_ARGS = ['-c:v', 'copy', '-c:a', 'copy']


@dataclass
class FallbackAttempt:
    """One alternate invocation: the format tried and the full argument vector."""
    format: str
    args: List[str]


def _clean_fallback_args(args: List[str], format_expr: str) -> List[str]:
    # Conversion flags written for the original format break on generic ones.
    out = with_format(args, format_expr)
    out = remove_flag_with_value(out, POSTPROCESSOR_ARGS_FLAG)
    return remove_flag_with_value(out, RECODE_VIDEO_FLAG)


def build_fallback_attempts(args: List[str]) -> List[FallbackAttempt]:
    """
    Builds the ordered candidate list for a format-unavailable failure.

    Candidates are the original expression without bracket qualifiers, a
    generic expression matching the request kind, and plain 'best'. No format
    appears twice and none repeats the original expression.

    Args:
        args: The argument vector of the failed run.
    """
    original = get_flag_value(args, FORMAT_FLAG) or ''
    generic = GENERIC_AUDIO_FORMAT if is_audio_only(args) else GENERIC_VIDEO_FORMAT
    candidates = [simplify_format(original), generic, LAST_RESORT_FORMAT]

    attempts: List[FallbackAttempt] = []
    seen = {original}
    for format_expr in candidates:
        if not format_expr or format_expr in seen:
            continue
        seen.add(format_expr)
        attempts.append(FallbackAttempt(format=format_expr, args=_clean_fallback_args(args, format_expr)))
    return attempts


def conversion_args_for(original_args: List[str]) -> Optional[List[str]]:
    """
    Returns the ffmpeg codec arguments that reproduce the original request.

    None means the original request named no container or codec, or was
    audio-only, and the fallback output is kept as is.
    """
    if is_audio_only(original_args):
        return None

    postprocessor_args = get_flag_value(original_args, POSTPROCESSOR_ARGS_FLAG) or ''
    if 'VideoConvertor:' in postprocessor_args:
        return postprocessor_args.replace('VideoConvertor:', '').split()

    if AVC1_FILTER_RE.search(get_flag_value(original_args, FORMAT_FLAG) or ''):
        return list(H264_CONVERSION_ARGS)

    if RECODE_VIDEO_FLAG in original_args or MERGE_OUTPUT_FORMAT_FLAG in original_args:
        return list(REMUX_CONVERSION_ARGS)

    return None


def target_extension(original_args: List[str]) -> str:
    """The container the original request asked for; mp4 when only a codec was named."""
    return (
        get_flag_value(original_args, MERGE_OUTPUT_FORMAT_FLAG)
        or get_flag_value(original_args, RECODE_VIDEO_FLAG)
        or 'mp4'
    )


def conversion_paths(input_path: str, extension: str) -> Tuple[str, str]:
    """Returns (temporary_path, final_path) for converting input_path to extension."""
    base = os.path.splitext(input_path)[0]
    return f'{base}.converting.{extension}', f'{base}.{extension}'


class FallbackEngine:
    """Sequences recovery attempts for one job run and records the outcome on the job."""

    def __init__(self, registry: JobRegistry, supervisor: ProcessSupervisor,
                 tool_resolver: Callable[[str], ToolResolution] = resolve_tool):
        """
        Initializes the FallbackEngine.

        Args:
            registry: The shared job registry.
            supervisor: Runs the ffmpeg conversion pass.
            tool_resolver: Resolves ffmpeg freshly for each conversion.
        """
        self.registry = registry
        self.supervisor = supervisor
        self.tool_resolver = tool_resolver
        self.logger = logging.getLogger(__name__)

    async def run(self, job_id: str, args: List[str], attempt: RunAttempt) -> ProcessResult:
        """
        Runs the primary attempt and, if it fails, every applicable recovery step.

        Args:
            job_id: The job whose state is updated.
            args: The primary argument vector.
            attempt: Runs yt-dlp with a given argument vector.

        Returns:
            The result of the last run made. On a converted fallback its
            last_known_output_path points at the converted file.
        """
        result = await attempt(args)
        if result.succeeded:
            return result

        active_args = args
        if uses_external_downloader(args) and failure_kind(result) == FailureKind.DOWNLOADER_ERROR:
            active_args = strip_external_downloader_args(args)
            self.logger.warning(f"[{job_id}] Downloader error detected, retrying with native downloader")
            self.logger.info(f"[{job_id}] Retrying without external downloader: {quote_args(active_args)}")
            self.registry.update(job_id, phase=PHASE_DOWNLOADING, status_detail="Retrying with native downloader")
            result = await attempt(active_args)
            if result.succeeded:
                return result

        if failure_kind(result) != FailureKind.FORMAT_UNAVAILABLE:
            return result

        result, fallback_format = await self._try_fallback_formats(job_id, active_args, attempt, result)
        if fallback_format is None:
            return result

        conversion_args = conversion_args_for(args)
        if conversion_args and result.last_known_output_path:
            converted = await self.convert(job_id, result.last_known_output_path, conversion_args, target_extension(args))
            if converted:
                result.last_known_output_path = converted
        return result

    async def _try_fallback_formats(self, job_id: str, args: List[str], attempt: RunAttempt,
                                    result: ProcessResult) -> Tuple[ProcessResult, Optional[str]]:
        """Returns (last_result, succeeded_format_or_None)."""
        attempts = build_fallback_attempts(args)
        for index, fallback in enumerate(attempts, start=1):
            self.registry.update(
                job_id, phase=PHASE_RESOLVING,
                status_detail=f"Trying fallback format {index}/{len(attempts)}: {fallback.format}",
            )
            self.logger.warning(f"[{job_id}] Falling back to format: {fallback.format}")
            self.logger.info(f"[{job_id}] Retrying with fallback format: {quote_args(fallback.args)}")
            result = await attempt(fallback.args)
            if result.succeeded:
                self.logger.info(f"[{job_id}] Fallback succeeded with format: {fallback.format}")
                self.registry.update(
                    job_id, fallback_used=True, fallback_format=fallback.format,
                    status_detail=f"Adaptive fallback active ({fallback.format})",
                )
                return result, fallback.format
            if failure_kind(result) != FailureKind.FORMAT_UNAVAILABLE:
                self.logger.error(f"[{job_id}] Fallback format {fallback.format} failed for another reason, stopping")
                return result, None

        self.logger.error(f"[{job_id}] All fallback formats failed")
        return result, None

    async def convert(self, job_id: str, input_path: str, codec_args: List[str], extension: str) -> Optional[str]:
        """
        Converts a fallback download to the requested container.

        The converted file is written to a temporary path and renamed over the
        final path in one step, so the final name never refers to a partial file.

        Returns:
            The final path on success, or None when the raw file is kept.
        """
        tmp_path, final_path = conversion_paths(input_path, extension)
        ffmpeg = self.tool_resolver(FFMPEG)
        ffmpeg_args = ['-i', input_path, *codec_args, '-y', tmp_path]

        self.registry.update(
            job_id, status=STATUS_POST_PROCESSING, phase=PHASE_CONVERTING,
            status_detail="Converting to target format", progress=99.0,
        )
        self.logger.info(f"[{job_id}] Running separate FFmpeg conversion: {ffmpeg.path} {quote_args(ffmpeg_args)}")
        output = await self.supervisor.execute(ffmpeg, ffmpeg_args)

        if output.exit_code != 0 or not await asyncio.to_thread(Path(tmp_path).exists):
            self.logger.error(f"[{job_id}] FFmpeg conversion failed (code {output.exit_code}): {output.stderr.strip()[-500:]}")
            await self._discard(job_id, tmp_path)
            return None

        try:
            await asyncio.to_thread(os.replace, tmp_path, final_path)
        except OSError as e:
            self.logger.error(f"[{job_id}] Could not move converted file into place: {e}")
            await self._discard(job_id, tmp_path)
            return None

        if os.path.normcase(os.path.abspath(input_path)) != os.path.normcase(os.path.abspath(final_path)):
            try:
                await asyncio.to_thread(Path(input_path).unlink, missing_ok=True)
            except OSError as e:
                self.logger.warning(f"[{job_id}] Converted file is in place but the raw file could not be removed: {e}")

        self.logger.info(f"[{job_id}] FFmpeg conversion succeeded: {final_path}")
        return final_path

    async def _discard(self, job_id: str, path: str):
        try:
            await asyncio.to_thread(Path(path).unlink, missing_ok=True)
        except OSError as e:
            self.logger.warning(f"[{job_id}] Could not remove temporary file {path}: {e}")
