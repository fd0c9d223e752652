"""
Builds and edits yt-dlp argument vectors.

Argument vectors are plain lists of strings. Every helper here returns a new
list and leaves its input untouched, so one vector can be derived from another
without side effects.
"""

import os
import re
from typing import List, Optional

from .config import Settings
from .constants import ARIA2C_DOWNLOADER_ARGS, OUTPUT_MARKER_PRINT_TEMPLATE
from .jobs import DownloadJob
from .tools import ToolResolution

FORMAT_FLAG = '-f'
EXTRACT_AUDIO_FLAG = '-x'
AUDIO_FORMAT_FLAG = '--audio-format'
MERGE_OUTPUT_FORMAT_FLAG = '--merge-output-format'
RECODE_VIDEO_FLAG = '--recode-video'
POSTPROCESSOR_ARGS_FLAG = '--postprocessor-args'
EXTERNAL_DOWNLOADER_FLAGS = ('--external-downloader', '--downloader')
EXTERNAL_DOWNLOADER_VALUE_FLAGS = (
    '--external-downloader', '--external-downloader-args', '--downloader', '--downloader-args'
)

VIDEO_FORMAT_OVERRIDES = {
    'best': 'bestvideo+bestaudio/best',
    'mp4': 'bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best',
    'webm': 'bestvideo[ext=webm]+bestaudio[ext=webm]/best[ext=webm]/best',
}
AUDIO_FORMAT_OVERRIDES = {
    'mp3': ['-f', 'bestaudio', '-x', '--audio-format', 'mp3', '--audio-quality', '0'],
    'm4a': ['-f', 'bestaudio', '-x', '--audio-format', 'm4a'],
    'flac': ['-f', 'bestaudio', '-x', '--audio-format', 'flac'],
    'wav': ['-f', 'bestaudio', '-x', '--audio-format', 'wav'],
    'alac': ['-f', 'bestaudio', '-x', '--audio-format', 'alac'],
}
FIXED_FLAGS = ['--ignore-config', '--newline', '--no-colors', '--no-playlist']


def remove_flag(args: List[str], flag: str) -> List[str]:
    """Removes every occurrence of a valueless flag."""
    return [arg for arg in args if arg != flag]


def remove_flag_with_value(args: List[str], flag: str) -> List[str]:
    """Removes every occurrence of a flag together with the value that follows it."""
    out: List[str] = []
    skip = False
    for arg in args:
        if skip:
            skip = False
            continue
        if arg == flag:
            skip = True
            continue
        out.append(arg)
    return out


def get_flag_value(args: List[str], flag: str) -> Optional[str]:
    """Returns the value following the first occurrence of a flag."""
    try:
        index = args.index(flag)
    except ValueError:
        return None
    return args[index + 1] if index + 1 < len(args) else None


def with_format(args: List[str], format_expr: str) -> List[str]:
    """Replaces the `-f` expression (or appends one)."""
    return remove_flag_with_value(args, FORMAT_FLAG) + [FORMAT_FLAG, format_expr]


def is_audio_only(args: List[str]) -> bool:
    """True when the vector extracts audio or selects a lone audio stream."""
    format_value = get_flag_value(args, FORMAT_FLAG) or ''
    return (
        EXTRACT_AUDIO_FLAG in args
        or AUDIO_FORMAT_FLAG in args
        or (format_value.startswith('bestaudio') and '+' not in format_value)
    )


def uses_external_downloader(args: List[str]) -> bool:
    return any(flag in args for flag in EXTERNAL_DOWNLOADER_FLAGS)


def strip_external_downloader_args(args: List[str]) -> List[str]:
    """Removes every flag that routes the download through an external downloader."""
    out = list(args)
    for flag in EXTERNAL_DOWNLOADER_VALUE_FLAGS:
        out = remove_flag_with_value(out, flag)
    return out


def quote_args(args: List[str]) -> str:
    """Renders a vector for logs, quoting arguments that contain spaces."""
    return ' '.join(f'"{arg}"' if ' ' in arg else arg for arg in args)


def apply_format_override(args: List[str], override: str) -> List[str]:
    """
    Applies a per-job format override to preset arguments.

    Known shortcuts map to tuned expressions; anything else is used as a raw
    `-f` expression.
    """
    key = override.strip().lower()
    if key == 'mkv':
        return args + [MERGE_OUTPUT_FORMAT_FLAG, 'mkv']

    out = remove_flag_with_value(args, FORMAT_FLAG)
    if key in AUDIO_FORMAT_OVERRIDES:
        out = remove_flag(out, EXTRACT_AUDIO_FLAG)
        out = remove_flag_with_value(out, AUDIO_FORMAT_FLAG)
        out = remove_flag_with_value(out, '--audio-quality')
        return out + AUDIO_FORMAT_OVERRIDES[key]
    return out + [FORMAT_FLAG, VIDEO_FORMAT_OVERRIDES.get(key, override.strip())]


def default_filename_template(args: List[str], job_id: str, settings: Settings) -> str:
    """Under the 'rename' policy, each job gets a unique file name."""
    if settings.file_collision == 'rename':
        kind = '[audio]' if is_audio_only(args) else '[video]'
        return f'%(title)s {kind} [{job_id}].%(ext)s'
    return '%(title)s.%(ext)s'


def collision_flags(settings: Settings) -> List[str]:
    if settings.file_collision == 'overwrite':
        return ['--force-overwrites']
    return ['--no-overwrites']


def build_download_args(preset_args: List[str], job: DownloadJob, settings: Settings,
                        ffmpeg: ToolResolution, aria2c: ToolResolution) -> List[str]:
    """
    Builds the full yt-dlp argument vector for a job.

    The vector always carries the completion marker `--print` directive and
    ends with the job URL.

    Args:
        preset_args: The preset's argument template.
        job: The job, providing overrides, id and URL.
        settings: Engine settings (download dir, collision policy, rate limit).
        ffmpeg: Resolution of ffmpeg; a local copy is passed with `--ffmpeg-location`.
        aria2c: Resolution of aria2c; a local copy becomes the external downloader.

    Returns:
        The argument vector, excluding the executable.
    """
    args = list(preset_args)
    overrides = job.overrides

    if overrides.format:
        args = apply_format_override(args, overrides.format)

    if ffmpeg.is_local:
        args += ['--ffmpeg-location', ffmpeg.directory]

    if aria2c.is_local:
        args += ['--external-downloader', aria2c.path, '--external-downloader-args', ARIA2C_DOWNLOADER_ARGS]

    download_dir = overrides.download_dir or settings.default_download_dir
    filename_template = overrides.filename_template or default_filename_template(args, job.job_id, settings)
    args += ['-o', os.path.join(download_dir, filename_template) if download_dir else filename_template]

    args += collision_flags(settings)
    args += FIXED_FLAGS
    args += ['--print', OUTPUT_MARKER_PRINT_TEMPLATE]

    if settings.max_speed_kbps > 0:
        args += ['--limit-rate', f'{settings.max_speed_kbps}K']

    args.append(job.url)
    return args


def simplify_format(format_expr: str) -> str:
    """Drops bracket qualifiers and collapses duplicate alternatives."""
    stripped = re.sub(r'\[[^\]]*\]', '', format_expr)
    alternatives = [alt for alt in stripped.split('/') if alt]
    return '/'.join(dict.fromkeys(alternatives))
