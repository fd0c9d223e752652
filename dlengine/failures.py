"""
Classifies yt-dlp failures from its stderr text.

yt-dlp exposes no structured error codes, so failures are recognized by
case-insensitive substrings. Classification is pure so that it can be tested
without spawning anything.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .process import ProcessResult

FORMAT_UNAVAILABLE_PATTERN = re.compile(r'requested format is not available', re.IGNORECASE)
DOWNLOADER_PATTERN = re.compile(r'aria2c|downloader', re.IGNORECASE)
WARNING_PREFIX_PATTERN = re.compile(r'^\s*warning\b', re.IGNORECASE)


class FailureKind(str, Enum):
    FORMAT_UNAVAILABLE = "FormatUnavailable"
    DOWNLOADER_ERROR = "DownloaderError"
    DECODE_WARNING = "DecodeWarning"
    GENERIC_FAILURE = "GenericFailure"


@dataclass(frozen=True)
class StderrSignal:
    """Flags raised by a single stderr line."""
    is_warning: bool = False
    format_unavailable: bool = False
    downloader_error: bool = False


def is_warning_line(line: str) -> bool:
    return bool(WARNING_PREFIX_PATTERN.match(line))


def classify_stderr_line(line: str) -> StderrSignal:
    """
    Scans one stderr line for known failure signals.

    Args:
        line: A single line of yt-dlp stderr, without its line terminator.

    Returns:
        A StderrSignal; all flags are False for unrecognized lines.
    """
    is_warning = is_warning_line(line)
    return StderrSignal(
        is_warning=is_warning,
        format_unavailable=bool(FORMAT_UNAVAILABLE_PATTERN.search(line)),
        downloader_error=not is_warning and bool(DOWNLOADER_PATTERN.search(line)),
    )


def failure_kind(result: "ProcessResult") -> FailureKind:
    """
    Maps a run with a nonzero exit code or a decode warning to its error kind.

    DecodeWarning is only reported for runs that otherwise succeeded, since a
    decode problem never fails a run on its own.
    """
    if result.format_unavailable:
        return FailureKind.FORMAT_UNAVAILABLE
    if result.downloader_error:
        return FailureKind.DOWNLOADER_ERROR
    if result.exit_code == 0 and result.decode_warning:
        return FailureKind.DECODE_WARNING
    return FailureKind.GENERIC_FAILURE


FAILURE_DETAILS = {
    FailureKind.FORMAT_UNAVAILABLE: "Failed to resolve a compatible format",
}


def failure_detail(kind: FailureKind) -> str:
    """Returns the user-facing detail for a job that ended Failed with this kind."""
    return FAILURE_DETAILS.get(kind, "Download failed (see logs)")
