"""
Maps single lines of yt-dlp output to structured job updates.

The parser is a set of independent matchers. Each one looks at the same line
and may contribute a partial update; the partial updates are merged into one.
Nothing is remembered between calls: throttling and buffering belong to the
caller.
"""

import re
from dataclasses import dataclass, fields
from typing import Callable, Dict, Any, List, Optional
from urllib.parse import unquote

from .constants import OUTPUT_MARKER
from .jobs import (
    STATUS_POST_PROCESSING, PHASE_DOWNLOADING, PHASE_MERGING, PHASE_CONVERTING
)

ANSI_ESCAPE_RE = re.compile(r'\x1B\[[0-?]*[ -/]*[@-~]')

PROGRESS_RE = re.compile(r'\[download\]\s+(\d+(?:\.\d+)?)%')
SPEED_RE = re.compile(r'\bat\s+(~?\s*[\d.]+\s*[KMGTP]?i?B/s)', re.IGNORECASE)
ETA_RE = re.compile(r'\bETA\s+(\d+:\d+(?::\d+)?)')
MARKER_RE = re.compile(re.escape(OUTPUT_MARKER) + r':(.+)$')
MERGER_RE = re.compile(r'^\[Merger\]\s+Merging formats into\s+(.+?)\s*$')
ALREADY_DOWNLOADED_RE = re.compile(
    r'^\[download\]\s+(.+?)\s+has already been downloaded(?: and merged)?\s*$'
)
DOWNLOAD_DESTINATION_RE = re.compile(r'^\[download\]\s+Destination:\s+(.+?)\s*$')
TAGGED_DESTINATION_RE = re.compile(r'^\[(\w+)\]\s+Destination:\s+(.+?)\s*$')
FILE_URI_RE = re.compile(r'^file:', re.IGNORECASE)
DRIVE_AFTER_SLASH_RE = re.compile(r'^/[a-zA-Z]:[/\\]')

CONVERTER_TAGS = ('[ffmpeg]', '[VideoConvertor]', '[ExtractAudio]')


@dataclass
class DownloadUpdate:
    """A partial job update; None means the line said nothing about that field."""
    progress: Optional[float] = None
    speed: Optional[str] = None
    eta: Optional[str] = None
    title: Optional[str] = None
    output_path: Optional[str] = None
    status: Optional[str] = None
    phase: Optional[str] = None

    def merge(self, other: "DownloadUpdate") -> "DownloadUpdate":
        """Fills fields still unset on this update from another one."""
        for f in fields(self):
            if getattr(self, f.name) is None:
                setattr(self, f.name, getattr(other, f.name))
        return self

    @property
    def has_transfer_stats(self) -> bool:
        return self.progress is not None or self.speed is not None or self.eta is not None

    def as_changes(self) -> Dict[str, Any]:
        """Returns only the fields that were set, keyed by job attribute name."""
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


# --- Path cleanup ---

def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE_RE.sub('', text)


def strip_file_uri(path: str) -> str:
    """
    Turns a `file:` URI into a plain filesystem path.

    Handles `file:///C:/x` (drive letter after the leading slash) and the
    `localhost` authority. Percent-escapes are decoded only for URIs.
    """
    if not FILE_URI_RE.match(path):
        return path
    out = re.sub(r'^file://', '', path, flags=re.IGNORECASE)
    out = re.sub(r'^file:/', '/', out, flags=re.IGNORECASE)
    out = re.sub(r'^localhost/', '/', out, flags=re.IGNORECASE)
    if DRIVE_AFTER_SLASH_RE.match(out):
        out = out[1:]
    return unquote(out)


def clean_path(raw: str) -> str:
    """Applies the full cleanup pipeline to a path captured from output."""
    path = strip_ansi(raw).replace('\r', '').strip()
    path = path.strip('"\'').strip()
    return strip_file_uri(path)


def extract_title(path: str) -> str:
    """Returns the final path segment, for either separator."""
    return re.split(r'[\\/]', path)[-1] or path


def _path_update(raw: str) -> Optional[DownloadUpdate]:
    path = clean_path(raw)
    if not path:
        return None
    return DownloadUpdate(output_path=path, title=extract_title(path))


# --- Matchers ---

def match_marker(line: str) -> Optional[DownloadUpdate]:
    """The completion marker printed by `--print after_move:...`."""
    if match := MARKER_RE.search(line):
        return _path_update(match.group(1))
    return None


def match_progress(line: str) -> Optional[DownloadUpdate]:
    if match := PROGRESS_RE.search(line):
        return DownloadUpdate(progress=float(match.group(1)))
    return None


def match_speed(line: str) -> Optional[DownloadUpdate]:
    if match := SPEED_RE.search(line):
        return DownloadUpdate(speed=match.group(1).replace(' ', ''))
    return None


def match_eta(line: str) -> Optional[DownloadUpdate]:
    if match := ETA_RE.search(line):
        return DownloadUpdate(eta=match.group(1))
    return None


def match_merger(line: str) -> Optional[DownloadUpdate]:
    if match := MERGER_RE.match(line):
        update = _path_update(match.group(1))
        if update:
            update.status = STATUS_POST_PROCESSING
            update.phase = PHASE_MERGING
        return update
    return None


def match_already_downloaded(line: str) -> Optional[DownloadUpdate]:
    if match := ALREADY_DOWNLOADED_RE.match(line):
        return _path_update(match.group(1))
    return None


def match_download_destination(line: str) -> Optional[DownloadUpdate]:
    if match := DOWNLOAD_DESTINATION_RE.match(line):
        return _path_update(match.group(1))
    return None


def match_tagged_destination(line: str) -> Optional[DownloadUpdate]:
    """Destination lines of post-processors, e.g. `[ExtractAudio] Destination: a.mp3`."""
    if match := TAGGED_DESTINATION_RE.match(line):
        return _path_update(match.group(2))
    return None


def match_phase(line: str) -> Optional[DownloadUpdate]:
    if line.startswith('[download]'):
        return DownloadUpdate(phase=PHASE_DOWNLOADING)
    if line.startswith('[Merger]'):
        return DownloadUpdate(status=STATUS_POST_PROCESSING, phase=PHASE_MERGING)
    if line.startswith(CONVERTER_TAGS):
        return DownloadUpdate(status=STATUS_POST_PROCESSING, phase=PHASE_CONVERTING)
    return None


# Order only matters for the path fields: the marker is unambiguous and must win.
MATCHERS: List[Callable[[str], Optional[DownloadUpdate]]] = [
    match_marker,
    match_merger,
    match_already_downloaded,
    match_download_destination,
    match_tagged_destination,
    match_progress,
    match_speed,
    match_eta,
    match_phase,
]


def parse(line: str) -> Optional[DownloadUpdate]:
    """
    Parses one line of yt-dlp stdout or stderr.

    Args:
        line: A single output line; ANSI escapes and carriage returns are tolerated.

    Returns:
        The merged update of every matcher that recognized the line, or None.
    """
    clean_line = strip_ansi(line).replace('\r', '').strip()
    if not clean_line:
        return None

    update: Optional[DownloadUpdate] = None
    for matcher in MATCHERS:
        partial = matcher(clean_line)
        if partial is None:
            continue
        update = partial if update is None else update.merge(partial)
    return update
