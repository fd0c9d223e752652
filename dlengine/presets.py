"""
Defines presets: named yt-dlp argument templates that jobs are built from.

Editing and persisting presets is handled outside the engine; this module only
provides the schema, the built-in table, and lookup.
"""

import logging
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .exceptions import PresetNotFoundError


class Preset(BaseModel):
    """A named argument template."""
    id: str
    name: str
    description: str = ''
    is_built_in: bool = False
    args: List[str] = Field(default_factory=list)


BUILT_IN_PRESETS: List[Preset] = [
    Preset(id='default', name='Global Default', description='Best quality video and audio (Standard)',
           is_built_in=True, args=['-f', 'bestvideo+bestaudio/best']),
    Preset(id='whatsapp', name='WhatsApp Optimized', description='MP4 with H.264/AAC for maximum compatibility',
           is_built_in=True, args=['-f', 'bv[ext=mp4][vcodec^=avc1]+ba[ext=m4a]/b[ext=mp4]']),
    Preset(id='mp4-best', name='Best MP4', description='Highest quality MP4 container',
           is_built_in=True, args=['-f', 'bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]']),
    Preset(id='webm-best', name='Best WebM', description='Highest quality WebM container (VP9/AV1)',
           is_built_in=True, args=['-f', 'bestvideo[ext=webm]+bestaudio[ext=webm]/best[ext=webm]']),
    Preset(id='high-quality', name='High Quality (4K)', description='Prioritize maximum resolution',
           is_built_in=True, args=['-f', 'bestvideo[height<=2160]+bestaudio/best']),
    Preset(id='video-only', name='Video Only', description='Highest quality video without audio',
           is_built_in=True, args=['-f', 'bestvideo']),
    Preset(id='audio-only', name='Audio Only', description='Highest quality audio without video',
           is_built_in=True, args=['-f', 'bestaudio']),
    Preset(id='mp3', name='Audio (MP3)', description='Extract audio in high quality MP3 format',
           is_built_in=True, args=['-x', '--audio-format', 'mp3', '--audio-quality', '0']),
]


class PresetStore:
    """Read-only lookup over a list of presets."""

    def __init__(self, presets: Optional[Iterable[Preset]] = None):
        self.logger = logging.getLogger(__name__)
        self._presets: Dict[str, Preset] = {p.id: p for p in (presets if presets is not None else BUILT_IN_PRESETS)}

    def all(self) -> List[Preset]:
        return list(self._presets.values())

    def get(self, preset_id: Optional[str]) -> Preset:
        """
        Returns the preset with the given id, or the first preset as a fallback.

        Raises:
            PresetNotFoundError: If the store is empty.
        """
        if preset_id and preset_id in self._presets:
            return self._presets[preset_id]
        if not self._presets:
            raise PresetNotFoundError("No presets are defined.")
        fallback = next(iter(self._presets.values()))
        if preset_id:
            self.logger.warning(f"Preset '{preset_id}' not found. Using '{fallback.id}'.")
        return fallback
