"""Resolves the external tools the engine drives."""
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from .constants import BIN_DIR, EXECUTABLE_SUFFIX, TOOL_ENV


@dataclass(frozen=True)
class ToolResolution:
    """
    The executable identity used for one invocation.

    Attributes:
        command: What is passed to the OS as the program.
        path: The file the command refers to, or the bare name when not found.
        is_local: True when the tool is a managed copy in the engine's bin directory.
    """
    command: str
    path: str
    is_local: bool

    @property
    def directory(self) -> Optional[str]:
        """The folder holding a local tool, for flags such as `--ffmpeg-location`."""
        return str(Path(self.path).parent) if self.is_local else None


def resolve_tool(name: str, bin_dir: Optional[Path] = None) -> ToolResolution:
    """
    Finds an executable, preferring a locally managed one.

    Never cached: every invocation resolves again so that an upgraded or
    newly installed tool is picked up without a restart.

    Args:
        name: The tool's base name (e.g. 'yt-dlp').
        bin_dir: The managed bin directory; defaults to BIN_DIR.
    """
    local_path = (bin_dir or BIN_DIR) / f'{name}{EXECUTABLE_SUFFIX}'
    if local_path.exists():
        return ToolResolution(command=str(local_path), path=str(local_path), is_local=True)
    path_in_system = shutil.which(name)
    if path_in_system:
        return ToolResolution(command=path_in_system, path=path_in_system, is_local=False)
    return ToolResolution(command=name, path=name, is_local=False)


def tool_env() -> Dict[str, str]:
    """Environment forcing UTF-8 output from yt-dlp regardless of host locale."""
    return dict(TOOL_ENV)
