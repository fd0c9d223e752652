"""
Defines engine-wide constants, paths, and subprocess behavior.

This module centralizes the locations of managed tools, thumbnails and logs,
the completion marker protocol, and the environment forced onto yt-dlp.
"""

import sys
import subprocess
from pathlib import Path

# Use a user-specific directory for configuration to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.dlengine'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
BIN_DIR: Path = USER_DATA_DIR / 'bin'
THUMBNAIL_DIR: Path = USER_DATA_DIR / 'thumbnails'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0
EXECUTABLE_SUFFIX = '.exe' if sys.platform == 'win32' else ''

# --- Tool names ---
YT_DLP = 'yt-dlp'
FFMPEG = 'ffmpeg'
ARIA2C = 'aria2c'

# --- Completion marker protocol ---
# yt-dlp prints this token followed by the final file path once the file has been moved into place.
OUTPUT_MARKER = '__DLENGINE_OUTPUT__'
OUTPUT_MARKER_PRINT_TEMPLATE = f'after_move:{OUTPUT_MARKER}:%(filepath)s'

# Forced onto every yt-dlp invocation so its output decodes identically on any host locale.
TOOL_ENV = {
    'PYTHONIOENCODING': 'utf-8',
    'PYTHONUTF8': '1',
    'LANG': 'C.UTF-8',
    'LC_ALL': 'C.UTF-8',
}

ARIA2C_DOWNLOADER_ARGS = 'aria2c:-x 16 -s 16 -k 1M --summary-interval=0'

# --- Output handling ---
PROGRESS_UPDATE_INTERVAL = 0.5  # seconds between progress/speed/eta merges per run
STREAM_READ_CHUNK_SIZE = 4096

# --- Thumbnails ---
THUMBNAIL_EXTENSIONS = ('jpg', 'webp', 'png')
THUMBNAIL_CLEANUP_EXTENSIONS = ('jpg', 'webp', 'png', 'jpeg')
THUMBNAIL_WIDTH = 320
BLACKFRAME_SKIP_FILTER = (
    f"blackframe=amount=98:threshold=32,select='lt(lavfi.blackframe.pblack,98)',scale={THUMBNAIL_WIDTH}:-1"
)
FIRST_FRAME_FILTER = f'thumbnail,scale={THUMBNAIL_WIDTH}:-1'
THUMBNAIL_FETCH_TIMEOUT = 30  # seconds, total
YOUTUBE_HOSTS = frozenset({
    'youtube.com', 'www.youtube.com', 'm.youtube.com', 'music.youtube.com', 'youtu.be'
})

REQUEST_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36'
}

# Seconds before a finished job is dropped when auto-clear is enabled.
AUTO_CLEAR_DELAY = 2.0
