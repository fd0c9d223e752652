"""
Configures the engine's logging setup.

This module sets up a root logger that writes to a rotating file log and,
optionally, to a console stream and a queue for a UI log view.
"""

import sys
import queue
import logging
import logging.handlers
from datetime import datetime
from pathlib import Path
from typing import Optional

from .constants import LOG_DIR

LOG_FORMAT = '%(asctime)s - %(levelname)-8s - %(name)-25s - %(message)s'


def rotate_latest_log(log_dir: Path = LOG_DIR) -> Path:
    """
    Renames an existing `latest.log` to a timestamped archive.

    Returns:
        The path of the (now free) `latest.log`.
    """
    latest_log_path = log_dir / 'latest.log'
    if latest_log_path.exists():
        try:
            mod_time = latest_log_path.stat().st_mtime
            timestamp_str = datetime.fromtimestamp(mod_time).strftime('%Y-%m-%d_%H-%M-%S')

            archive_log_path = log_dir / f"{timestamp_str}.log"
            latest_log_path.rename(archive_log_path)
        except OSError as e:
            print(f"Error rotating log file: {e}", file=sys.stderr)
    return latest_log_path


def setup_logging(file_log_level_str: str = 'INFO', log_queue: Optional[queue.Queue] = None,
                  console_level_str: Optional[str] = None, log_dir: Path = LOG_DIR):
    """
    Configures the root logger for file, console and queue logging.

    Implements a "Minecraft-style" log rotation where `latest.log` is renamed
    to a timestamped file on startup.

    Args:
        file_log_level_str: The minimum logging level for the file handler (e.g., 'INFO').
        log_queue: If given, every record is also put on this queue.
        console_level_str: If given, records at this level and above go to stderr.
        log_dir: Where `latest.log` and its archives live.
    """
    # 1. Ensure Log Directory Exists
    log_dir.mkdir(parents=True, exist_ok=True)

    # 2. Implement Log Rotation
    latest_log_path = rotate_latest_log(log_dir)

    # 3. Configure Root Logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG) # Capture all levels at the root

    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    log_formatter = logging.Formatter(LOG_FORMAT)

    # 4. Configure File Handler
    file_log_level = getattr(logging, file_log_level_str.upper(), logging.INFO)

    file_handler = logging.FileHandler(str(latest_log_path), encoding='utf-8')
    file_handler.setLevel(file_log_level)
    file_handler.setFormatter(log_formatter)
    root_logger.addHandler(file_handler)

    # 5. Optional console and queue handlers
    if console_level_str:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(getattr(logging, console_level_str.upper(), logging.WARNING))
        console_handler.setFormatter(logging.Formatter('%(levelname)-8s %(message)s'))
        root_logger.addHandler(console_handler)

    if log_queue is not None:
        queue_handler = logging.handlers.QueueHandler(log_queue)
        queue_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(queue_handler)

    logging.info("--- Logging initialized ---")
    logging.debug(f"File log level set to: {logging.getLevelName(file_log_level)}")
