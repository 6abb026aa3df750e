"""
Configures the service's logging setup.

This module sets up a root logger that directs messages to both a log file
and the console.
"""

import sys
import logging
from datetime import datetime
from pathlib import Path

from .constants import LOG_DIR

LOG_FORMAT = '%(asctime)s - %(levelname)-8s - %(name)-25s - %(message)s'


def setup_logging(log_level_str: str = 'INFO', log_dir: Path = LOG_DIR):
    """
    Configures the root logger for file and console logging.

    Implements a "Minecraft-style" log rotation where `latest.log` is renamed
    to a timestamped file on startup.

    Args:
        log_level_str: The minimum logging level for both handlers (e.g., 'INFO').
        log_dir: The directory holding `latest.log` and its archives.
    """
    # 1. Ensure Log Directory Exists
    log_dir.mkdir(parents=True, exist_ok=True)

    # 2. Implement Log Rotation
    latest_log_path = log_dir / 'latest.log'
    if latest_log_path.exists():
        try:
            mod_time = latest_log_path.stat().st_mtime
            timestamp_str = datetime.fromtimestamp(mod_time).strftime('%Y-%m-%d_%H-%M-%S')

            archive_log_path = log_dir / f"{timestamp_str}.log"
            latest_log_path.rename(archive_log_path)
        except OSError as e:
            print(f"Error rotating log file: {e}", file=sys.stderr)

    # 3. Configure Root Logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG) # Capture all levels at the root

    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    log_formatter = logging.Formatter(LOG_FORMAT)
    log_level = getattr(logging, log_level_str.upper(), logging.INFO)

    # 4. Configure File Handler
    file_handler = logging.FileHandler(str(latest_log_path), encoding='utf-8')
    file_handler.setLevel(log_level)
    file_handler.setFormatter(log_formatter)
    root_logger.addHandler(file_handler)

    # 5. Configure Console Handler
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(log_formatter)
    root_logger.addHandler(console_handler)

    # aiohttp's access log is noisy at DEBUG; keep it at INFO.
    logging.getLogger('aiohttp.access').setLevel(max(log_level, logging.INFO))

    logging.info("--- Logging initialized ---")
    logging.debug(f"Log level set to: {logging.getLevelName(log_level)}")
