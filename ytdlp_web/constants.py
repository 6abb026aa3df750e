"""
Defines application-wide constants, paths, and subprocess behavior.

This module centralizes the on-disk locations used by the service and the
platform-specific flags for spawning yt-dlp.
"""

import sys
import subprocess
from pathlib import Path

# --- Application Path and Configuration Setup ---
APP_PATH = Path(__file__).resolve().parent
STATIC_DIR: Path = APP_PATH / 'static'

# Use a user-specific directory for configuration to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.ytdlp-web'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
DEFAULT_OUTPUT_DIR: Path = USER_DATA_DIR / 'downloads'
TEMP_DOWNLOAD_DIR: Path = USER_DATA_DIR / 'temp_downloads'

# Environment variables read by Settings are prefixed with this.
ENV_PREFIX = 'YTDLP_WEB_'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# Leftovers of interrupted downloads that are safe to delete on startup.
TEMP_FILE_SUFFIXES = frozenset({'.part', '.ytdl', '.temp'})

# Upper bound for concurrent yt-dlp processes, in config and at runtime.
MAX_CONCURRENT_LIMIT = 20

# --- Output markers emitted by the yt-dlp templates we pass ---
PROGRESS_PREFIX = 'PROGRESS::'
TITLE_PREFIX = 'TITLE::'
FILEPATH_PREFIX = 'FILEPATH::'
FIELD_SEPARATOR = '::'

PROGRESS_TEMPLATE = 'download:' + PROGRESS_PREFIX + FIELD_SEPARATOR.join([
    '%(progress.status)s',
    '%(progress._percent_str)s',
    '%(progress.downloaded_bytes)s',
    '%(progress.total_bytes,progress.total_bytes_estimate)s',
    '%(progress.speed)s',
    '%(progress.eta)s',
])
TITLE_TEMPLATE = 'before_dl:' + TITLE_PREFIX + '%(title)s'
FILEPATH_TEMPLATE = 'after_move:' + FILEPATH_PREFIX + '%(filepath)s'

# Labels for post-processing stages reported by yt-dlp's bracketed tags.
STAGE_LABELS = {
    'merger': 'Merging',
    'extractaudio': 'Extracting audio',
    'videoconvertor': 'Converting',
    'videoremuxer': 'Remuxing',
    'embedthumbnail': 'Embedding thumbnail',
    'fixupm4a': 'Fixing M4A',
    'metadata': 'Writing metadata',
}
