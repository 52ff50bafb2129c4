"""
Defines application-wide constants and paths.

This module centralizes configuration for paths, file-type sets, and subprocess
behavior, adapting to whether the application is running from source or as a
frozen executable.
"""

import sys
import subprocess
from pathlib import Path

# --- Application Path and Configuration Setup ---
if getattr(sys, 'frozen', False):
    # If the application is run as a bundle, the PyInstaller bootloader
    # sets the app path to the executable's directory.
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of 'suboverlay').
    APP_PATH = Path(__file__).resolve().parent.parent

# Use a user-specific directory for configuration and caches to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.suboverlay'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
VIDEO_CACHE_DIR: Path = USER_DATA_DIR / 'video-cache'
SUBS_CACHE_DIR: Path = USER_DATA_DIR / 'subs-cache'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# Forces the fetch tool to emit UTF-8 without ANSI colors, whatever the host locale.
SUBPROCESS_ENV_OVERRIDES = {
    'PYTHONIOENCODING': 'utf-8',
    'PYTHONUTF8': '1',
    'NO_COLOR': '1',
}

# --- Media Types ---
AUDIO_EXTS = frozenset({'.mp3', '.m4a', '.aac', '.flac', '.wav', '.ogg', '.opus', '.wma', '.mka'})
VIDEO_EXTS = frozenset({'.mp4', '.mkv', '.webm', '.mov', '.m4v'})
SUBTITLE_EXTS = frozenset({'.ass', '.ssa', '.srt', '.vtt', '.ttml', '.srv3', '.json3'})

# Leftovers of an interrupted or in-progress fetch; never a finished artifact.
TEMP_FILE_SUFFIXES = frozenset({'.part', '.ytdl', '.temp', '.tmp'})

# --- Fetch Tool Protocol ---
META_PREFIX = '__meta__'
OUTPUT_TEMPLATE = '%(title)s_%(id)s.%(ext)s'
DEFAULT_MERGE_FORMAT = 'mp4'
DEFAULT_AUDIO_FORMAT = 'm4a'
DEFAULT_SUBTITLE_FORMAT = 'ass'
MAX_SUBTITLE_CANDIDATES = 12

# --- Filenames ---
MAX_SEGMENT_LENGTH = 180
MAX_BASENAME_LENGTH = 200

# --- Overlay Server ---
DEFAULT_OVERLAY_PORT = 1976
