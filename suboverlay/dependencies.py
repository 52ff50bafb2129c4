"""Resolves the locations and versions of the external tools (yt-dlp and FFmpeg)."""
import sys
import shutil
import asyncio
import logging
from pathlib import Path
from typing import Optional

from .config import ConfigStore
from .constants import APP_PATH
from .exceptions import SubprocessLaunchError
from .streams import kill, spawn


class DependencyManager:
    """
    Finds yt-dlp and FFmpeg.

    A path set in the configuration always wins, even if it does not exist
    (launching it then fails loudly instead of silently using another copy).
    Otherwise an executable next to the application is preferred over PATH.
    """

    def __init__(self, config_store: ConfigStore, search_system: bool = True):
        """
        Initializes the DependencyManager.

        Args:
            config_store: Source of the configured tool paths.
            search_system: Fall back to the app directory and PATH when nothing is configured.
        """
        self.config_store = config_store
        self.search_system = search_system
        self.logger = logging.getLogger(__name__)

    async def initialize(self):
        """Asynchronously resolves and logs tool paths to avoid blocking the event loop."""
        self.logger.info("Initializing dependency paths...")
        yt_dlp_path, ffmpeg_path = await asyncio.gather(
            asyncio.to_thread(self.resolve_yt_dlp),
            asyncio.to_thread(self.resolve_ffmpeg)
        )
        self.logger.info(f"yt-dlp path: {yt_dlp_path}")
        self.logger.info(f"FFmpeg path: {ffmpeg_path}")

    def resolve_yt_dlp(self) -> Optional[Path]:
        """Returns the yt-dlp executable to use, or None."""
        return self._resolve(self.config_store.get('bins').yt_dlp_path, 'yt-dlp')

    def resolve_ffmpeg(self) -> Optional[Path]:
        """Returns the ffmpeg executable to use, or None."""
        return self._resolve(self.config_store.get('bins').ffmpeg_path, 'ffmpeg')

    def _resolve(self, configured: str, name: str) -> Optional[Path]:
        if configured and configured.strip():
            return Path(configured.strip())
        if not self.search_system:
            return None
        return self._find_executable(name)

    def _find_executable(self, name: str) -> Optional[Path]:
        """Finds an executable, preferring a locally managed one."""
        local_path = APP_PATH / (f'{name}.exe' if sys.platform == 'win32' else name)
        if local_path.is_file():
            return local_path
        path_in_system = shutil.which(name)
        return Path(path_in_system) if path_in_system else None

    VERSION_TIMEOUT = 15

    async def get_version(self, executable_path: Optional[Path]) -> str:
        """
        Runs the tool's version flag and returns the first line it prints.

        Failures are reported as a short status string instead of raising,
        since the result is only logged.
        """
        if not executable_path or not executable_path.exists():
            return "Not found"
        flag = '-version' if 'ffmpeg' in executable_path.name.lower() else '--version'
        try:
            process = await spawn([str(executable_path), flag])
        except SubprocessLaunchError as e:
            self.logger.warning(f"Version check could not start: {e}")
            return "Cannot execute"

        try:
            stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=self.VERSION_TIMEOUT)
        except asyncio.TimeoutError:
            kill(process)
            return "Version check timed out"
        if process.returncode != 0:
            return "Cannot execute"
        lines = stdout_bytes.decode('utf-8', 'replace').strip().splitlines()
        return lines[0] if lines else "Unknown version"
