"""
Provides methods to extract information from URLs using yt-dlp.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Tuple

from .exceptions import SubprocessLaunchError, URLExtractionError
from .streams import kill, spawn


@dataclass
class MediaInfo:
    """
    The parts of a `-J` probe this application uses.

    Attributes:
        id: The tool's content id.
        title: The media title.
        manual_subtitles: Languages with human-authored subtitle tracks.
        automatic_captions: Languages with auto-generated captions.
    """
    id: str = ''
    title: str = ''
    manual_subtitles: List[str] = field(default_factory=list)
    automatic_captions: List[str] = field(default_factory=list)

    @classmethod
    def from_info_dict(cls, info: Any) -> 'MediaInfo':
        if not isinstance(info, dict):
            return cls()
        subtitles = info.get('subtitles') if isinstance(info.get('subtitles'), dict) else {}
        automatic = info.get('automatic_captions') if isinstance(info.get('automatic_captions'), dict) else {}
        return cls(
            id=str(info.get('id') or ''),
            title=str(info.get('title') or ''),
            # live_chat is a JSON replay, not a convertible subtitle track.
            manual_subtitles=[lang for lang in subtitles if lang != 'live_chat'],
            automatic_captions=list(automatic),
        )


class URLInfoExtractor:
    """
    Runs metadata probes against a URL with yt-dlp.

    A probe is a short-lived, fully buffered invocation, unlike download jobs
    whose output is streamed.
    """
    PROBE_TIMEOUT = 90
    MAX_ERROR_LENGTH = 200

    def __init__(self, yt_dlp_path: Path, cookies_path: Optional[str] = None):
        """
        Initializes the URLInfoExtractor.

        Args:
            yt_dlp_path: The path to the yt-dlp executable.
            cookies_path: Optional Netscape cookies.txt passed to every probe.
        """
        self.yt_dlp_path = yt_dlp_path
        self.cookies_path = cookies_path
        self.logger = logging.getLogger(__name__)

    def summarize_error(self, stderr: str) -> str:
        """The first `ERROR:` message of a failed probe, else its last stderr line."""
        lines = [line.strip() for line in (stderr or '').splitlines() if line.strip()]
        if not lines:
            return "yt-dlp returned an error with no output."
        message = next((line[6:].strip() for line in lines if line[:6].upper() == 'ERROR:'), lines[-1])
        if len(message) > self.MAX_ERROR_LENGTH:
            message = message[:self.MAX_ERROR_LENGTH] + "..."
        return message

    async def _run_command(self, command: List[str], timeout: float) -> str:
        """
        Runs a probe to completion and returns its stdout.

        Raises:
            URLExtractionError: If the tool cannot start, times out or exits non-zero.
        """
        try:
            process = await spawn(command)
        except SubprocessLaunchError as e:
            self.logger.error(f"Could not start yt-dlp at {self.yt_dlp_path}: {e}")
            raise URLExtractionError(str(e)) from e

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            kill(process)
            self.logger.error(f"Probe timed out after {timeout}s: {command[-1]}")
            raise URLExtractionError("URL processing command timed out.")
        except asyncio.CancelledError:
            kill(process)
            raise

        stderr = stderr_bytes.decode('utf-8', 'replace')
        if process.returncode != 0:
            self.logger.error(f"Probe of '{command[-1]}' exited with {process.returncode}: {stderr.strip()}")
            raise URLExtractionError(self.summarize_error(stderr))
        return stdout_bytes.decode('utf-8', 'replace')

    def _base_command(self) -> List[str]:
        command = [str(self.yt_dlp_path)]
        if self.cookies_path:
            command.extend(['--cookies', self.cookies_path])
        return command

    async def probe(self, url: str) -> MediaInfo:
        """
        Dumps the single-video info JSON for a URL.

        Raises:
            URLExtractionError: If the command fails or prints no usable JSON.
        """
        command = self._base_command() + ['--no-playlist', '--no-warnings', '-J', url]
        stdout = await self._run_command(command, timeout=self.PROBE_TIMEOUT)
        try:
            info = json.loads(stdout)
        except json.JSONDecodeError as e:
            self.logger.error(f"Could not parse probe output for {url}: {e}")
            raise URLExtractionError("yt-dlp returned unreadable metadata.")
        return MediaInfo.from_info_dict(info)

    async def get_metadata(self, url: str) -> Tuple[str, str]:
        """
        Returns (id, title) for a URL, or empty strings when the probe fails.

        Metadata only improves naming, so a failed probe is logged, not raised.
        """
        try:
            info = await self.probe(url)
        except URLExtractionError as e:
            self.logger.warning(f"Metadata probe failed for {url}: {e}")
            return '', ''
        return info.id, info.title
