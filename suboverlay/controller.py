"""
Defines the main AppController class, which wires the services together and
exposes the operations a front end (window shell, CLI) calls.
"""
import base64
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiofiles

from .cache import CacheService
from .config import ConfigStore
from .constants import SUBS_CACHE_DIR, VIDEO_CACHE_DIR
from .dependencies import DependencyManager
from .downloads import DownloadManager
from .entries import CacheEntry, EntryStore
from .exceptions import ConfigurationError, SubprocessExitError, ToolNotConfiguredError
from .ingest import CacheIngestor
from .jobs import DoneEvent, ErrorEvent, JobEvent, JobRegistry
from .overlay_server import OverlayServer
from .streams import spawn
from .subtitles import SubtitleFetcher, SubtitleFetchResult, SubtitleSelector

JobListener = Callable[[JobEvent], Awaitable[None]]


class AppController:
    """The central controller for the application's business logic."""

    def __init__(self, config_store: ConfigStore, video_dir: Path = VIDEO_CACHE_DIR,
                 subs_dir: Path = SUBS_CACHE_DIR, selector: Optional[SubtitleSelector] = None,
                 search_system: bool = True):
        """
        Initializes the AppController.

        Args:
            config_store: The persisted configuration.
            video_dir: Cache directory for video and audio files.
            subs_dir: Cache directory for subtitle files.
            selector: Chooses subtitle languages; non-interactive by default.
            search_system: Let tool discovery look beside the app and on PATH.
        """
        self.config_store = config_store
        self.logger = logging.getLogger(__name__)
        self.listeners: List[JobListener] = []

        # Backend services
        self.registry = JobRegistry()
        self.dep_manager = DependencyManager(config_store, search_system=search_system)
        self.entry_store = EntryStore(config_store, Path(video_dir), Path(subs_dir))
        self.cache = CacheService(CacheIngestor(), self.entry_store)
        self.subtitle_fetcher = SubtitleFetcher(
            self.cache, config_store, self.dep_manager, self.registry,
            event_callback=self._on_job_event, selector=selector)
        self.download_manager = DownloadManager(
            self._on_job_event, self.registry, self.cache, config_store, self.dep_manager,
            subtitle_fetcher=self.subtitle_fetcher)
        self.overlay = OverlayServer(config_store, video_dir=Path(video_dir))

    def add_listener(self, listener: JobListener) -> Callable[[], None]:
        """Registers an async consumer of job events. Returns a function that removes it."""
        self.listeners.append(listener)

        def remove():
            if listener in self.listeners:
                self.listeners.remove(listener)
        return remove

    async def run_startup_checks(self):
        """Resolves tool paths and reports their versions."""
        await self.dep_manager.initialize()
        yt_dlp_path = self.dep_manager.resolve_yt_dlp()
        if not yt_dlp_path:
            self.logger.warning("yt-dlp was not found. Set bins.yt_dlp_path in the configuration.")
            return
        version = await self.dep_manager.get_version(yt_dlp_path)
        self.logger.info(f"yt-dlp version: {version}")

    async def _on_job_event(self, event: JobEvent):
        """Logs job milestones and fans each event out to the listeners."""
        handler_map = {
            DoneEvent.type: self._handle_done,
            ErrorEvent.type: self._handle_error,
        }
        handler = handler_map.get(event.type)
        if handler:
            handler(event)

        for listener in list(self.listeners):
            try:
                await listener(event)
            except Exception:
                self.logger.exception(f"Job listener failed on {event.type} for job {event.job_id}")

    def _handle_done(self, event: DoneEvent):
        self.logger.info(f"Job {event.job_id} finished: {event.filename}")

    def _handle_error(self, event: ErrorEvent):
        self.logger.error(f"Job {event.job_id} failed: {event.message}")

    async def download_video(self, url: str, merge_format: Optional[str] = None,
                             with_subtitles: bool = False, subtitle_langs: Optional[str] = None) -> str:
        """Starts a video download; returns the job id."""
        options = self.download_manager.default_options()
        if merge_format:
            options.merge_format = merge_format
        options.with_subtitles = with_subtitles
        options.subtitle_langs = subtitle_langs
        return await self.download_manager.start(url, 'video', options)

    async def download_audio(self, url: str, audio_format: Optional[str] = None) -> str:
        """Starts an audio-only download; returns the job id."""
        options = self.download_manager.default_options()
        if audio_format is not None:
            options.audio_format = audio_format
        return await self.download_manager.start(url, 'audio', options)

    def cancel(self, job_id: str) -> bool:
        return self.download_manager.cancel(job_id)

    async def fetch_subtitles(self, url: str, langs: Optional[str] = None) -> SubtitleFetchResult:
        return await self.subtitle_fetcher.fetch_subtitles(url, langs)

    async def list_cache(self) -> List[Dict[str, Any]]:
        """The visible cache entries, oldest first, in their wire shape."""
        return [entry.to_dict() for entry in await self.cache.list_entries()]

    async def import_local(self, **payload: Any) -> CacheEntry:
        """Imports local files; see `CacheService.import_local` for the accepted keys."""
        return await self.cache.import_local(**payload)

    async def update_overlay(self, patch: Dict[str, Any]):
        await self.overlay.update_state(patch)

    async def read_text(self, file_path: str) -> str:
        """Reads a UTF-8 text file (subtitles) for the renderer."""
        if not file_path:
            raise ConfigurationError("A file path is required.")
        async with aiofiles.open(file_path, 'r', encoding='utf-8', errors='replace') as f:
            return await f.read()

    async def read_binary_base64(self, file_path: str) -> str:
        """Reads a binary file (fonts) and returns it base64-encoded."""
        if not file_path:
            raise ConfigurationError("A file path is required.")
        async with aiofiles.open(file_path, 'rb') as f:
            data = await f.read()
        return base64.b64encode(data).decode('ascii')

    async def convert_to_ass(self, input_path: str) -> Dict[str, str]:
        """
        Converts a subtitle file to ASS next to the original with ffmpeg.

        Returns:
            A dict with the tool's `out` and `err` text and the `outPath`.

        Raises:
            ToolNotConfiguredError: If no ffmpeg is available.
            SubprocessExitError: If ffmpeg fails.
        """
        ffmpeg_path = self.dep_manager.resolve_ffmpeg()
        if not ffmpeg_path:
            raise ToolNotConfiguredError("ffmpeg is not configured.")
        out_path = str(Path(input_path).with_suffix('.ass'))

        process = await spawn([str(ffmpeg_path), '-y', '-i', input_path, out_path])
        stdout_bytes, stderr_bytes = await process.communicate()
        out = stdout_bytes.decode('utf-8', 'replace')
        err = stderr_bytes.decode('utf-8', 'replace')
        if process.returncode != 0:
            self.logger.error(f"ffmpeg failed to convert '{input_path}' (exit {process.returncode})")
            raise SubprocessExitError(err.strip() or f"ffmpeg exited with code {process.returncode}",
                                      exit_code=process.returncode, output=out + err)
        self.logger.info(f"Converted '{input_path}' to '{out_path}'")
        return {'out': out, 'err': err, 'outPath': out_path}

    async def shutdown(self):
        """Stops every job and the overlay server."""
        self.logger.info("Application closing.")
        await self.download_manager.stop_all()
        await self.overlay.close()
