"""
Fetches subtitle tracks with yt-dlp and registers them in the subtitle cache.

Language selection is delegated to a `SubtitleSelector` so a UI can prompt
the user; auto-generated captions are only used after explicit confirmation.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Protocol, Set

import aiofiles.os

from .cache import CacheService
from .config import ConfigStore
from .constants import DEFAULT_SUBTITLE_FORMAT, MAX_SUBTITLE_CANDIDATES, OUTPUT_TEMPLATE, SUBTITLE_EXTS
from .dependencies import DependencyManager
from .entries import CacheEntry
from .exceptions import (
    MissingUrlError, NoSubtitlesAvailableError, SubprocessExitError, ToolNotConfiguredError, UserCancelledError
)
from .jobs import JobEvent, JobRegistry, LogEvent
from .streams import pump_output, spawn
from .url_extractor import MediaInfo, URLInfoExtractor

EventCallback = Callable[[JobEvent], Awaitable[None]]


def language_rank(lang: str) -> int:
    """Preference bucket for a language code; lower sorts first."""
    if lang.startswith(('zh-Hant', 'zh-TW')):
        return 0
    if lang.startswith(('zh-Hans', 'zh-CN')):
        return 1
    if lang == 'zh' or lang.startswith('zh-'):
        return 2
    if lang == 'en' or lang.startswith('en-'):
        return 3
    if lang == 'ja' or lang.startswith('ja-'):
        return 4
    return 9


def sort_languages(langs: List[str], limit: int = MAX_SUBTITLE_CANDIDATES) -> List[str]:
    """Dedupes, orders by preference then alphabetically, and caps the list."""
    return sorted(set(langs), key=lambda lang: (language_rank(lang), lang))[:limit]


@dataclass
class SubtitlePlan:
    """Which track to fetch: a language code and whether it is an auto caption."""
    langs: str
    use_auto: bool = False


@dataclass
class SubtitleFetchResult:
    files: List[str] = field(default_factory=list)
    entries: List[CacheEntry] = field(default_factory=list)
    meta: MediaInfo = field(default_factory=MediaInfo)
    log: str = ''


class SubtitleSelector(Protocol):
    async def confirm_auto_captions(self, candidates: List[str]) -> bool:
        """Asks whether auto-generated captions are acceptable (no manual tracks exist)."""
        ...

    async def choose_language(self, candidates: List[str], use_auto: bool) -> Optional[str]:
        """Picks one language from `candidates`; None aborts."""
        ...


class DefaultSubtitleSelector:
    """Non-interactive selector: never accepts auto captions, takes the preferred language."""
    async def confirm_auto_captions(self, candidates: List[str]) -> bool:
        return False

    async def choose_language(self, candidates: List[str], use_auto: bool) -> Optional[str]:
        return candidates[0] if candidates else None


class SubtitleFetcher:
    """Runs subtitle-only fetches and registers the resulting files."""
    def __init__(self, cache: CacheService, config_store: ConfigStore, dep_manager: DependencyManager,
                 registry: JobRegistry, event_callback: Optional[EventCallback] = None,
                 selector: Optional[SubtitleSelector] = None,
                 extractor_factory: Callable[..., URLInfoExtractor] = URLInfoExtractor):
        self.cache = cache
        self.config_store = config_store
        self.dep_manager = dep_manager
        self.registry = registry
        self.event_callback = event_callback
        self.selector = selector or DefaultSubtitleSelector()
        self.extractor_factory = extractor_factory
        self.logger = logging.getLogger(__name__)

    def _require_tool(self) -> Path:
        yt_dlp_path = self.dep_manager.resolve_yt_dlp()
        if not yt_dlp_path:
            raise ToolNotConfiguredError("yt-dlp is not configured.")
        return yt_dlp_path

    def make_extractor(self) -> URLInfoExtractor:
        return self.extractor_factory(self._require_tool(), self.config_store.get('cookies_path') or None)

    async def plan(self, url: str, langs: Optional[str] = None,
                   info: Optional[MediaInfo] = None) -> SubtitlePlan:
        """
        Decides which subtitle track to fetch.

        An explicit `langs` is used as-is. Otherwise the available tracks are
        probed (unless `info` is given) and the selector chooses among manual
        tracks, or among auto captions once it has confirmed they are acceptable.

        Raises:
            NoSubtitlesAvailableError: If there are no tracks of any kind.
            UserCancelledError: If auto captions are declined or no language is chosen.
            URLExtractionError: If the probe fails.
        """
        if langs:
            return SubtitlePlan(langs=langs, use_auto=False)

        if info is None:
            info = await self.make_extractor().probe(url)

        manual, auto = info.manual_subtitles, info.automatic_captions
        if not manual and not auto:
            raise NoSubtitlesAvailableError("This video has no subtitles (including automatic captions).")

        use_auto = False
        if manual:
            candidates = sort_languages(manual)
        else:
            candidates = sort_languages(auto)
            if not await self.selector.confirm_auto_captions(candidates):
                raise UserCancelledError("Only automatic captions are available and they were declined.")
            use_auto = True

        choice = await self.selector.choose_language(candidates, use_auto)
        if not choice:
            raise UserCancelledError("No subtitle language was chosen.")
        self.logger.info(f"Selected {'automatic' if use_auto else 'manual'} subtitles '{choice}' for {url}")
        return SubtitlePlan(langs=choice, use_auto=use_auto)

    def build_command(self, url: str, plan: SubtitlePlan, yt_dlp_path: Path) -> List[str]:
        """Builds the subtitle-only yt-dlp command."""
        subtitle_format = self.config_store.get('subtitle_format') or DEFAULT_SUBTITLE_FORMAT
        command = [str(yt_dlp_path)]
        cookies_path = self.config_store.get('cookies_path')
        if cookies_path:
            command.extend(['--cookies', cookies_path])
        command.extend([
            '--no-playlist',
            '--skip-download',
            '--write-auto-subs' if plan.use_auto else '--write-subs',
            '--progress',
            '--newline',
            '--no-color',
            '--encoding', 'utf-8',
            '--sub-langs', plan.langs,
            '--convert-subs', subtitle_format,
        ])
        ffmpeg_path = self.dep_manager.resolve_ffmpeg()
        if ffmpeg_path:
            command.extend(['--ffmpeg-location', str(ffmpeg_path)])
        command.extend(['--output', str(self.cache.subs_dir / OUTPUT_TEMPLATE), '--', url])
        return command

    async def fetch_subtitles(self, url: str, langs: Optional[str] = None) -> SubtitleFetchResult:
        """
        Selects a track (see `plan`), downloads it and registers the files.

        Raises:
            MissingUrlError: If `url` is empty.
            ToolNotConfiguredError: If yt-dlp cannot be resolved.
            NoSubtitlesAvailableError: If the media has no subtitle tracks.
            UserCancelledError: If the selection was declined.
            SubprocessExitError: If yt-dlp exits with a non-zero code.
        """
        url = (url or '').strip()
        if not url:
            raise MissingUrlError("A URL is required.")
        self._require_tool()

        info = None
        if not langs:
            info = await self.make_extractor().probe(url)
        plan = await self.plan(url, langs, info=info)
        return await self.download(url, plan, job_id=self.registry.new_job_id('subs'),
                                   meta=info, emit=self.event_callback)

    async def download(self, url: str, plan: SubtitlePlan, *, job_id: str,
                       meta: Optional[MediaInfo] = None, entry_id: Optional[str] = None,
                       emit: Optional[EventCallback] = None,
                       on_spawn: Optional[Callable[[asyncio.subprocess.Process], None]] = None) -> SubtitleFetchResult:
        """
        Runs the subtitle-only fetch for a chosen plan.

        Args:
            url: Media URL.
            plan: Language and manual/auto choice.
            job_id: Id attached to streamed log events.
            meta: Known id/title; probed after the run when missing.
            entry_id: Register files under this entry id (pairs them with a media entry).
            emit: Receives a LogEvent for every output line.
            on_spawn: Called with the process handle once it is running.
        """
        yt_dlp_path = self._require_tool()
        subs_dir = self.cache.subs_dir
        await aiofiles.os.makedirs(subs_dir, exist_ok=True)
        before = set(await aiofiles.os.listdir(subs_dir))

        command = self.build_command(url, plan, yt_dlp_path)
        self.logger.info(f"Fetching subtitles '{plan.langs}' for {url}")
        process = await spawn(command)
        if on_spawn:
            on_spawn(process)

        async def on_line(stream: str, line: str):
            self.logger.debug(f"[{job_id}] {line}")
            if emit and line.strip():
                await emit(LogEvent(job_id, stream=stream, line=line))

        collected: List[str] = []
        await pump_output(process, on_line, collected)
        return_code = await process.wait()
        output = '\n'.join(collected)
        if return_code != 0:
            self.logger.error(f"Subtitle fetch for {url} exited with code {return_code}")
            raise SubprocessExitError(output.strip() or f"yt-dlp exited with code {return_code}",
                                      exit_code=return_code, output=output)

        if meta is None or not meta.id:
            video_id, title = await self.make_extractor().get_metadata(url)
            meta = MediaInfo(id=video_id, title=title)

        subtitle_format = self.config_store.get('subtitle_format') or DEFAULT_SUBTITLE_FORMAT
        paths = await asyncio.to_thread(self._discover_files, before, meta.id, subtitle_format)
        if not paths:
            self.logger.warning(f"yt-dlp finished but no .{subtitle_format} file was found in {subs_dir}")

        entries: List[CacheEntry] = []
        for path in paths:
            entry = await self.cache.register_subtitle_download(
                id=entry_id or meta.id or path.stem,
                title=meta.title or None,
                source_path=path,
            )
            if entry:
                entries.append(entry)

        files = [e.subs_path for e in entries if e.subs_path] or [str(p) for p in paths]
        return SubtitleFetchResult(files=files, entries=entries, meta=meta, log=output)

    def _discover_files(self, before: Set[str], video_id: str, subtitle_format: str) -> List[Path]:
        """
        Finds the files the last run produced.

        New names (directory diff) are the most reliable signal, first in the
        requested format, then in any subtitle format (the tool keeps the
        original when conversion is skipped). An existing file the tool skipped
        is found by id; the newest file is the last resort.
        """
        suffix = f".{subtitle_format.lower()}"
        all_subs = [p for p in self.cache.subs_dir.iterdir()
                    if p.is_file() and (p.suffix.lower() in SUBTITLE_EXTS or p.suffix.lower() == suffix)]
        files = [p for p in all_subs if p.suffix.lower() == suffix]
        created = sorted(p for p in files if p.name not in before)
        if created:
            return created
        created_other = sorted(p for p in all_subs if p.name not in before)
        if created_other:
            self.logger.warning(f"No new .{subtitle_format} file; using {[p.name for p in created_other]}")
            return created_other
        if video_id:
            matching = sorted(p for p in files if video_id in p.name)
            if matching:
                return matching
        if files:
            return [max(files, key=lambda p: p.stat().st_mtime)]
        return []
