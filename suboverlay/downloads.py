"""Runs yt-dlp download jobs and turns their output into events and cache entries."""
import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Set

import aiofiles.os

from .cache import CacheService
from .config import ConfigStore
from .constants import DEFAULT_MERGE_FORMAT, META_PREFIX, OUTPUT_TEMPLATE, TEMP_FILE_SUFFIXES
from .dependencies import DependencyManager
from .exceptions import (
    ConfigurationError, MissingUrlError, NoSubtitlesAvailableError, OutputNotLocatedError, SubOverlayError,
    SubprocessExitError, ToolNotConfiguredError, URLExtractionError, UserCancelledError
)
from .jobs import (
    JOB_MODES, DoneEvent, DownloadJob, DownloadOptions, ErrorEvent, JobEvent, JobRegistry, LogEvent, ProgressEvent
)
from .output_parser import OutputParser
from .streams import interrupt, kill, pump_output, spawn
from .subtitles import SubtitleFetcher, SubtitlePlan
from .url_extractor import MediaInfo, URLInfoExtractor

EventCallback = Callable[[JobEvent], Awaitable[None]]

# Tolerance for coarse filesystem timestamps when scanning for a job's output.
MTIME_SLACK_SECONDS = 2.0


class DownloadManager:
    """
    Starts, tracks and cancels yt-dlp download jobs.

    `start` returns as soon as the job is submitted; everything else arrives
    through `event_callback` as progress/log events followed by exactly one
    terminal `done` or `error` event. Events are only delivered while the job
    is in the registry, so nothing is reported for a job after it is cancelled.
    """
    # Seconds an interrupted process gets to exit before it is killed.
    KILL_TIMEOUT = 10

    def __init__(self, event_callback: EventCallback, registry: JobRegistry, cache: CacheService,
                 config_store: ConfigStore, dep_manager: DependencyManager,
                 subtitle_fetcher: Optional[SubtitleFetcher] = None,
                 extractor_factory: Callable[..., URLInfoExtractor] = URLInfoExtractor):
        """
        Initializes the DownloadManager.

        Args:
            event_callback: The async function to call with job events.
            registry: Active-job registry shared with whoever cancels jobs.
            cache: Where finished files are registered.
            config_store: Source of cookies path and default formats.
            dep_manager: Resolves the yt-dlp and ffmpeg executables.
            subtitle_fetcher: Enables companion subtitle downloads.
            extractor_factory: Builds the metadata prober (yt-dlp path, cookies path).
        """
        self.event_callback = event_callback
        self.registry = registry
        self.cache = cache
        self.config_store = config_store
        self.dep_manager = dep_manager
        self.subtitle_fetcher = subtitle_fetcher
        self.extractor_factory = extractor_factory
        self.logger = logging.getLogger(__name__)
        self.job_tasks: Set[asyncio.Task] = set()

    def default_options(self) -> DownloadOptions:
        return DownloadOptions(
            merge_format=self.config_store.get('merge_format') or DEFAULT_MERGE_FORMAT,
            audio_format=self.config_store.get('audio_format'),
        )

    async def start(self, url: str, mode: str = 'video', options: Optional[DownloadOptions] = None) -> str:
        """
        Submits a download job.

        Returns:
            The new job id.

        Raises:
            MissingUrlError: If `url` is empty.
            ToolNotConfiguredError: If no yt-dlp executable can be resolved.
            ConfigurationError: If `mode` is unknown.
        """
        url = (url or '').strip()
        if not url:
            raise MissingUrlError("A URL is required.")
        if mode not in JOB_MODES:
            raise ConfigurationError(f"Unknown download mode '{mode}'.")
        yt_dlp_path = self.dep_manager.resolve_yt_dlp()
        if not yt_dlp_path:
            raise ToolNotConfiguredError("yt-dlp is not configured.")

        job = DownloadJob(self.registry.new_job_id(), url, mode, options or self.default_options())
        self.registry.add(job)
        self.logger.info(f"Starting {mode} job {job.job_id} for {url}")

        task = asyncio.create_task(self._run_job(job, yt_dlp_path), name=f"download-{job.job_id}")
        self.job_tasks.add(task)
        task.add_done_callback(self._task_done_callback(self.job_tasks))
        return job.job_id

    def cancel(self, job_id: str) -> bool:
        """
        Interrupts a job and forgets it immediately.

        Returns without waiting for the process; whatever it prints or returns
        afterwards is dropped, and it is killed if it outlives KILL_TIMEOUT.
        Returns False if no such job is active.
        """
        job = self.registry.remove(job_id)
        if job is None:
            return False
        self.logger.info(f"Cancelling job {job_id}")
        if job.process is not None:
            self._interrupt(job_id, job.process)
        return True

    def _interrupt(self, job_id: str, process: asyncio.subprocess.Process):
        if interrupt(process):
            task = asyncio.create_task(self._reap(job_id, process), name=f"reap-{job_id}")
            self.job_tasks.add(task)
            task.add_done_callback(self._task_done_callback(self.job_tasks))

    async def _reap(self, job_id: str, process: asyncio.subprocess.Process):
        """Waits for an interrupted process and kills it if it ignores the interrupt."""
        try:
            await asyncio.wait_for(process.wait(), timeout=self.KILL_TIMEOUT)
        except asyncio.TimeoutError:
            self.logger.warning(f"Job {job_id} ignored the interrupt; forcing termination.")
            kill(process)

    async def stop_all(self):
        """Cancels every active job and waits for their tasks to wind down."""
        for job_id in self.registry.active_ids():
            self.cancel(job_id)
        await self.join()

    async def join(self):
        """Waits until every submitted job task has finished."""
        while self.job_tasks:
            await asyncio.gather(*list(self.job_tasks), return_exceptions=True)

    def _task_done_callback(self, task_set: set) -> Callable:
        """Creates a callback to remove a task from a set and log exceptions."""
        def callback(task: asyncio.Task):
            task_set.discard(task)
            try:
                task.result()
            except asyncio.CancelledError:
                pass # Normal cancellation
            except Exception:
                self.logger.exception(f"Exception in background task {task.get_name()}:")
        return callback

    async def _emit(self, event: JobEvent):
        """Delivers an event unless its job has been cancelled or has finished."""
        if event.job_id not in self.registry:
            self.logger.debug(f"Dropping {event.type} event for inactive job {event.job_id}")
            return
        try:
            await self.event_callback(event)
        except Exception:
            self.logger.exception(f"Event consumer failed on {event.type} for job {event.job_id}")

    def build_command(self, job: DownloadJob, yt_dlp_path: Path) -> List[str]:
        """Builds the full yt-dlp command list for a job."""
        options = job.options
        command = [str(yt_dlp_path)]

        cookies_path = self.config_store.get('cookies_path')
        if cookies_path:
            command.extend(['--cookies', cookies_path])

        if job.mode == 'audio':
            command.extend(['-f', 'bestaudio[ext!=webm]/bestaudio/best', '--extract-audio', '--audio-quality', '0'])
            audio_format = (options.audio_format or '').strip()
            if audio_format:
                command.extend(['--audio-format', audio_format])
        else:
            merge_format = (options.merge_format or '').strip() or DEFAULT_MERGE_FORMAT
            command.extend([
                '-f', 'bestvideo[ext!=webm]+bestaudio[ext!=webm]/bestvideo+bestaudio/best',
                '--merge-output-format', merge_format,
            ])

        command.extend([
            '--no-playlist',
            '--progress',
            '--newline',
            '--no-color',
            '--encoding', 'utf-8',
            '--embed-metadata',
            '--embed-thumbnail',
            '--no-mtime',
            # --print implies --quiet and --simulate; undo both.
            '--no-quiet',
            '--no-simulate',
            '--print', f'before_dl:{META_PREFIX}id=%(id)s',
            '--print', f'before_dl:{META_PREFIX}title=%(title)s',
            '--print', 'after_move:filepath',
        ])

        ffmpeg_path = self.dep_manager.resolve_ffmpeg()
        if ffmpeg_path:
            command.extend(['--ffmpeg-location', str(ffmpeg_path)])

        command.extend(['--output', str(self.cache.video_dir / OUTPUT_TEMPLATE), '--', job.url])
        return command

    async def _run_job(self, job: DownloadJob, yt_dlp_path: Path):
        """Executes the yt-dlp subprocess for a single job and reports its outcome."""
        parser = OutputParser(job.mode, self.cache.video_dir)
        try:
            await aiofiles.os.makedirs(self.cache.video_dir, exist_ok=True)

            subtitle_plan = None
            if job.options.with_subtitles or job.options.probe_metadata:
                subtitle_plan = await self._preflight(job, parser, yt_dlp_path)
            if job.job_id not in self.registry:
                return

            process = await spawn(self.build_command(job, yt_dlp_path))
            job.process = process
            if job.job_id not in self.registry:
                self._interrupt(job.job_id, process)

            async def on_line(stream: str, line: str):
                if not line.strip():
                    return
                self.logger.debug(f"[{job.job_id}] {line}")
                progress = parser.feed(line)
                if progress:
                    await self._emit(ProgressEvent(job.job_id, percent=progress.percent,
                                                   speed=progress.speed, eta=progress.eta))
                await self._emit(LogEvent(job.job_id, stream=stream, line=line))

            await pump_output(process, on_line)
            return_code = await process.wait()
            if job.job_id not in self.registry:
                self.logger.info(f"Job {job.job_id} was cancelled; discarding its output (exit {return_code}).")
                return

            if return_code != 0:
                message = f"yt-dlp exited with code {return_code}"
                if parser.last_error:
                    message = f"{message}: {parser.last_error[:200]}"
                raise SubprocessExitError(message, exit_code=return_code)

            await self._complete(job, parser, subtitle_plan)
        except SubOverlayError as e:
            if job.job_id in self.registry:
                self.logger.error(f"Job {job.job_id} failed: {e}")
            await self._emit(ErrorEvent(job.job_id, message=str(e)))
        except asyncio.CancelledError:
            if job.process is not None:
                interrupt(job.process)
            raise
        except Exception:
            self.logger.exception(f"Unexpected error during download for job {job.job_id}")
            await self._emit(ErrorEvent(job.job_id, message="An unexpected error occurred."))
        finally:
            self.registry.remove(job.job_id)

    async def _preflight(self, job: DownloadJob, parser: OutputParser, yt_dlp_path: Path) -> Optional[SubtitlePlan]:
        """
        Probes metadata before downloading and, if requested, picks a subtitle track.

        Neither step can fail the job: metadata only improves naming and the
        subtitle download is optional.
        """
        extractor = self.extractor_factory(yt_dlp_path, self.config_store.get('cookies_path') or None)
        info: Optional[MediaInfo] = None
        try:
            info = await extractor.probe(job.url)
            parser.set_metadata(info.id, info.title)
        except URLExtractionError as e:
            self.logger.warning(f"Metadata probe failed for job {job.job_id}: {e}")

        if not job.options.with_subtitles or self.subtitle_fetcher is None:
            return None
        if info is None and not job.options.subtitle_langs:
            return None
        try:
            return await self.subtitle_fetcher.plan(job.url, job.options.subtitle_langs, info=info)
        except (NoSubtitlesAvailableError, UserCancelledError, URLExtractionError) as e:
            self.logger.warning(f"Skipping subtitles for job {job.job_id}: {e}")
            return None

    async def _complete(self, job: DownloadJob, parser: OutputParser, subtitle_plan: Optional[SubtitlePlan]):
        """Registers the finished file (and optional subtitles) and emits `done`."""
        output_path = await self._resolve_output(job, parser)
        if output_path is None:
            raise OutputNotLocatedError(
                "Download completed but the output file could not be located "
                "(the installed yt-dlp may print an unexpected format)."
            )

        if job.job_id not in self.registry:
            self.logger.info(f"Job {job.job_id} was cancelled before its output was registered.")
            return

        filename = output_path.name
        entry = await self.cache.register_video_download(
            id=parser.video_id or Path(filename).stem,
            title=parser.title or None,
            source_path=output_path,
        )

        if subtitle_plan is not None and self.subtitle_fetcher is not None and entry is not None:
            entry = await self._fetch_companion_subtitles(job, parser, subtitle_plan, entry.id) or entry

        await self._emit(DoneEvent(
            job.job_id,
            filename=entry.video_filename if entry and entry.video_filename else filename,
            entry=entry.to_dict() if entry else None,
            mode=job.mode,
        ))

    async def _fetch_companion_subtitles(self, job: DownloadJob, parser: OutputParser,
                                         plan: SubtitlePlan, entry_id: str):
        """Downloads subtitles into the job's entry; failures are only logged."""
        def track_process(process: asyncio.subprocess.Process):
            job.process = process

        try:
            result = await self.subtitle_fetcher.download(
                job.url, plan,
                job_id=job.job_id,
                meta=MediaInfo(id=parser.video_id, title=parser.title),
                entry_id=entry_id,
                emit=self._emit,
                on_spawn=track_process,
            )
        except SubOverlayError as e:
            self.logger.warning(f"Subtitle download for job {job.job_id} failed: {e}")
            await self._emit(LogEvent(job.job_id, stream='stderr', line=f"Subtitle download failed: {e}"))
            return None
        return result.entries[-1] if result.entries else None

    async def _resolve_output(self, job: DownloadJob, parser: OutputParser) -> Optional[Path]:
        """
        The file the job produced.

        Uses the path recovered from the output when it is an existing file
        directly inside the video cache, else the newest finished file written
        to the cache since the job started.
        """
        if parser.output_path:
            candidate = Path(parser.output_path)
            if not candidate.is_absolute():
                candidate = self.cache.video_dir / candidate
            if candidate.resolve().parent != self.cache.video_dir.resolve():
                self.logger.warning(f"Job {job.job_id} reported '{parser.output_path}' outside the video cache; scanning cache.")
            elif await aiofiles.os.path.isfile(candidate):
                return candidate
            else:
                self.logger.warning(f"Job {job.job_id} reported '{parser.output_path}' but it does not exist; scanning cache.")
        else:
            self.logger.warning(f"Job {job.job_id} printed no output path; scanning cache.")

        return await asyncio.to_thread(self._newest_output, job.started_at - MTIME_SLACK_SECONDS)

    def _newest_output(self, since: float) -> Optional[Path]:
        newest: Optional[Path] = None
        newest_mtime = since
        for path in self.cache.video_dir.iterdir():
            if path.suffix.lower() in TEMP_FILE_SUFFIXES or not path.is_file():
                continue
            mtime = path.stat().st_mtime
            if mtime >= newest_mtime:
                newest, newest_mtime = path, mtime
        return newest
