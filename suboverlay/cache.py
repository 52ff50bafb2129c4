"""
Registers downloaded or imported files as cache entries.

Ties the ingestor (where files live) to the entry store (what they mean):
video/audio files land in the video cache, subtitles in the subtitle cache,
and both are paired by entry id.
"""

import re
import logging
from pathlib import Path
from typing import Any, List, Optional, Union

from .constants import AUDIO_EXTS
from .entries import CacheEntry, EntryStore, generate_entry_id
from .exceptions import ImportFailedError, MissingImportError, SubOverlayError
from .ingest import CacheIngestor, IncomingFile, IngestResult

KIND_SUFFIX_RE = re.compile(r'#(?:audio|video)$')


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ''


class CacheService:
    """Entry-level operations over the video and subtitle caches."""
    def __init__(self, ingestor: CacheIngestor, entry_store: EntryStore):
        self.ingestor = ingestor
        self.entry_store = entry_store
        self.logger = logging.getLogger(__name__)

    @property
    def video_dir(self) -> Path:
        return self.entry_store.video_dir

    @property
    def subs_dir(self) -> Path:
        return self.entry_store.subs_dir

    async def list_entries(self) -> List[CacheEntry]:
        return await self.entry_store.list()

    async def register_video_download(self, id: Optional[str] = None, title: Optional[str] = None,
                                      filename: Optional[str] = None,
                                      source_path: Optional[Union[str, Path]] = None,
                                      keep_source: bool = False) -> Optional[CacheEntry]:
        """
        Ingests a video or audio file and upserts its entry.

        The entry id gets an `#audio` or `#video` suffix from the final file's
        extension, so an audio-only and a video download of the same source id
        stay separate entries. The file name itself uses the bare id.

        Args:
            id: Logical id (e.g. the tool's video id). Defaults to the file stem.
            title: Entry title.
            filename: A file already inside the video cache.
            source_path: A file anywhere on disk; takes precedence over `filename`.
                Only files already in the video cache are moved, others are copied.
            keep_source: Copy instead of move when ingesting `source_path`.

        Returns:
            The upserted entry, or None if neither a file nor a path was given.
        """
        if source_path:
            resolved = Path(source_path).resolve()
            result = await self.ingestor.ingest(
                resolved,
                directory=self.video_dir,
                title=title,
                id=id,
                fallback_prefix='video',
                move=not keep_source and resolved.parent == self.video_dir.resolve(),
            )
        elif filename:
            result = await self.ingestor.ingest(
                self.video_dir / filename,
                directory=self.video_dir,
                title=title,
                id=id,
                fallback_prefix='video',
                move=True,
            )
        else:
            return None

        final_name = result.filename
        kind = 'audio' if Path(final_name).suffix.lower() in AUDIO_EXTS else 'video'
        base_id = KIND_SUFFIX_RE.sub('', str(id or Path(final_name).stem))
        patch = {
            'id': f"{base_id}#{kind}",
            'title': title or '',
            'video_filename': final_name,
        }
        return await self.entry_store.upsert(patch)

    async def register_subtitle_download(self, id: Optional[str] = None, title: Optional[str] = None,
                                         filename: Optional[str] = None,
                                         source_path: Optional[Union[str, Path]] = None,
                                         keep_source: bool = False) -> Optional[CacheEntry]:
        """
        Ingests a subtitle file and upserts its entry.

        Files the fetch tool already wrote into the subtitle cache are adopted
        under their own name; files from elsewhere are copied in.
        """
        if source_path:
            resolved = Path(source_path).resolve()
            move = not keep_source and resolved.parent == self.subs_dir.resolve()
            result = await self.ingestor.ingest(
                resolved,
                directory=self.subs_dir,
                title=title,
                id=id,
                fallback_prefix='subtitle',
                default_ext='.ass',
                move=move,
                preserve_basename=keep_source,
            )
        elif filename:
            result = await self.ingestor.ingest(
                self.subs_dir / filename,
                directory=self.subs_dir,
                title=title,
                id=id,
                fallback_prefix='subtitle',
                default_ext='.ass',
                move=True,
            )
        else:
            return None

        patch = {'subs_filename': result.filename}
        if id:
            patch['id'] = id
        if title:
            patch['title'] = title
        return await self.entry_store.upsert(patch)

    async def import_local(self, *, id: Optional[str] = None, title: Optional[str] = None,
                           video_path: Optional[str] = None, video_title: Optional[str] = None,
                           subs_path: Optional[str] = None, subs_title: Optional[str] = None,
                           video_file: Any = None, subs_file: Any = None) -> CacheEntry:
        """
        Imports a local video and/or subtitle, given as paths or as raw bytes.

        Path imports are copied (the user's file stays put); byte imports keep
        their sent name when it is free. Without an explicit id, a video and a
        subtitle imported together are registered as independent entries.

        Raises:
            MissingImportError: If no file was given at all.
            ImportFailedError: If ingesting the video or subtitle failed.
        """
        video_path_str = video_path if isinstance(video_path, str) else ''
        subs_path_str = subs_path if isinstance(subs_path, str) else ''
        incoming_video = IncomingFile.from_payload(video_file) if video_file and not video_path_str else None
        incoming_subs = IncomingFile.from_payload(subs_file) if subs_file and not subs_path_str else None
        if not video_path_str and not subs_path_str and not incoming_video and not incoming_subs:
            raise MissingImportError("No file to import.")

        existing_raw = self.entry_store.get_raw(id) if id else None
        entry_id = id or generate_entry_id('local')
        effective_title = _clean((existing_raw or {}).get('title')) or _clean(title)
        entry: Optional[CacheEntry] = None

        video_upload: Optional[IngestResult] = None
        video_upload_base = ''
        if incoming_video:
            try:
                video_upload, video_upload_base = await self.ingestor.persist_incoming_file(
                    incoming_video, directory=self.video_dir, title=effective_title or None,
                    id=entry_id, fallback_prefix='video')
            except SubOverlayError as e:
                raise ImportFailedError(f"Failed to import media: {e}") from e
            video_path_str = str(video_upload.file_path)

        subs_upload: Optional[IngestResult] = None
        subs_upload_base = ''
        if incoming_subs:
            try:
                subs_upload, subs_upload_base = await self.ingestor.persist_incoming_file(
                    incoming_subs, directory=self.subs_dir, title=effective_title or None,
                    id=entry_id, fallback_prefix='subtitle', default_ext='.ass')
            except SubOverlayError as e:
                raise ImportFailedError(f"Failed to import subtitles: {e}") from e
            subs_path_str = str(subs_upload.file_path)

        video_base_title = _clean(video_title) or video_upload_base or (Path(video_path_str).stem if video_path_str else '')
        subs_base_title = _clean(subs_title) or subs_upload_base or (Path(subs_path_str).stem if subs_path_str else '')
        if not effective_title:
            effective_title = video_base_title or subs_base_title

        has_video_import = bool(video_path_str)
        has_subs_import = bool(subs_path_str)
        decouple_subs = not id and has_video_import and has_subs_import

        if has_video_import:
            title_for_video = effective_title or video_base_title or subs_base_title
            try:
                if video_upload:
                    entry = await self.register_video_download(
                        id=entry_id, title=title_for_video or None, filename=video_upload.filename)
                else:
                    entry = await self.register_video_download(
                        id=entry_id, title=title_for_video or None, source_path=video_path_str, keep_source=True)
            except SubOverlayError as e:
                self.logger.error(f"Media import failed for '{video_path_str}': {e}")
                raise ImportFailedError(f"Failed to import media: {e}") from e
            if entry and entry.id:
                entry_id = entry.id
            if entry and entry.title:
                effective_title = entry.title

        if has_subs_import:
            title_for_subs = effective_title or subs_base_title or video_base_title
            subs_entry_id = generate_entry_id('local_sub') if decouple_subs else entry_id
            try:
                if subs_upload:
                    entry = await self.register_subtitle_download(
                        id=subs_entry_id, title=title_for_subs or None, filename=subs_upload.filename)
                else:
                    entry = await self.register_subtitle_download(
                        id=subs_entry_id, title=title_for_subs or None, source_path=subs_path_str, keep_source=True)
            except SubOverlayError as e:
                self.logger.error(f"Subtitle import failed for '{subs_path_str}': {e}")
                raise ImportFailedError(f"Failed to import subtitles: {e}") from e
            if not decouple_subs and entry and entry.id:
                entry_id = entry.id
            if entry and entry.title:
                effective_title = entry.title

        if entry is None and existing_raw:
            entry = await self.entry_store.build_entry(existing_raw)

        if entry is None:
            patch = {'id': entry_id}
            if effective_title:
                patch['title'] = effective_title
            entry = await self.entry_store.upsert(patch)
        elif effective_title and entry.title != effective_title:
            entry = await self.entry_store.upsert({'id': entry.id, 'title': effective_title})

        return entry
