"""
Defines the logical cache entry and the store that persists entry records.

Raw records live in the configuration document under `downloads`. Everything
that depends on the filesystem (paths, existence, media kind) is derived when
an entry is read, so files deleted behind our back simply stop being listed.
"""

import random
import string
import time
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles.os
from pydantic.alias_generators import to_camel

from .config import ConfigStore
from .constants import AUDIO_EXTS

RECORD_FIELDS = ('id', 'title', 'video_filename', 'subs_filename', 'added_at', 'updated_at')


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_entry_id(prefix: str = 'entry') -> str:
    """Returns a fresh id such as `local_1718000000000_k3j9za`."""
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{prefix}_{now_ms()}_{suffix}"


def media_kind_for(filename: str) -> str:
    """Classifies a media filename as 'audio' or 'video' by extension."""
    return 'audio' if Path(filename).suffix.lower() in AUDIO_EXTS else 'video'


@dataclass
class CacheEntry:
    """
    A video/audio artifact and/or a subtitle artifact sharing one identity.

    Attributes:
        id: Stable logical key.
        title: Free text; may be empty.
        display_title: Title, else the filename stem, else the id.
        added_at: Creation time in epoch milliseconds.
        updated_at: Last upsert time in epoch milliseconds.
        video_filename: Basename inside the video cache, '' if absent.
        subs_filename: Basename inside the subtitle cache, '' if absent.
        video_path: Absolute path, '' unless the file currently exists.
        subs_path: Absolute path, '' unless the file currently exists.
        has_video: Whether the video/audio file exists.
        has_subs: Whether the subtitle file exists.
        media_kind: 'audio' or 'video'.
    """
    id: str
    title: str
    display_title: str
    added_at: int
    updated_at: int
    video_filename: str = ''
    subs_filename: str = ''
    video_path: str = ''
    subs_path: str = ''
    has_video: bool = False
    has_subs: bool = False
    media_kind: str = 'video'

    @property
    def is_visible(self) -> bool:
        return self.has_video or self.has_subs

    def to_dict(self) -> Dict[str, Any]:
        """The wire shape, with camelCase keys (`videoFilename`, `hasVideo`, ...)."""
        return {to_camel(name): value for name, value in asdict(self).items()}


class EntryStore:
    """
    Persisted, ordered collection of raw entry records.

    The whole collection is read, modified and written back on each upsert.
    Entry counts are small and there is a single writer (the event loop).
    """
    def __init__(self, config_store: ConfigStore, video_dir: Path, subs_dir: Path):
        self.config_store = config_store
        self.video_dir = Path(video_dir)
        self.subs_dir = Path(subs_dir)
        self.logger = logging.getLogger(__name__)

    def _read_records(self) -> List[Dict[str, Any]]:
        records = self.config_store.get('downloads')
        return [r for r in records if isinstance(r, dict)] if isinstance(records, list) else []

    def _write_records(self, records: List[Dict[str, Any]]):
        self.config_store.set('downloads', records)

    def get_raw(self, entry_id: str) -> Optional[Dict[str, Any]]:
        """Returns the stored record with this id, if any."""
        if not entry_id:
            return None
        return next((r for r in self._read_records() if r.get('id') == entry_id), None)

    async def _existing_file(self, directory: Path, filename: str) -> str:
        if not filename:
            return ''
        path = directory / filename
        return str(path) if await aiofiles.os.path.isfile(path) else ''

    async def build_entry(self, raw: Optional[Dict[str, Any]]) -> Optional[CacheEntry]:
        """Computes the derived, filesystem-dependent view of a raw record."""
        if not raw:
            return None
        added_at = raw.get('added_at') or now_ms()
        updated_at = raw.get('updated_at') or added_at
        video_filename = raw.get('video_filename') or ''
        subs_filename = raw.get('subs_filename') or ''
        entry_id = raw.get('id') or video_filename or subs_filename or f"entry_{added_at}"
        title = raw.get('title') or ''

        video_path = await self._existing_file(self.video_dir, video_filename)
        subs_path = await self._existing_file(self.subs_dir, subs_filename)
        has_video, has_subs = bool(video_path), bool(subs_path)

        media_kind = media_kind_for(video_filename) if has_video else 'video'

        if title:
            display_title = title
        elif has_video:
            display_title = Path(video_filename).stem
        elif has_subs:
            display_title = Path(subs_filename).stem
        else:
            display_title = entry_id

        return CacheEntry(
            id=entry_id,
            title=title,
            display_title=display_title,
            added_at=added_at,
            updated_at=updated_at,
            video_filename=video_filename,
            subs_filename=subs_filename,
            video_path=video_path,
            subs_path=subs_path,
            has_video=has_video,
            has_subs=has_subs,
            media_kind=media_kind,
        )

    async def list(self) -> List[CacheEntry]:
        """All entries with at least one existing file, oldest first."""
        entries = [await self.build_entry(raw) for raw in self._read_records()]
        visible = [e for e in entries if e is not None and e.is_visible]
        return sorted(visible, key=lambda e: e.added_at or 0)

    async def upsert(self, patch: Dict[str, Any]) -> CacheEntry:
        """
        Merges `patch` onto the matching record, or appends a new one.

        A record matches by id first, then by video filename, then by subtitle
        filename. `added_at` is kept from the existing record; `updated_at` is
        always refreshed.
        """
        now = now_ms()
        records = self._read_records()
        patch = {k: v for k, v in patch.items() if k in RECORD_FIELDS}

        idx = -1
        for key in ('id', 'video_filename', 'subs_filename'):
            value = patch.get(key)
            if not value:
                continue
            idx = next((i for i, r in enumerate(records) if r.get(key) == value), -1)
            if idx >= 0:
                break

        base = records[idx] if idx >= 0 else {}
        entry_id = (patch.get('id') or base.get('id') or patch.get('video_filename')
                    or patch.get('subs_filename') or f"entry_{now}")
        merged = {
            **base,
            **patch,
            'id': entry_id,
            'added_at': base.get('added_at') or now,
            'updated_at': now,
        }
        if idx >= 0:
            records[idx] = merged
        else:
            records.append(merged)
        self._write_records(records)
        self.logger.debug(f"Upserted cache entry '{entry_id}'")
        return await self.build_entry(merged)
