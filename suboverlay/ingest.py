"""Moves or copies files into the managed cache directories under collision-free names."""
import asyncio
import base64
import shutil
import stat
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Tuple, Union

import aiofiles
import aiofiles.os

from .exceptions import FilesystemError, NotAFileError
from .sanitizer import build_cache_basename, sanitize_filename_segment

PathLike = Union[str, Path]


class IngestResult(NamedTuple):
    """Where an ingested file ended up."""
    filename: str
    file_path: Path


def _coerce_bytes(raw: Any) -> Optional[bytes]:
    """Accepts raw bytes-like payloads or a base64 string."""
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return bytes(raw)
    if isinstance(raw, str):
        return base64.b64decode(raw)
    raise TypeError('Unsupported file payload')


@dataclass
class IncomingFile:
    """A file handed over as bytes (e.g. dropped into a UI) rather than as a path."""
    name: str
    data: bytes

    @classmethod
    def from_payload(cls, payload: Any) -> Optional['IncomingFile']:
        """
        Builds an IncomingFile from a loosely-shaped mapping.

        The bytes may be under `data`, `buffer` or `content`, either raw or
        base64 encoded. Returns None when no usable bytes are present.
        """
        if isinstance(payload, IncomingFile):
            return payload
        if not isinstance(payload, Mapping):
            return None
        name = payload.get('name')
        name = name if isinstance(name, str) else ''
        data = None
        for key in ('data', 'buffer', 'content'):
            if key in payload:
                data = _coerce_bytes(payload[key])
                if data:
                    break
        if not data:
            return None
        return cls(name=name, data=data)


class CacheIngestor:
    """
    Places files into a cache directory without ever overwriting an existing one.

    Calls targeting the same directory are serialized so two files that
    sanitize to the same basename cannot race through the collision check.
    """
    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._dir_locks: Dict[Path, asyncio.Lock] = {}

    def _lock_for(self, directory: Path) -> asyncio.Lock:
        lock = self._dir_locks.get(directory)
        if lock is None:
            lock = self._dir_locks[directory] = asyncio.Lock()
        return lock

    async def ingest(self, source_path: PathLike, *, directory: PathLike, title: Optional[str] = None,
                     id: Optional[str] = None, fallback_prefix: str = 'entry', default_ext: str = '',
                     move: bool = False, preserve_basename: bool = False) -> IngestResult:
        """
        Moves or copies `source_path` into `directory`.

        Args:
            source_path: The file to ingest.
            directory: Target cache directory; created if missing.
            title: Title used to derive the fallback name.
            id: Id used to derive the fallback name.
            fallback_prefix: Placeholder prefix when both title and id are empty.
            default_ext: Extension used when the source has none (e.g. '.ass').
            move: Move instead of copy.
            preserve_basename: Try the source's own basename before the derived one.

        Returns:
            The final filename and absolute path.

        Raises:
            NotAFileError: If the source is missing or not a regular file.
            FilesystemError: If every candidate name failed to transfer.
        """
        if not source_path:
            raise NotAFileError("A source path is required.")
        target_dir = Path(directory).resolve()
        try:
            await aiofiles.os.makedirs(target_dir, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"Cannot create cache directory {target_dir}: {e}") from e

        source = Path(source_path).resolve()
        try:
            source_stat = await aiofiles.os.stat(source)
        except FileNotFoundError:
            raise NotAFileError(f"Source file does not exist: {source}")
        except OSError as e:
            raise FilesystemError(f"Cannot read {source}: {e}") from e
        if not stat.S_ISREG(source_stat.st_mode):
            raise NotAFileError(f"Source path is not a file: {source}")

        # The fetch tool already wrote into the cache; renaming its output again
        # can mangle encoding-sensitive names for no benefit.
        if move and source.parent == target_dir and not preserve_basename:
            return IngestResult(source.name, source)

        ext = source.suffix
        if not ext and default_ext:
            ext = default_ext if default_ext.startswith('.') else f".{default_ext}"

        candidates = self._build_candidates(source, ext, title, id, fallback_prefix, preserve_basename)

        last_error: Optional[OSError] = None
        async with self._lock_for(target_dir):
            for base, candidate_ext in candidates:
                target = await self._unique_target(target_dir, base, candidate_ext, source if move else None)
                if target == source:
                    return IngestResult(target.name, target)
                try:
                    await self._transfer(source, target, move)
                except OSError as e:
                    self.logger.warning(f"Could not {'move' if move else 'copy'} {source.name} to {target.name}: {e}")
                    last_error = e
                    continue
                self.logger.info(f"Ingested {source.name} into {target_dir} as {target.name}")
                return IngestResult(target.name, target)

        raise FilesystemError(f"Could not import {source.name} into {target_dir}: {last_error}") from last_error

    def _build_candidates(self, source: Path, ext: str, title: Optional[str], id: Optional[str],
                          fallback_prefix: str, preserve_basename: bool) -> List[Tuple[str, str]]:
        """Lists (base, ext) name candidates in priority order, without duplicates."""
        candidates: List[Tuple[str, str]] = []

        def add(base: str, candidate_ext: str):
            if base and (base, candidate_ext) not in candidates:
                candidates.append((base, candidate_ext))

        if preserve_basename:
            add(source.stem or source.name, source.suffix or ext)
        add(build_cache_basename(title, id, fallback_prefix), ext)
        return candidates

    async def _unique_target(self, directory: Path, base: str, ext: str, current: Optional[Path]) -> Path:
        """Appends " (n)" to `base` until the name is free (or is `current` itself)."""
        initial_base = base if base.strip() else 'entry'
        candidate_base = initial_base
        index = 1
        while True:
            target = directory / f"{candidate_base}{ext}"
            if current is not None and current == target:
                return target
            if not await aiofiles.os.path.exists(target):
                return target
            index += 1
            candidate_base = f"{initial_base} ({index})"

    async def _transfer(self, source: Path, target: Path, move: bool):
        """Renames (falling back to copy + delete across devices) or copies a file."""
        if not move:
            await asyncio.to_thread(shutil.copyfile, source, target)
            return
        try:
            await aiofiles.os.rename(source, target)
            return
        except OSError as e:
            self.logger.debug(f"Rename of {source} failed ({e}); falling back to copy.")
        await asyncio.to_thread(shutil.copyfile, source, target)
        try:
            await aiofiles.os.remove(source)
        except OSError as e:
            self.logger.warning(f"Copied {source.name} but could not remove the original: {e}")

    async def persist_incoming_file(self, incoming: IncomingFile, *, directory: PathLike,
                                    title: Optional[str] = None, id: Optional[str] = None,
                                    fallback_prefix: str = 'entry',
                                    default_ext: str = '') -> Tuple[IngestResult, str]:
        """
        Writes raw bytes to a scratch file and ingests it, keeping the sent name when possible.

        Returns:
            The ingest result and the sanitized base name of the incoming file.
        """
        incoming_name = Path(incoming.name or '')
        ext = incoming_name.suffix or default_ext
        if ext and not ext.startswith('.'):
            ext = f".{ext}"
        base_name = sanitize_filename_segment(incoming_name.stem or incoming_name.name)

        tmp_root = Path(await asyncio.to_thread(tempfile.mkdtemp, prefix='overlay-upload-'))
        tmp_path = tmp_root / (f"{base_name}{ext}" if base_name else f"upload{ext}")
        try:
            async with aiofiles.open(tmp_path, 'wb') as f_out:
                await f_out.write(incoming.data)
            result = await self.ingest(
                tmp_path,
                directory=directory,
                title=title,
                id=id,
                fallback_prefix=fallback_prefix,
                default_ext=ext,
                move=True,
                preserve_basename=True,
            )
            return result, base_name
        finally:
            await asyncio.to_thread(shutil.rmtree, tmp_root, True)
