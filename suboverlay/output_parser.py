"""
Parses the fetch tool's human-readable output.

The tool's text protocol drifts between versions, so everything here is a
small pure matcher that either recognizes a line or returns None. A line that
matches nothing is never an error; the caller still forwards it as a log line.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from .constants import META_PREFIX, VIDEO_EXTS

PROGRESS_RE = re.compile(r'\[download\]\s+([\d.]+)%.*?at\s+([\d.]+\w+/s).*?ETA\s+([\d:]+)', re.IGNORECASE)
MERGER_RE = re.compile(r'\[Merger\]\s+Merging formats into\s+"(.+?)"\s*$', re.IGNORECASE)
EXTRACT_AUDIO_RE = re.compile(r'\[ExtractAudio\]\s+Destination:\s+(.+?)\s*$', re.IGNORECASE)
DESTINATION_RE = re.compile(r'Destination:\s+(.+?)\s*$', re.IGNORECASE)
# Separately downloaded streams awaiting a merge: "name.f137.mp4", "name.251.webm".
INTERMEDIATE_RE = re.compile(r'\.f?\d{2,4}\.[A-Za-z0-9]+$')
DRIVE_PATH_RE = re.compile(r'^[A-Za-z]:\\')

# Extensions the tool can produce as a final audio artifact.
FETCH_AUDIO_EXTS = frozenset({'.m4a', '.mp3', '.flac', '.wav', '.ogg', '.opus', '.aac', '.mka'})

PathMatcher = Callable[[str], Optional[str]]


@dataclass(frozen=True)
class ProgressInfo:
    percent: float
    speed: str
    eta: str


def parse_progress(line: str) -> Optional[ProgressInfo]:
    """Extracts percent/speed/ETA from a `[download]  NN.N% ... at X/s ETA mm:ss` line."""
    match = PROGRESS_RE.search(line)
    if not match:
        return None
    try:
        percent = float(match.group(1))
    except ValueError:
        return None
    return ProgressInfo(percent=percent, speed=match.group(2), eta=match.group(3))


def parse_meta_line(line: str) -> Optional[Tuple[str, str]]:
    """Splits a `__meta__key=value` line emitted by our --print directives."""
    if not line.startswith(META_PREFIX):
        return None
    key, sep, value = line[len(META_PREFIX):].partition('=')
    if not sep or not key:
        return None
    return key, value


def _has_ext(path: str, exts: frozenset) -> bool:
    return Path(path).suffix.lower() in exts


def _is_intermediate(path: str) -> bool:
    return bool(INTERMEDIATE_RE.search(path))


def mode_exts(mode: str) -> frozenset:
    return FETCH_AUDIO_EXTS if mode == 'audio' else VIDEO_EXTS


def match_merger(line: str) -> Optional[str]:
    """`[Merger] Merging formats into "PATH"`."""
    match = MERGER_RE.search(line)
    return match.group(1) if match else None


def match_extract_audio(line: str) -> Optional[str]:
    """`[ExtractAudio] Destination: PATH` for a final audio file."""
    match = EXTRACT_AUDIO_RE.search(line)
    if not match:
        return None
    path = match.group(1)
    if not _has_ext(path, FETCH_AUDIO_EXTS) or _is_intermediate(path):
        return None
    return path


def make_destination_matcher(mode: str) -> PathMatcher:
    """`Destination: PATH`, limited to the mode's extensions and skipping intermediate streams."""
    exts = mode_exts(mode)

    def match_destination(line: str) -> Optional[str]:
        match = DESTINATION_RE.search(line)
        if not match:
            return None
        path = match.group(1)
        if not _has_ext(path, exts) or _is_intermediate(path):
            return None
        return path
    return match_destination


def make_bare_path_matcher(cache_dir: Union[str, Path, None]) -> PathMatcher:
    """A line that is nothing but an absolute path (e.g. from `--print after_move:filepath`)."""
    cache_prefix = str(cache_dir) if cache_dir else ''

    def match_bare_path(line: str) -> Optional[str]:
        if (cache_prefix and line.startswith(cache_prefix)) or line.startswith('/') or DRIVE_PATH_RE.match(line):
            return line
        return None
    return match_bare_path


def build_path_matchers(mode: str, cache_dir: Union[str, Path, None]) -> List[PathMatcher]:
    """Path heuristics in priority order (highest first)."""
    return [
        match_merger,
        match_extract_audio,
        make_destination_matcher(mode),
        make_bare_path_matcher(cache_dir),
    ]


class OutputParser:
    """
    Accumulates what a single job's output tells us.

    The output path locks on the first match. A later line can only replace it
    if it matches a strictly higher-priority heuristic, so a stray path-like
    line never beats a merger or extraction announcement, and announcements of
    equal or lower priority never overwrite an earlier one.
    """
    def __init__(self, mode: str = 'video', cache_dir: Union[str, Path, None] = None):
        self.mode = mode
        self.matchers = build_path_matchers(mode, cache_dir)
        self.output_path: str = ''
        self.output_rank: Optional[int] = None
        self.video_id: str = ''
        self.title: str = ''
        self.last_error: str = ''

    def set_metadata(self, video_id: Optional[str] = None, title: Optional[str] = None):
        """Records id/title; the first non-empty value of each wins."""
        if video_id and not self.video_id:
            self.video_id = video_id
        if title and not self.title:
            self.title = title

    def feed(self, line: str) -> Optional[ProgressInfo]:
        """
        Consumes one raw output line.

        Returns:
            Progress information if the line is a progress line, else None.
        """
        trimmed = line.strip()
        if not trimmed:
            return None

        meta = parse_meta_line(trimmed)
        if meta:
            key, value = meta
            if key == 'id':
                self.set_metadata(video_id=value)
            elif key == 'title':
                self.set_metadata(title=value)
            return None

        if trimmed[:6].upper() == 'ERROR:':
            self.last_error = trimmed[6:].strip()

        self._consider_path(trimmed)
        return parse_progress(trimmed)

    def _consider_path(self, line: str):
        for rank, matcher in enumerate(self.matchers, start=1):
            if self.output_rank is not None and rank >= self.output_rank:
                return
            path = matcher(line)
            if path:
                self.output_path, self.output_rank = path, rank
                return
