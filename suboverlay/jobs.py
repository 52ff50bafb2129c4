"""
Defines the data classes for download jobs, their events, and the active-job registry.
"""

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterator, List, Optional

from pydantic.alias_generators import to_camel

from .constants import DEFAULT_AUDIO_FORMAT, DEFAULT_MERGE_FORMAT

JOB_MODES = ('video', 'audio')


@dataclass
class DownloadOptions:
    """
    Per-job settings.

    Attributes:
        merge_format: Container for merged video+audio (video mode).
        audio_format: Target audio codec/container (audio mode); '' keeps the source's.
        with_subtitles: Also fetch subtitles for the same id/title after the media.
        subtitle_langs: Subtitle language to fetch; chosen from a probe when None.
        probe_metadata: Run a metadata probe before downloading, even without subtitles.
    """
    merge_format: str = DEFAULT_MERGE_FORMAT
    audio_format: str = DEFAULT_AUDIO_FORMAT
    with_subtitles: bool = False
    subtitle_langs: Optional[str] = None
    probe_metadata: bool = False


@dataclass
class DownloadJob:
    """
    Represents a single in-flight invocation of the fetch tool.

    Attributes:
        job_id: A unique identifier for the job.
        url: The URL being fetched.
        mode: 'video' or 'audio'.
        options: Download settings for this job.
        process: The running subprocess, once spawned.
        started_at: Wall-clock start time (seconds since the epoch).
    """
    job_id: str
    url: str
    mode: str = 'video'
    options: DownloadOptions = field(default_factory=DownloadOptions)
    process: Optional[asyncio.subprocess.Process] = None
    started_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class JobEvent:
    """Base class for everything a job reports to its consumer."""
    type: ClassVar[str] = ''
    job_id: str

    def to_payload(self) -> Dict[str, Any]:
        """The wire shape: `{jobId, type, ...fields}` with camelCase field names."""
        payload: Dict[str, Any] = {'jobId': self.job_id, 'type': self.type}
        for name in self.__dataclass_fields__:
            if name != 'job_id':
                payload[to_camel(name)] = getattr(self, name)
        return payload


@dataclass(frozen=True)
class ProgressEvent(JobEvent):
    type: ClassVar[str] = 'progress'
    percent: float = 0.0
    speed: str = ''
    eta: str = ''


@dataclass(frozen=True)
class LogEvent(JobEvent):
    type: ClassVar[str] = 'log'
    stream: str = 'stdout'
    line: str = ''


@dataclass(frozen=True)
class DoneEvent(JobEvent):
    type: ClassVar[str] = 'done'
    filename: str = ''
    entry: Optional[Dict[str, Any]] = None
    mode: str = 'video'


@dataclass(frozen=True)
class ErrorEvent(JobEvent):
    type: ClassVar[str] = 'error'
    message: str = ''


class JobRegistry:
    """
    The set of currently active jobs, keyed by job id.

    Owned by whoever composes the job runner and passed by reference to both
    starting and cancelling code. A job is active until its process exits or
    it is cancelled; nothing here is persisted.
    """
    def __init__(self):
        self._jobs: Dict[str, DownloadJob] = {}
        self._seq = itertools.count(1)

    def new_job_id(self, prefix: str = 'job') -> str:
        """Millisecond timestamp plus a process-wide counter; unique per registry."""
        return f"{prefix}_{int(time.time() * 1000)}_{next(self._seq)}"

    def add(self, job: DownloadJob):
        self._jobs[job.job_id] = job

    def get(self, job_id: str) -> Optional[DownloadJob]:
        return self._jobs.get(job_id)

    def remove(self, job_id: str) -> Optional[DownloadJob]:
        return self._jobs.pop(job_id, None)

    def active_ids(self) -> List[str]:
        return list(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def __iter__(self) -> Iterator[DownloadJob]:
        return iter(list(self._jobs.values()))
