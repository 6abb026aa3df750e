"""
Defines the data classes for download jobs and the events describing them.

A `DownloadJob` is an immutable snapshot: the registry replaces it wholesale on
every mutation, so readers can hold on to one without further locking.
"""

import re
import enum
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional, Literal

from pydantic import BaseModel, ConfigDict, field_validator


class JobStatus(str, enum.Enum):
    QUEUED = 'queued'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# Every legal edge of the job state machine.
ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class DownloadOptions(BaseModel):
    """
    The download settings for a single job, validated with Pydantic.

    Instances are frozen; a job's options never change after creation.
    """
    model_config = ConfigDict(frozen=True, extra='forbid')

    download_type: Literal['video', 'audio'] = 'video'
    video_resolution: str = 'best'
    audio_format: Literal['best', 'mp3', 'm4a', 'opus', 'flac', 'wav'] = 'mp3'
    filename_template: str = '%(title).100s [%(id)s].%(ext)s'
    format_sort: Optional[str] = 'res,ext:mp4:m4a'
    recode_video: Optional[Literal['mp4', 'mkv', 'webm', 'mov']] = 'mp4'
    embed_thumbnail: bool = False
    embed_metadata: bool = True
    no_playlist: bool = True

    @field_validator('video_resolution', mode='before')
    @classmethod
    def validate_video_resolution(cls, value: Any) -> str:
        """Accepts 'best' or a positive pixel height such as 720."""
        text = str(value).strip().lower()
        if text == 'best':
            return text
        if not text.isdigit() or int(text) <= 0:
            raise ValueError("video_resolution must be 'best' or a positive height such as 1080.")
        return text

    @field_validator('filename_template')
    @classmethod
    def validate_filename_template(cls, value: str) -> str:
        """
        Validates the yt-dlp filename template.

        Raises:
            ValueError: If the template is invalid.
        """
        is_invalid = (
            not value or
            not re.search(r'%\((?:title|id)\)', value) or
            '/' in value or '\\' in value or '..' in value or
            Path(value).is_absolute()
        )
        if is_invalid:
            raise ValueError("Filename template is invalid. It must include %(title)s or %(id)s and cannot contain path separators.")
        return value

    @field_validator('format_sort')
    @classmethod
    def validate_format_sort(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and (not value.strip() or value.startswith('-')):
            raise ValueError("format_sort must be a non-empty yt-dlp sort string.")
        return value


@dataclass(frozen=True)
class Progress:
    """
    Latest progress reported by yt-dlp for a running job.

    Any field may be None when the downloader did not report it. The
    percentage is not monotonic: multi-format downloads restart at 0%.
    """
    percent: Optional[float] = None
    downloaded_bytes: Optional[int] = None
    total_bytes: Optional[int] = None
    speed: Optional[float] = None
    eta: Optional[int] = None
    stage: Optional[str] = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DownloadJob:
    """
    Represents a single download request and its tracked lifecycle.

    Attributes:
        id: A unique identifier for the job, never reused.
        source_url: The URL provided by the user.
        options: The validated download settings for this job.
        status: The current position in the job state machine.
        progress: The latest progress snapshot.
        title: The media title, once yt-dlp has reported it.
        output_path: The downloaded file, set once the job completed.
        error: A human-readable diagnostic, set once the job failed.
        revision: Incremented on every mutation of the job.
    """
    id: str
    source_url: str
    options: DownloadOptions
    status: JobStatus = JobStatus.QUEUED
    progress: Progress = field(default_factory=Progress)
    title: Optional[str] = None
    output_path: Optional[Path] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    revision: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        """Returns a JSON-serializable representation of the job."""
        def timestamp(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            'id': self.id,
            'source_url': self.source_url,
            'options': self.options.model_dump(mode='json'),
            'status': self.status.value,
            'progress': asdict(self.progress),
            'title': self.title,
            'output_path': str(self.output_path) if self.output_path else None,
            'error': self.error,
            'created_at': timestamp(self.created_at),
            'started_at': timestamp(self.started_at),
            'ended_at': timestamp(self.ended_at),
            'revision': self.revision,
        }


class EventKind(str, enum.Enum):
    SNAPSHOT = 'snapshot'
    STATUS = 'status'
    PROGRESS = 'progress'
    REMOVED = 'removed'


@dataclass(frozen=True)
class JobEvent:
    """A change to one job, carrying the full snapshot after the change."""
    kind: EventKind
    job: DownloadJob

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def ends_stream(self) -> bool:
        """True when no further events can follow for this job."""
        return self.kind is EventKind.REMOVED or self.job.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind.value, 'job': self.job.to_dict()}
