"""Holds every job record and serializes all mutation of job state."""
import asyncio
import uuid
import logging
import dataclasses
from collections.abc import Mapping
from pathlib import Path
from typing import Dict, Any, Optional, Callable, Coroutine, Iterator, Union

from pydantic import ValidationError

from .exceptions import (
    InvalidRequestError, JobNotFoundError, InvalidTransitionError, AlreadyTerminalError
)
from .jobs import (
    DownloadJob, DownloadOptions, JobEvent, JobStatus, EventKind, Progress,
    ALLOWED_TRANSITIONS, utcnow
)

EventCallback = Callable[[JobEvent], Coroutine[Any, Any, None]]


def describe_validation_error(error: ValidationError) -> str:
    """Turns the first Pydantic error into a one-line message for the caller."""
    details = error.errors()[0]
    location = '.'.join(str(part) for part in details.get('loc', ()))
    if location:
        return f"Error in field '{location}': {details['msg']}"
    return details['msg']


class JobRegistry:
    """
    The single owner of all job records.

    Records are immutable snapshots that are replaced on every mutation.
    Each job has its own lock, so updates to different jobs never wait on
    each other while updates to one job are applied strictly in order.
    """
    def __init__(self, event_callback: Optional[EventCallback] = None):
        """
        Initializes the JobRegistry.

        Args:
            event_callback: The async function to call with every job event.
        """
        self.event_callback = event_callback
        self.logger = logging.getLogger(__name__)
        self._jobs: Dict[str, DownloadJob] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._order: Dict[str, int] = {}
        self._sequence = 0

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    async def create(self, source_url: str, options: Union[DownloadOptions, Mapping, None] = None) -> str:
        """
        Allocates a new job in the Queued state.

        Returns:
            The id of the new job.

        Raises:
            InvalidRequestError: If the URL is empty or the options are malformed.
        """
        url = (source_url or '').strip() if isinstance(source_url, str) else ''
        if not url:
            raise InvalidRequestError("A source URL is required.")
        if url.startswith('-'):
            raise InvalidRequestError("The source URL must not start with '-'.")

        if options is None:
            options = DownloadOptions()
        elif not isinstance(options, DownloadOptions):
            if not isinstance(options, Mapping):
                raise InvalidRequestError("Download options must be an object.")
            try:
                options = DownloadOptions.model_validate(dict(options))
            except ValidationError as e:
                raise InvalidRequestError(describe_validation_error(e)) from e

        job_id = str(uuid.uuid4())
        while job_id in self._jobs:
            job_id = str(uuid.uuid4())

        job = DownloadJob(id=job_id, source_url=url, options=options)
        lock = asyncio.Lock()
        self._locks[job_id] = lock
        self._sequence += 1
        self._order[job_id] = self._sequence
        async with lock:
            self._jobs[job_id] = job
            await self._notify(EventKind.STATUS, job)
        self.logger.info(f"Created job {job_id} for {url}")
        return job_id

    def get(self, job_id: str) -> DownloadJob:
        """Returns the current snapshot of a job."""
        try:
            return self._jobs[job_id]
        except KeyError:
            raise JobNotFoundError(job_id) from None

    def list(self) -> Iterator[DownloadJob]:
        """
        Returns a point-in-time iterator over all jobs, oldest first.

        Mutations made after the call are not reflected in the iterator.
        """
        snapshot = sorted(self._jobs.values(), key=lambda job: (job.created_at, self._order[job.id]))
        return iter(snapshot)

    async def update(
        self,
        job_id: str,
        *,
        status: Optional[JobStatus] = None,
        progress: Optional[Progress] = None,
        title: Optional[str] = None,
        output_path: Optional[Path] = None,
        error: Optional[str] = None,
    ) -> DownloadJob:
        """
        Atomically applies a state transition or a progress update.

        Returns:
            The job snapshot after the update.

        Raises:
            JobNotFoundError: If the job does not exist.
            AlreadyTerminalError: If the job already reached a terminal state.
            InvalidTransitionError: If the update violates the state machine.
        """
        lock = self._locks.get(job_id)
        if lock is None:
            raise JobNotFoundError(job_id)

        async with lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            changes = self._validate_update(job, status, progress, title, output_path, error)
            updated = dataclasses.replace(job, revision=job.revision + 1, **changes)
            self._jobs[job_id] = updated
            kind = EventKind.STATUS if status is not None else EventKind.PROGRESS
            await self._notify(kind, updated)

        if status is not None:
            self.logger.debug(f"Job {job_id}: {job.status.value} -> {status.value}")
        return updated

    async def evict(self, job_id: str) -> DownloadJob:
        """Removes a job record; subscribers receive a final 'removed' event."""
        lock = self._locks.get(job_id)
        if lock is None:
            raise JobNotFoundError(job_id)
        async with lock:
            job = self._jobs.pop(job_id, None)
            if job is None:
                raise JobNotFoundError(job_id)
            del self._locks[job_id]
            del self._order[job_id]
            await self._notify(EventKind.REMOVED, job)
        self.logger.info(f"Evicted job {job_id} ({job.status.value}).")
        return job

    def _validate_update(self, job: DownloadJob, status, progress, title, output_path, error) -> Dict[str, Any]:
        if job.is_terminal:
            raise AlreadyTerminalError(job.id, job.status.value)

        changes: Dict[str, Any] = {}
        if status is not None:
            if status not in ALLOWED_TRANSITIONS[job.status]:
                raise InvalidTransitionError(f"Job {job.id} cannot move from {job.status.value} to {status.value}.")
            if status is JobStatus.COMPLETED and output_path is None:
                raise InvalidTransitionError(f"Job {job.id} cannot complete without an output path.")
            if status is JobStatus.FAILED and not error:
                raise InvalidTransitionError(f"Job {job.id} cannot fail without an error message.")
            changes['status'] = status
            now = utcnow()
            if status is JobStatus.RUNNING:
                changes['started_at'] = now
            elif status.is_terminal:
                changes['ended_at'] = now

        if output_path is not None:
            if status is not JobStatus.COMPLETED:
                raise InvalidTransitionError("An output path can only be set when completing a job.")
            changes['output_path'] = Path(output_path)
        if error is not None:
            if status is not JobStatus.FAILED:
                raise InvalidTransitionError("An error can only be set when failing a job.")
            changes['error'] = error

        if progress is not None or title is not None:
            effective = status or job.status
            if effective is not JobStatus.RUNNING:
                raise InvalidTransitionError(f"Job {job.id} only accepts progress while running, not {effective.value}.")
            if progress is not None:
                changes['progress'] = progress
            if title is not None:
                changes['title'] = title

        if not changes:
            raise InvalidTransitionError(f"Empty update for job {job.id}.")
        return changes

    async def _notify(self, kind: EventKind, job: DownloadJob):
        if self.event_callback is not None:
            await self.event_callback(JobEvent(kind, job))
