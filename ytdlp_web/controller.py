"""
Defines the DownloadOrchestrator, which wires the job core together.

The web layer talks only to this class: it owns the registry, scheduler,
runner and broadcaster, and exposes the operations collaborators need.
"""
import asyncio
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Dict, Any, Iterator, List, Union

from pydantic import ValidationError

from ._version import __version__
from .broadcaster import ALL, EventBroadcaster, Subscription
from .config import Settings
from .constants import MAX_CONCURRENT_LIMIT, TEMP_FILE_SUFFIXES
from .dependencies import DependencyLocator
from .exceptions import InvalidRequestError, InvalidTransitionError, JobNotFoundError
from .jobs import DownloadJob, DownloadOptions, EventKind, JobEvent
from .registry import JobRegistry, describe_validation_error
from .runner import ProcessRunner
from .scheduler import DownloadScheduler


class DownloadOrchestrator:
    """The central entry point for submitting, observing and cancelling downloads."""

    def __init__(self, config: Settings):
        """
        Initializes the DownloadOrchestrator.

        Args:
            config: The loaded service settings.
        """
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.versions: Dict[str, str] = {}

        self.broadcaster = EventBroadcaster()
        self.registry = JobRegistry(self.broadcaster.publish)
        self.dependencies = DependencyLocator(config.yt_dlp_path, config.ffmpeg_path)
        self.runner = ProcessRunner(
            config.yt_dlp_path,
            config.output_dir,
            temp_dir=config.temp_dir,
            ffmpeg_path=config.ffmpeg_path,
            grace_period=config.cancel_grace_period,
            diagnostic_lines=config.diagnostic_lines,
        )
        self.scheduler = DownloadScheduler(
            self.registry, self.runner,
            max_concurrent=config.max_concurrent_downloads,
            job_timeout=config.job_timeout,
        )

    async def start(self):
        """Resolves dependencies, prepares directories and starts scheduling."""
        await self.dependencies.initialize()
        self.runner.yt_dlp_path = self.dependencies.yt_dlp_path
        self.runner.ffmpeg_path = self.dependencies.ffmpeg_path
        if not self.dependencies.yt_dlp_path:
            self.logger.error("yt-dlp was not found. Downloads will fail until it is installed or configured.")

        for directory in (self.config.output_dir, self.config.temp_dir):
            await asyncio.to_thread(directory.mkdir, parents=True, exist_ok=True)
        await self.cleanup_temporary_files()

        yt_dlp_version, ffmpeg_version = await asyncio.gather(
            self.dependencies.get_version(self.dependencies.yt_dlp_path),
            self.dependencies.get_version(self.dependencies.ffmpeg_path),
        )
        self.versions = {'yt-dlp': yt_dlp_version, 'ffmpeg': ffmpeg_version}
        self.logger.info(f"yt-dlp version: {yt_dlp_version}; FFmpeg version: {ffmpeg_version}")

        self.scheduler.start()
        self.logger.info(f"Orchestrator started with {self.config.max_concurrent_downloads} download slot(s).")

    async def stop(self):
        """Cancels all outstanding work and ends every event stream."""
        await self.scheduler.stop()
        self.broadcaster.close()
        self.logger.info("Orchestrator stopped.")

    def build_options(self, options: Union[Mapping, DownloadOptions, None]) -> DownloadOptions:
        """Merges request options over the configured defaults and validates them."""
        if options is None:
            return self.config.default_options
        if isinstance(options, DownloadOptions):
            return options
        if not isinstance(options, Mapping):
            raise InvalidRequestError("Download options must be an object.")
        merged = {**self.config.default_options.model_dump(), **options}
        try:
            return DownloadOptions.model_validate(merged)
        except ValidationError as e:
            raise InvalidRequestError(describe_validation_error(e)) from e

    async def submit(self, source_url: str, options: Union[Mapping, DownloadOptions, None] = None) -> str:
        """Queues a new download and returns its job id without waiting for it to start."""
        return await self.scheduler.submit(source_url, self.build_options(options))

    def get_status(self, job_id: str) -> DownloadJob:
        return self.registry.get(job_id)

    def list_jobs(self) -> Iterator[DownloadJob]:
        return self.registry.list()

    async def cancel(self, job_id: str) -> DownloadJob:
        return await self.scheduler.cancel(job_id)

    async def retry(self, job_id: str) -> str:
        return await self.scheduler.retry(job_id)

    def stream_events(self, scope: str = ALL) -> Subscription:
        """
        Opens an event stream seeded with the current snapshot(s).

        Raises:
            JobNotFoundError: If `scope` names a job that does not exist.
        """
        if scope == ALL:
            subscription = self.broadcaster.subscribe(ALL)
            for job in self.registry.list():
                subscription.offer(JobEvent(EventKind.SNAPSHOT, job))
            return subscription

        job = self.registry.get(scope)
        return self.broadcaster.subscribe(scope, initial=JobEvent(EventKind.SNAPSHOT, job))

    async def wait_for(self, job_id: str) -> DownloadJob:
        """Waits until a job reaches a terminal state and returns its final snapshot."""
        async with self.stream_events(job_id) as events:
            async for event in events:
                if event.kind is EventKind.REMOVED:
                    raise JobNotFoundError(job_id)
                if event.job.is_terminal:
                    return event.job
        return self.registry.get(job_id)

    async def evict(self, job_id: str) -> DownloadJob:
        """Removes a finished job from the registry."""
        job = self.registry.get(job_id)
        if not job.is_terminal:
            raise InvalidTransitionError(f"Job {job_id} is still {job.status.value}; cancel it first.")
        return await self.registry.evict(job_id)

    async def clear_finished(self) -> List[str]:
        """Removes all finished (completed, failed, cancelled) jobs from the registry."""
        finished = [job.id for job in self.registry.list() if job.is_terminal]
        removed = []
        for job_id in finished:
            try:
                await self.registry.evict(job_id)
                removed.append(job_id)
            except JobNotFoundError:
                pass  # Evicted concurrently
        self.logger.info(f"Cleared {len(removed)} finished job(s).")
        return removed

    def set_concurrency(self, max_concurrent: Any) -> int:
        """
        Changes how many downloads may run at once.

        Raising the limit admits waiting jobs straight away; lowering it lets
        running jobs finish and holds back new ones until they fit.

        Raises:
            InvalidRequestError: If the value is not an integer between 1 and the limit.
        """
        if isinstance(max_concurrent, bool) or not isinstance(max_concurrent, int) \
                or not 1 <= max_concurrent <= MAX_CONCURRENT_LIMIT:
            raise InvalidRequestError(
                f"max_concurrent_downloads must be an integer from 1 to {MAX_CONCURRENT_LIMIT}."
            )
        self.scheduler.set_concurrency(max_concurrent)
        self.config = self.config.model_copy(update={'max_concurrent_downloads': max_concurrent})
        self.logger.info(f"Concurrent download limit set to {max_concurrent}.")
        return max_concurrent

    def stats(self) -> Dict[str, int]:
        return self.scheduler.stats()

    def info(self) -> Dict[str, Any]:
        """Summarizes the service state for the info endpoint."""
        return {
            'version': __version__,
            'dependencies': dict(self.versions),
            'max_concurrent_downloads': self.scheduler.max_concurrent,
            'jobs': self.stats(),
            'slots': {'running': self.scheduler.running_count, 'queued': self.scheduler.queued_count},
        }

    async def cleanup_temporary_files(self) -> int:
        """Deletes partial downloads left in the temp directory by an earlier run."""
        return await asyncio.to_thread(self._remove_partial_files, self.config.temp_dir)

    def _remove_partial_files(self, temp_dir: Path) -> int:
        if not temp_dir.is_dir():
            return 0
        removed = 0
        for item in temp_dir.iterdir():
            if item.suffix not in TEMP_FILE_SUFFIXES:
                continue
            try:
                item.unlink()
                removed += 1
            except OSError as e:
                self.logger.error(f"Error deleting temp file {item.name}: {e}")
        if removed:
            self.logger.info(f"Deleted {removed} temporary file(s) from {temp_dir}.")
        return removed
