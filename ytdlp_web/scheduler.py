"""Admits download jobs, bounds how many run at once, and drives them to completion."""
import asyncio
import logging
from collections import deque
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional, Callable

from .exceptions import AlreadyTerminalError, InvalidTransitionError, SchedulerStoppedError
from .jobs import DownloadJob, DownloadOptions, JobStatus
from .registry import JobRegistry
from .runner import ProcessRunner, ProgressEvent, TitleEvent, ExitEvent, Outcome


@dataclass
class _ActiveJob:
    """Bookkeeping for a job that holds an execution slot."""
    job_id: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    timed_out: bool = False
    timer: Optional[asyncio.TimerHandle] = None


class DownloadScheduler:
    """
    Runs queued jobs in creation order with at most `max_concurrent` at a time.

    A single dispatcher task makes all admission decisions. Slots are taken
    synchronously when a job is popped from the wait line, so the number of
    running jobs can never exceed the limit.
    """
    def __init__(self, registry: JobRegistry, runner: ProcessRunner,
                 max_concurrent: int = 4, job_timeout: Optional[float] = None):
        """
        Initializes the DownloadScheduler.

        Args:
            registry: The registry that owns all job records.
            runner: The runner used to execute each job.
            max_concurrent: The number of execution slots.
            job_timeout: Maximum run time per job in seconds, or None.
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.registry = registry
        self.runner = runner
        self.max_concurrent = max_concurrent
        self.job_timeout = job_timeout
        self.logger = logging.getLogger(__name__)
        self._waiting: Deque[str] = deque()
        self._active: Dict[str, _ActiveJob] = {}
        self._wakeup = asyncio.Event()
        self._dispatcher: Optional[asyncio.Task] = None

    @property
    def running_count(self) -> int:
        return len(self._active)

    @property
    def queued_count(self) -> int:
        return len(self._waiting)

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    def start(self):
        """Starts the dispatcher task."""
        if self.is_running:
            return
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name='download-dispatcher')
        self._dispatcher.add_done_callback(self._task_done_callback('Dispatcher'))
        self._wakeup.set()

    async def stop(self):
        """Cancels queued and running jobs, then stops the dispatcher."""
        self.logger.info(f"Stopping scheduler. Cancelling {self.queued_count} queued and {self.running_count} running download(s)...")
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
            self._dispatcher = None

        while self._waiting:
            job_id = self._waiting.popleft()
            await self._finish_queued(job_id)

        active = list(self._active.values())
        for handle in active:
            handle.cancel_event.set()
        tasks = [handle.task for handle in active if handle.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def set_concurrency(self, max_concurrent: int):
        """Changes the number of execution slots; running jobs are not affected."""
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._wakeup.set()

    async def submit(self, source_url: str, options: Optional[DownloadOptions] = None) -> str:
        """
        Creates a job and places it at the end of the wait line.

        Returns immediately; the job starts once a slot is free.

        Raises:
            SchedulerStoppedError: If the dispatcher is not running.
        """
        if not self.is_running:
            raise SchedulerStoppedError("The download scheduler is not running; no new jobs are accepted.")
        job_id = await self.registry.create(source_url, options)
        self._waiting.append(job_id)
        self._wakeup.set()
        return job_id

    async def retry(self, job_id: str) -> str:
        """Submits a fresh job with the URL and options of a failed or cancelled one."""
        job = self.registry.get(job_id)
        if job.status not in (JobStatus.FAILED, JobStatus.CANCELLED):
            raise InvalidTransitionError(f"Only failed or cancelled jobs can be retried; job {job_id} is {job.status.value}.")
        new_id = await self.submit(job.source_url, job.options)
        self.logger.info(f"Retrying job {job_id} as {new_id}.")
        return new_id

    async def cancel(self, job_id: str) -> DownloadJob:
        """
        Cancels a queued or running job.

        A queued job is cancelled immediately. For a running job this waits
        until the process has exited or been killed after the grace period.
        Cancelling an already-cancelled job is a no-op.

        Raises:
            JobNotFoundError: If the job does not exist.
            AlreadyTerminalError: If the job already completed or failed.
        """
        job = self.registry.get(job_id)
        if job.is_terminal:
            if job.status is JobStatus.CANCELLED:
                return job
            raise AlreadyTerminalError(job_id, job.status.value)

        if job_id in self._waiting:
            self._waiting.remove(job_id)
            self.logger.info(f"Cancelled queued job {job_id}.")
            return await self.registry.update(job_id, status=JobStatus.CANCELLED)

        handle = self._active.get(job_id)
        if handle is not None:
            self.logger.info(f"Cancelling {job.status.value} job {job_id}...")
            handle.cancel_event.set()
            if handle.task is not None:
                await asyncio.wait({handle.task})
            return self.registry.get(job_id)

        # Neither waiting nor holding a slot, so nothing will ever run it.
        return await self.registry.update(job_id, status=JobStatus.CANCELLED)

    def stats(self) -> Dict[str, int]:
        """Counts the jobs in each status."""
        counts = {status.value: 0 for status in JobStatus}
        for job in self.registry.list():
            counts[job.status.value] += 1
        return counts

    async def _dispatch_loop(self):
        """Admits waiting jobs whenever a slot is free."""
        try:
            while True:
                await self._wakeup.wait()
                self._wakeup.clear()
                while self._waiting and len(self._active) < self.max_concurrent:
                    job_id = self._waiting.popleft()
                    handle = _ActiveJob(job_id)
                    self._active[job_id] = handle
                    handle.task = asyncio.create_task(self._execute(handle), name=f'download-{job_id}')
                    handle.task.add_done_callback(self._task_done_callback(f'Download {job_id}'))
        except asyncio.CancelledError:
            self.logger.info("Dispatcher task cancelled.")
            raise

    async def _execute(self, handle: _ActiveJob):
        """Runs one job in its slot and always releases the slot afterwards."""
        job_id = handle.job_id
        try:
            if handle.cancel_event.is_set():
                # Cancelled after admission, before the job ever ran.
                await self.registry.update(job_id, status=JobStatus.CANCELLED)
                return
            job = await self.registry.update(job_id, status=JobStatus.RUNNING)
            if self.job_timeout:
                loop = asyncio.get_running_loop()
                handle.timer = loop.call_later(self.job_timeout, self._expire, handle)

            async with aclosing(self.runner.run(job, handle.cancel_event)) as events:
                async for event in events:
                    if isinstance(event, ProgressEvent):
                        await self.registry.update(job_id, progress=event.progress)
                    elif isinstance(event, TitleEvent):
                        await self.registry.update(job_id, title=event.title)
                    elif isinstance(event, ExitEvent):
                        await self._finalize(job_id, event, handle)
        except asyncio.CancelledError:
            await self._fail_unless_terminal(job_id, "Download was interrupted by shutdown.", JobStatus.CANCELLED)
            raise
        except Exception as e:
            self.logger.exception(f"Unexpected error during download for job {job_id}")
            await self._fail_unless_terminal(job_id, f"Internal error: {e}")
        finally:
            if handle.timer is not None:
                handle.timer.cancel()
            self._active.pop(job_id, None)
            self._wakeup.set()

    async def _finalize(self, job_id: str, event: ExitEvent, handle: _ActiveJob):
        if event.outcome is Outcome.COMPLETED:
            await self.registry.update(job_id, status=JobStatus.COMPLETED, output_path=event.output_path)
            self.logger.info(f"Job {job_id} completed: {event.output_path}")
        elif event.outcome is Outcome.CANCELLED:
            await self.registry.update(job_id, status=JobStatus.CANCELLED)
            if handle.timed_out:
                self.logger.warning(f"Job {job_id} cancelled after exceeding the {self.job_timeout}s time limit.")
            else:
                self.logger.info(f"Job {job_id} cancelled.")
        else:
            await self.registry.update(job_id, status=JobStatus.FAILED, error=event.error or "Download failed.")
            self.logger.warning(f"Job {job_id} failed.")

    async def _fail_unless_terminal(self, job_id: str, error: str, status: JobStatus = JobStatus.FAILED):
        try:
            job = self.registry.get(job_id)
            if job.is_terminal:
                return
            if status is JobStatus.FAILED:
                await self.registry.update(job_id, status=status, error=error)
            else:
                await self.registry.update(job_id, status=status)
        except Exception:
            self.logger.exception(f"Could not record the final state of job {job_id}")

    async def _finish_queued(self, job_id: str):
        try:
            await self.registry.update(job_id, status=JobStatus.CANCELLED)
        except InvalidTransitionError:
            pass

    def _expire(self, handle: _ActiveJob):
        if not handle.cancel_event.is_set():
            self.logger.warning(f"Job {handle.job_id} exceeded its time limit of {self.job_timeout}s.")
            handle.timed_out = True
            handle.cancel_event.set()

    def _task_done_callback(self, name: str) -> Callable[[asyncio.Task], None]:
        """Creates a callback that logs exceptions from background tasks."""
        def callback(task: asyncio.Task):
            try:
                task.result()
            except asyncio.CancelledError:
                pass  # Normal cancellation
            except Exception:
                self.logger.exception(f"Exception in background task {name}:")
        return callback
