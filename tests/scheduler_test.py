"""
End-to-end tests for scheduling, cancellation and job bookkeeping.

These drive a real DownloadOrchestrator against the fake yt-dlp script.
"""
import asyncio
import os
import time
from pathlib import Path

import pytest

from conftest import wait_until
from ytdlp_web.controller import DownloadOrchestrator
from ytdlp_web.exceptions import (
    AlreadyTerminalError, InvalidRequestError, InvalidTransitionError, JobNotFoundError, SchedulerStoppedError
)
from ytdlp_web.jobs import EventKind, JobStatus
from ytdlp_web.registry import JobRegistry
from ytdlp_web.runner import ProcessRunner
from ytdlp_web.scheduler import DownloadScheduler, _ActiveJob


def statuses(events, job_id):
    """The statuses a job went through, in order."""
    return [e.job.status for e in events if e.job_id == job_id and e.kind is EventKind.STATUS]


def assert_process_gone(pid: int):
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


@pytest.mark.asyncio
async def test_submit_returns_queued_job_and_completes(start_orchestrator, settings):
    orchestrator, events = await start_orchestrator()
    job_id = await orchestrator.submit("https://example.com/first")
    assert orchestrator.get_status(job_id).status is JobStatus.QUEUED

    job = await asyncio.wait_for(orchestrator.wait_for(job_id), timeout=10)
    assert job.status is JobStatus.COMPLETED
    assert job.title == "Fake first"
    assert job.output_path == settings.output_dir / "first.mp4"
    assert job.output_path.read_bytes() == b"fake media for first"
    assert job.progress.percent == 100.0
    assert statuses(events, job_id) == [JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.COMPLETED]


@pytest.mark.asyncio
async def test_running_jobs_never_exceed_the_limit(start_orchestrator):
    orchestrator, events = await start_orchestrator(max_concurrent_downloads=2)
    ids = [await orchestrator.submit(f"https://example.com/batch{i}?seconds=0.3") for i in range(5)]
    finals = await asyncio.wait_for(asyncio.gather(*[orchestrator.wait_for(i) for i in ids]), timeout=20)
    assert all(job.status is JobStatus.COMPLETED for job in finals)

    running, peak = set(), 0
    for event in events:
        if event.kind is not EventKind.STATUS:
            continue
        if event.job.status is JobStatus.RUNNING:
            running.add(event.job_id)
        elif event.job.is_terminal:
            running.discard(event.job_id)
        peak = max(peak, len(running))
    assert peak == 2


@pytest.mark.asyncio
async def test_jobs_start_in_submission_order(start_orchestrator):
    orchestrator, events = await start_orchestrator(max_concurrent_downloads=1)
    first = await orchestrator.submit("https://example.com/one?seconds=0.3")
    second = await orchestrator.submit("https://example.com/two?seconds=0.1")
    await wait_until(lambda: orchestrator.get_status(first).status is JobStatus.RUNNING)
    assert orchestrator.get_status(second).status is JobStatus.QUEUED
    await asyncio.wait_for(orchestrator.wait_for(second), timeout=10)

    order = [(e.job_id, e.job.status) for e in events if e.kind is EventKind.STATUS]
    assert order.index((first, JobStatus.COMPLETED)) < order.index((second, JobStatus.RUNNING))


@pytest.mark.asyncio
async def test_cancelling_a_queued_job_never_runs_it(start_orchestrator, pid_dir):
    orchestrator, events = await start_orchestrator(max_concurrent_downloads=1)
    blocker = await orchestrator.submit("https://example.com/slow")
    queued = await orchestrator.submit("https://example.com/never")
    await wait_until(lambda: orchestrator.get_status(blocker).status is JobStatus.RUNNING)

    job = await orchestrator.cancel(queued)
    assert job.status is JobStatus.CANCELLED
    await orchestrator.cancel(blocker)
    await asyncio.sleep(0.3)

    assert statuses(events, queued) == [JobStatus.QUEUED, JobStatus.CANCELLED]
    assert not (pid_dir / "never").exists()


@pytest.mark.asyncio
async def test_cancelling_a_job_admitted_but_not_started_never_runs_it(start_orchestrator, pid_dir):
    orchestrator, events = await start_orchestrator(max_concurrent_downloads=1)
    job_id = await orchestrator.submit("https://example.com/slow")
    await asyncio.sleep(0)  # Let the dispatcher take the job off the wait line.
    assert orchestrator.get_status(job_id).status is JobStatus.QUEUED
    assert orchestrator.scheduler.running_count == 1

    job = await asyncio.wait_for(orchestrator.cancel(job_id), timeout=5)

    assert job.status is JobStatus.CANCELLED
    assert statuses(events, job_id) == [JobStatus.QUEUED, JobStatus.CANCELLED]
    assert orchestrator.scheduler.running_count == 0
    assert not (pid_dir / "slow").exists()


@pytest.mark.asyncio
async def test_cancelling_a_running_job_stops_the_process(start_orchestrator, settings, pid_dir):
    orchestrator, _ = await start_orchestrator()
    job_id = await orchestrator.submit("https://example.com/slow")
    await wait_until((pid_dir / "slow").exists)
    await wait_until(lambda: orchestrator.get_status(job_id).progress.percent)

    started = time.monotonic()
    job = await orchestrator.cancel(job_id)
    elapsed = time.monotonic() - started

    assert job.status is JobStatus.CANCELLED
    assert job.ended_at is not None
    assert elapsed < settings.cancel_grace_period + 2.0
    assert_process_gone(int((pid_dir / "slow").read_text()))


@pytest.mark.asyncio
async def test_stubborn_process_is_killed_after_the_grace_period(start_orchestrator, pid_dir):
    orchestrator, _ = await start_orchestrator(cancel_grace_period=0.5)
    job_id = await orchestrator.submit("https://example.com/stubborn")
    await wait_until(lambda: orchestrator.get_status(job_id).progress.percent)

    job = await asyncio.wait_for(orchestrator.cancel(job_id), timeout=5)

    assert job.status is JobStatus.CANCELLED
    assert_process_gone(int((pid_dir / "stubborn").read_text()))


@pytest.mark.asyncio
async def test_spawn_failure_fails_the_job_and_frees_the_slot(start_orchestrator, tmp_path):
    orchestrator, events = await start_orchestrator(
        yt_dlp_path=tmp_path / "missing-yt-dlp", max_concurrent_downloads=1
    )
    first = await orchestrator.submit("https://example.com/a")
    second = await orchestrator.submit("https://example.com/b")
    jobs = await asyncio.wait_for(
        asyncio.gather(orchestrator.wait_for(first), orchestrator.wait_for(second)), timeout=5
    )

    assert [job.status for job in jobs] == [JobStatus.FAILED, JobStatus.FAILED]
    assert all(job.error for job in jobs)
    assert statuses(events, first) == [JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.FAILED]


@pytest.mark.asyncio
async def test_failed_download_records_diagnostic(start_orchestrator):
    orchestrator, _ = await start_orchestrator()
    job_id = await orchestrator.submit("https://example.com/fail")
    job = await asyncio.wait_for(orchestrator.wait_for(job_id), timeout=10)

    assert job.status is JobStatus.FAILED
    assert "Unsupported URL" in job.error
    assert job.output_path is None


@pytest.mark.asyncio
async def test_noisy_output_still_completes(start_orchestrator):
    orchestrator, events = await start_orchestrator()
    job_id = await orchestrator.submit("https://example.com/noisy?seconds=0.1")
    job = await asyncio.wait_for(orchestrator.wait_for(job_id), timeout=10)

    assert job.status is JobStatus.COMPLETED
    percents = [e.job.progress.percent for e in events if e.kind is EventKind.PROGRESS]
    assert 100.0 in percents


@pytest.mark.asyncio
async def test_job_timeout_cancels_the_download(start_orchestrator):
    orchestrator, _ = await start_orchestrator(job_timeout=0.5)
    job_id = await orchestrator.submit("https://example.com/slow")
    job = await asyncio.wait_for(orchestrator.wait_for(job_id), timeout=10)

    assert job.status is JobStatus.CANCELLED
    assert job.error is None


@pytest.mark.asyncio
async def test_cancel_of_finished_jobs(start_orchestrator):
    orchestrator, _ = await start_orchestrator()
    done = await orchestrator.submit("https://example.com/done?seconds=0.05")
    await asyncio.wait_for(orchestrator.wait_for(done), timeout=10)
    with pytest.raises(AlreadyTerminalError):
        await orchestrator.cancel(done)

    stopped = await orchestrator.submit("https://example.com/slow")
    first = await orchestrator.cancel(stopped)
    second = await orchestrator.cancel(stopped)
    assert first.status is second.status is JobStatus.CANCELLED
    assert first.revision == second.revision

    with pytest.raises(JobNotFoundError):
        await orchestrator.cancel("no-such-job")


@pytest.mark.asyncio
async def test_cancel_after_completion_but_before_slot_release(tmp_path):
    registry = JobRegistry()
    scheduler = DownloadScheduler(registry, ProcessRunner(None, tmp_path), max_concurrent=1)
    job_id = await registry.create("https://example.com/a")
    await registry.update(job_id, status=JobStatus.RUNNING)
    await registry.update(job_id, status=JobStatus.COMPLETED, output_path=Path("/out/a.mp4"))
    # The job is finished but its task has not released the slot yet.
    scheduler._active[job_id] = _ActiveJob(job_id)

    with pytest.raises(AlreadyTerminalError):
        await scheduler.cancel(job_id)
    assert not scheduler._active[job_id].cancel_event.is_set()


@pytest.mark.asyncio
async def test_retry_resubmits_failed_jobs(start_orchestrator):
    orchestrator, _ = await start_orchestrator()
    failed = await orchestrator.submit("https://example.com/fail", {"download_type": "audio"})
    await asyncio.wait_for(orchestrator.wait_for(failed), timeout=10)

    retried = await orchestrator.retry(failed)
    assert retried != failed
    new_job = orchestrator.get_status(retried)
    assert new_job.source_url == "https://example.com/fail"
    assert new_job.options.download_type == "audio"
    await asyncio.wait_for(orchestrator.wait_for(retried), timeout=10)

    done = await orchestrator.submit("https://example.com/fine?seconds=0.05")
    await asyncio.wait_for(orchestrator.wait_for(done), timeout=10)
    with pytest.raises(InvalidTransitionError):
        await orchestrator.retry(done)


@pytest.mark.asyncio
async def test_raising_the_limit_admits_waiting_jobs(start_orchestrator):
    orchestrator, _ = await start_orchestrator(max_concurrent_downloads=1)
    blocker = await orchestrator.submit("https://example.com/slow")
    waiting = await orchestrator.submit("https://example.com/next?seconds=0.05")
    await wait_until(lambda: orchestrator.get_status(blocker).status is JobStatus.RUNNING)
    await asyncio.sleep(0.2)
    assert orchestrator.get_status(waiting).status is JobStatus.QUEUED

    assert orchestrator.set_concurrency(2) == 2
    job = await asyncio.wait_for(orchestrator.wait_for(waiting), timeout=10)

    assert job.status is JobStatus.COMPLETED
    assert orchestrator.get_status(blocker).status is JobStatus.RUNNING
    assert orchestrator.info()["max_concurrent_downloads"] == 2
    assert orchestrator.config.max_concurrent_downloads == 2


@pytest.mark.parametrize("value", [0, 21, "3", True, None, 2.5])
def test_invalid_concurrency_limits_are_rejected(settings, value):
    orchestrator = DownloadOrchestrator(settings)
    with pytest.raises(InvalidRequestError):
        orchestrator.set_concurrency(value)
    assert orchestrator.scheduler.max_concurrent == settings.max_concurrent_downloads


@pytest.mark.asyncio
async def test_stop_cancels_queued_and_running_jobs(start_orchestrator, pid_dir):
    orchestrator, _ = await start_orchestrator(max_concurrent_downloads=1)
    running = await orchestrator.submit("https://example.com/slow")
    queued = await orchestrator.submit("https://example.com/later")
    await wait_until((pid_dir / "slow").exists)

    await asyncio.wait_for(orchestrator.stop(), timeout=10)

    assert orchestrator.get_status(running).status is JobStatus.CANCELLED
    assert orchestrator.get_status(queued).status is JobStatus.CANCELLED
    assert_process_gone(int((pid_dir / "slow").read_text()))


@pytest.mark.asyncio
async def test_submit_after_stop_is_rejected(start_orchestrator):
    orchestrator, _ = await start_orchestrator()
    await orchestrator.stop()

    with pytest.raises(SchedulerStoppedError):
        await orchestrator.submit("https://example.com/too-late")
    assert list(orchestrator.list_jobs()) == []


@pytest.mark.asyncio
async def test_evict_and_clear_finished(start_orchestrator):
    orchestrator, events = await start_orchestrator()
    active = await orchestrator.submit("https://example.com/slow")
    done = await orchestrator.submit("https://example.com/kept?seconds=0.05")
    failed = await orchestrator.submit("https://example.com/fail")
    await asyncio.wait_for(
        asyncio.gather(orchestrator.wait_for(done), orchestrator.wait_for(failed)), timeout=10
    )
    with pytest.raises(InvalidTransitionError):
        await orchestrator.evict(active)

    await orchestrator.evict(done)
    with pytest.raises(JobNotFoundError):
        orchestrator.get_status(done)

    removed = await orchestrator.clear_finished()
    assert removed == [failed]
    assert [job.id for job in orchestrator.list_jobs()] == [active]
    assert any(e.kind is EventKind.REMOVED and e.job_id == done for e in events)


@pytest.mark.asyncio
async def test_stats_and_slots(start_orchestrator):
    orchestrator, _ = await start_orchestrator(max_concurrent_downloads=1)
    running = await orchestrator.submit("https://example.com/slow")
    await orchestrator.submit("https://example.com/waiting")
    await wait_until(lambda: orchestrator.get_status(running).status is JobStatus.RUNNING)

    assert orchestrator.stats() == {'queued': 1, 'running': 1, 'completed': 0, 'failed': 0, 'cancelled': 0}
    assert orchestrator.info()["slots"] == {'running': 1, 'queued': 1}


@pytest.mark.asyncio
async def test_job_event_stream_is_seeded_and_ends(start_orchestrator):
    orchestrator, _ = await start_orchestrator()
    job_id = await orchestrator.submit("https://example.com/streamed?seconds=0.1")
    received = []
    async with orchestrator.stream_events(job_id) as subscription:
        async for event in subscription:
            received.append(event)
    with pytest.raises(JobNotFoundError):
        orchestrator.stream_events("missing")

    assert received[0].kind is EventKind.SNAPSHOT
    assert received[-1].job.status is JobStatus.COMPLETED
    revisions = [event.job.revision for event in received]
    assert revisions == sorted(revisions)


@pytest.mark.asyncio
async def test_start_removes_stale_partial_files(start_orchestrator, settings):
    settings.temp_dir.mkdir(parents=True)
    (settings.temp_dir / "video.mp4.part").write_bytes(b"partial")
    (settings.temp_dir / "keep.txt").write_text("keep")

    await start_orchestrator()

    assert not (settings.temp_dir / "video.mp4.part").exists()
    assert (settings.temp_dir / "keep.txt").exists()
