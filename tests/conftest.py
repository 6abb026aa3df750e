import asyncio
import stat
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from ytdlp_web.config import Settings
from ytdlp_web.controller import DownloadOrchestrator
from ytdlp_web.web import create_app

FAKE_SCRIPT = Path(__file__).resolve().parent / "fake_yt_dlp.py"


@pytest.fixture
def fake_yt_dlp(tmp_path) -> Path:
    """An executable wrapper that runs the fake yt-dlp with this interpreter."""
    wrapper = tmp_path / "yt-dlp"
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_SCRIPT}" "$@"\n')
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return wrapper


@pytest.fixture
def pid_dir(tmp_path, monkeypatch) -> Path:
    directory = tmp_path / "pids"
    directory.mkdir()
    monkeypatch.setenv("FAKE_YTDLP_PIDDIR", str(directory))
    return directory


@pytest.fixture
def settings(tmp_path, fake_yt_dlp) -> Settings:
    return Settings(
        output_dir=tmp_path / "out",
        temp_dir=tmp_path / "tmp",
        yt_dlp_path=fake_yt_dlp,
        ffmpeg_path=tmp_path / "no-ffmpeg",
        cancel_grace_period=1.0,
        max_concurrent_downloads=2,
    )


@pytest_asyncio.fixture
async def start_orchestrator(settings):
    """
    Starts orchestrators built from the test settings plus overrides.

    Each call returns the running orchestrator and a list that records every
    job event it publishes. All of them are stopped at teardown.
    """
    started = []

    async def start(**overrides):
        orchestrator = DownloadOrchestrator(settings.model_copy(update=overrides))
        events = []
        publish = orchestrator.registry.event_callback

        async def record(event):
            events.append(event)
            await publish(event)

        orchestrator.registry.event_callback = record
        await orchestrator.start()
        started.append(orchestrator)
        return orchestrator, events

    yield start
    for orchestrator in started:
        await orchestrator.stop()


@pytest_asyncio.fixture
async def client(settings):
    """A test client for an application that starts and stops its own orchestrator."""
    async with TestClient(TestServer(create_app(DownloadOrchestrator(settings)))) as test_client:
        yield test_client


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02):
    """Polls `predicate` until it returns a truthy value or the timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
