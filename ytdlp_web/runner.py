"""Runs a single yt-dlp process and turns its output into progress events."""
import asyncio
import enum
import os
import re
import sys
import signal
import logging
import subprocess
from collections import deque
from dataclasses import dataclass, replace
from pathlib import Path
from typing import AsyncIterator, Deque, List, Optional, Union

from .constants import (
    SUBPROCESS_CREATION_FLAGS, PROGRESS_PREFIX, TITLE_PREFIX, FILEPATH_PREFIX, FIELD_SEPARATOR,
    PROGRESS_TEMPLATE, TITLE_TEMPLATE, FILEPATH_TEMPLATE, STAGE_LABELS
)
from .exceptions import SpawnError, ProcessFailedError
from .jobs import DownloadJob, Progress

# Lines longer than this are skipped rather than buffered.
STREAM_LIMIT = 1024 * 1024


class Outcome(str, enum.Enum):
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


@dataclass(frozen=True)
class ProgressEvent:
    progress: Progress


@dataclass(frozen=True)
class TitleEvent:
    title: str


@dataclass(frozen=True)
class ExitEvent:
    outcome: Outcome
    return_code: Optional[int] = None
    output_path: Optional[Path] = None
    error: Optional[str] = None


RunnerEvent = Union[ProgressEvent, TitleEvent, ExitEvent]


_SIZE_UNITS = {
    'B': 1, 'KIB': 1024, 'MIB': 1024 ** 2, 'GIB': 1024 ** 3, 'TIB': 1024 ** 4,
    'KB': 1000, 'MB': 1000 ** 2, 'GB': 1000 ** 3, 'TB': 1000 ** 4,
}
_ANSI_ESCAPE = re.compile(r'\x1b\[[0-9;]*[A-Za-z]')
_CLASSIC_PROGRESS = re.compile(
    r'^\[download\]\s+(?P<percent>\d+(?:\.\d+)?)%'
    r'(?:\s+of\s+~?\s*(?P<total>[\d.]+\s*[KMGT]?i?B))?'
    r'(?:\s+at\s+(?P<speed>[\d.]+\s*[KMGT]?i?B)/s)?'
    r'(?:\s+ETA\s+(?P<eta>[\d:]+))?'
)
_DESTINATION_PATTERNS = [
    re.compile(r'^\[download\] Destination: (?P<path>.+)$'),
    re.compile(r'^\[download\] (?P<path>.+) has already been downloaded'),
    re.compile(r'^\[Merger\] Merging formats into "(?P<path>.+)"$'),
    re.compile(r'^\[ExtractAudio\] Destination: (?P<path>.+)$'),
    re.compile(r'^\[VideoConvertor\] Converting video from \S+ to \S+; Destination: (?P<path>.+)$'),
    re.compile(r'^\[VideoRemuxer\] Remuxing video from \S+ to \S+; Destination: (?P<path>.+)$'),
]
_TAG = re.compile(r'^\[(\w+)\]')


def _parse_number(value: str) -> Optional[float]:
    value = value.strip()
    if not value or value.upper() in {'NA', 'NONE', 'N/A'}:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _parse_int(value: str) -> Optional[int]:
    number = _parse_number(value)
    return int(number) if number is not None else None


def _parse_size(value: Optional[str]) -> Optional[int]:
    """Converts a size such as '10.50MiB' into bytes."""
    if not value:
        return None
    match = re.match(r'^([\d.]+)\s*([KMGT]?i?B)$', value.strip(), re.IGNORECASE)
    if not match:
        return None
    try:
        return int(float(match.group(1)) * _SIZE_UNITS[match.group(2).upper()])
    except (ValueError, KeyError):
        return None


def _parse_eta(value: Optional[str]) -> Optional[int]:
    """Converts an ETA of the form [[HH:]MM:]SS into seconds."""
    if not value:
        return None
    seconds = 0
    try:
        for part in value.split(':'):
            seconds = seconds * 60 + int(part)
    except ValueError:
        return None
    return seconds


class OutputParser:
    """
    Best-effort parser for yt-dlp's combined output.

    The grammar of yt-dlp's output is not a stable contract, so any line that
    does not match a known pattern is ignored.
    """
    def __init__(self):
        self.progress = Progress()
        self.output_path: Optional[Path] = None
        self.fallback_path: Optional[Path] = None
        self.title: Optional[str] = None
        self.error_message: Optional[str] = None

    @property
    def resolved_path(self) -> Optional[Path]:
        return self.output_path or self.fallback_path

    def feed(self, line: str) -> List[RunnerEvent]:
        """Parses one line and returns the events it produced, if any."""
        line = _ANSI_ESCAPE.sub('', line).strip()
        if not line:
            return []

        if line.startswith(PROGRESS_PREFIX):
            return self._parse_progress_template(line[len(PROGRESS_PREFIX):])
        if line.startswith(TITLE_PREFIX):
            title = line[len(TITLE_PREFIX):].strip()
            if title and title != 'NA' and title != self.title:
                self.title = title
                return [TitleEvent(title)]
            return []
        if line.startswith(FILEPATH_PREFIX):
            path = line[len(FILEPATH_PREFIX):].strip()
            if path and path != 'NA':
                self.output_path = Path(path)
            return []
        if line.startswith('ERROR:'):
            self.error_message = line[6:].strip()
            return []

        for pattern in _DESTINATION_PATTERNS:
            if dest_match := pattern.match(line):
                self.fallback_path = Path(dest_match.group('path').strip())
                break

        if progress_match := _CLASSIC_PROGRESS.match(line):
            return self._emit(Progress(
                percent=float(progress_match.group('percent')),
                downloaded_bytes=None,
                total_bytes=_parse_size(progress_match.group('total')),
                speed=_parse_size(progress_match.group('speed')),
                eta=_parse_eta(progress_match.group('eta')),
                stage='Downloading',
            ))

        if tag_match := _TAG.match(line):
            stage = STAGE_LABELS.get(tag_match.group(1).lower())
            if stage and stage != self.progress.stage:
                return self._emit(replace(self.progress, stage=stage))
        return []

    def _parse_progress_template(self, payload: str) -> List[RunnerEvent]:
        fields = payload.split(FIELD_SEPARATOR)
        if len(fields) != 6:
            return []
        status, percent_str, downloaded, total, speed, eta = fields

        downloaded_bytes = _parse_int(downloaded)
        total_bytes = _parse_int(total)
        percent = _parse_number(percent_str.strip().rstrip('%'))
        if percent is None and downloaded_bytes is not None and total_bytes:
            percent = downloaded_bytes * 100.0 / total_bytes
        if status.strip() == 'finished':
            percent = 100.0
        if percent is None and downloaded_bytes is None:
            return []

        return self._emit(Progress(
            percent=round(percent, 1) if percent is not None else None,
            downloaded_bytes=downloaded_bytes,
            total_bytes=total_bytes,
            speed=_parse_number(speed),
            eta=_parse_int(eta),
            stage='Downloading',
        ))

    def _emit(self, progress: Progress) -> List[RunnerEvent]:
        self.progress = progress
        return [ProgressEvent(progress)]


class ProcessRunner:
    """Launches yt-dlp for one job at a time and reports what it does."""
    def __init__(
        self,
        yt_dlp_path: Optional[Path],
        output_dir: Path,
        temp_dir: Optional[Path] = None,
        ffmpeg_path: Optional[Path] = None,
        grace_period: float = 10.0,
        diagnostic_lines: int = 20,
    ):
        """
        Initializes the ProcessRunner.

        Args:
            yt_dlp_path: The path to the yt-dlp executable.
            output_dir: The directory finished files are written to.
            temp_dir: The directory for partial downloads.
            ffmpeg_path: The path to the ffmpeg executable, if known.
            grace_period: Seconds to wait after interrupting before killing.
            diagnostic_lines: How many trailing output lines to keep for errors.
        """
        self.yt_dlp_path = yt_dlp_path
        self.output_dir = output_dir
        self.temp_dir = temp_dir
        self.ffmpeg_path = ffmpeg_path
        self.grace_period = grace_period
        self.diagnostic_lines = diagnostic_lines
        self.logger = logging.getLogger(__name__)

    def build_command(self, job: DownloadJob) -> List[str]:
        """Builds the full yt-dlp command list based on a DownloadJob."""
        if not self.yt_dlp_path:
            raise SpawnError("yt-dlp executable is not configured.")
        options = job.options
        command = [
            str(self.yt_dlp_path), '--newline', '--progress', '--no-colors', '--no-simulate', '--no-mtime',
            '--progress-template', PROGRESS_TEMPLATE,
            '--print', TITLE_TEMPLATE, '--print', FILEPATH_TEMPLATE,
            '-P', f'home:{self.output_dir}',
        ]
        if self.temp_dir:
            command.extend(['-P', f'temp:{self.temp_dir}'])
        command.extend(['-o', options.filename_template])
        if self.ffmpeg_path:
            command.extend(['--ffmpeg-location', str(self.ffmpeg_path.parent)])
        if options.no_playlist:
            command.append('--no-playlist')

        if options.download_type == 'video':
            res = options.video_resolution
            if res != 'best':
                command.extend(['-f', f'bestvideo[height<={res}]+bestaudio/best[height<={res}]/best'])
            if options.format_sort:
                command.extend(['-S', options.format_sort])
            if options.recode_video:
                command.extend(['--recode-video', options.recode_video])
        else:
            command.extend(['-f', 'bestaudio/best', '-x'])
            if options.audio_format != 'best':
                command.extend(['--audio-format', options.audio_format])
                if options.audio_format == 'mp3':
                    command.extend(['--audio-quality', '192K'])

        if options.embed_thumbnail:
            command.append('--embed-thumbnail')
        if options.embed_metadata:
            command.append('--embed-metadata')
        command.extend(['--', job.source_url])
        return command

    async def run(self, job: DownloadJob, cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[RunnerEvent]:
        """
        Executes yt-dlp for a job and yields the events parsed from its output.

        The sequence always ends with exactly one ExitEvent. Setting
        `cancel_event` interrupts the process, kills it after the grace
        period, and ends the sequence with a cancelled ExitEvent.
        """
        try:
            command = self.build_command(job)
            process = await self._spawn(command)
        except SpawnError as e:
            self.logger.error(f"[{job.id}] {e}")
            yield ExitEvent(Outcome.FAILED, error=str(e))
            return

        self.logger.info(f"[{job.id}] Started yt-dlp (PID: {process.pid}) for {job.source_url}")
        parser = OutputParser()
        tail: Deque[str] = deque(maxlen=self.diagnostic_lines)
        watcher: Optional[asyncio.Task] = None
        if cancel_event is not None:
            watcher = asyncio.create_task(self._watch_for_cancel(process, cancel_event))

        try:
            assert process.stdout is not None
            while True:
                try:
                    line_bytes = await process.stdout.readline()
                except ValueError:
                    self.logger.debug(f"[{job.id}] Skipped an over-long output line.")
                    continue
                if not line_bytes:
                    break
                for clean_line in line_bytes.decode('utf-8', 'replace').split('\r'):
                    clean_line = clean_line.strip()
                    if not clean_line:
                        continue
                    tail.append(clean_line)
                    self.logger.debug(f"[{job.id}] {clean_line}")
                    for event in parser.feed(clean_line):
                        yield event

            return_code = await process.wait()
            signalled = False
            if watcher is not None and cancel_event.is_set():
                signalled = await watcher
            exit_event = self._exit_event(job, return_code, signalled, parser, tail)
        finally:
            if watcher is not None and not watcher.done():
                watcher.cancel()
                await asyncio.gather(watcher, return_exceptions=True)
            await self._ensure_reaped(process)

        yield exit_event

    def _exit_event(self, job: DownloadJob, return_code: int, signalled: bool,
                    parser: OutputParser, tail: Deque[str]) -> ExitEvent:
        if signalled:
            self.logger.info(f"[{job.id}] yt-dlp terminated on request (exit status {return_code}).")
            return ExitEvent(Outcome.CANCELLED, return_code=return_code)

        diagnostic = '\n'.join(tail)
        if parser.error_message and parser.error_message not in diagnostic:
            diagnostic = f"ERROR: {parser.error_message}\n{diagnostic}"

        if return_code == 0:
            output_path = parser.resolved_path
            if output_path is None:
                error = "yt-dlp finished without reporting an output file."
                if diagnostic:
                    error = f"{error}\n{diagnostic}"
                return ExitEvent(Outcome.FAILED, return_code=0, error=error)
            if not output_path.is_absolute():
                output_path = self.output_dir / output_path
            return ExitEvent(Outcome.COMPLETED, return_code=0, output_path=output_path)

        failure = ProcessFailedError(return_code, diagnostic)
        self.logger.warning(f"[{job.id}] yt-dlp failed with status {return_code}: {parser.error_message or 'no error message'}")
        return ExitEvent(Outcome.FAILED, return_code=return_code, error=str(failure))

    async def _spawn(self, command: List[str]) -> asyncio.subprocess.Process:
        """Starts yt-dlp in its own process group with stderr folded into stdout."""
        kwargs = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs['preexec_fn'] = os.setsid

        try:
            return await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=STREAM_LIMIT,
                **kwargs
            )
        except FileNotFoundError as e:
            raise SpawnError(f"yt-dlp executable not found at: {command[0]}") from e
        except PermissionError as e:
            raise SpawnError(f"yt-dlp executable is not runnable: {command[0]} ({e})") from e
        except OSError as e:
            raise SpawnError(f"OS error starting yt-dlp: {e}") from e

    async def _watch_for_cancel(self, process: asyncio.subprocess.Process, cancel_event: asyncio.Event) -> bool:
        """Waits for a cancellation request, then terminates the process."""
        await cancel_event.wait()
        if process.returncode is not None:
            return False
        await self.terminate(process)
        return True

    async def terminate(self, process: asyncio.subprocess.Process):
        """Interrupts the process group, escalating to a kill after the grace period."""
        if process.returncode is not None:
            return
        self.logger.info(f"Terminating yt-dlp (PID: {process.pid})...")
        try:
            if sys.platform == 'win32':
                process.send_signal(signal.CTRL_C_EVENT)
            else:
                os.killpg(process.pid, signal.SIGINT)
            await asyncio.wait_for(process.wait(), timeout=self.grace_period)
        except (asyncio.TimeoutError, ProcessLookupError, OSError) as e:
            self.logger.warning(f"Graceful shutdown of PID {process.pid} failed: {e!r}. Forcing termination...")
            self._kill(process)
            await process.wait()

    async def _ensure_reaped(self, process: asyncio.subprocess.Process):
        if process.returncode is None:
            self.logger.warning(f"Killing leftover yt-dlp process (PID: {process.pid}).")
            self._kill(process)
            await process.wait()

    def _kill(self, process: asyncio.subprocess.Process):
        try:
            if sys.platform == 'win32':
                process.kill()
            else:
                os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, OSError):
            pass  # Already gone
