"""Locates the yt-dlp and FFmpeg executables and reports their versions."""
import sys
import shutil
import asyncio
import logging
from pathlib import Path
from typing import Optional, List

from .constants import SUBPROCESS_CREATION_FLAGS


class DependencyLocator:
    """Finds the external tools the downloader relies on."""
    def __init__(self, yt_dlp_path: Optional[Path] = None, ffmpeg_path: Optional[Path] = None):
        """
        Initializes the DependencyLocator.

        Args:
            yt_dlp_path: An explicitly configured yt-dlp path, if any.
            ffmpeg_path: An explicitly configured ffmpeg path, if any.
        """
        self.logger = logging.getLogger(__name__)
        self.configured_yt_dlp = yt_dlp_path
        self.configured_ffmpeg = ffmpeg_path
        self.yt_dlp_path: Optional[Path] = None
        self.ffmpeg_path: Optional[Path] = None

    async def initialize(self):
        """Asynchronously finds paths to dependencies to avoid blocking the event loop."""
        self.logger.info("Initializing dependency paths...")
        self.yt_dlp_path, self.ffmpeg_path = await asyncio.gather(
            asyncio.to_thread(self.find_yt_dlp),
            asyncio.to_thread(self.find_ffmpeg)
        )
        self.logger.info(f"yt-dlp path: {self.yt_dlp_path}")
        self.logger.info(f"FFmpeg path: {self.ffmpeg_path}")

    def find_yt_dlp(self) -> Optional[Path]:
        """Finds the yt-dlp executable."""
        self.yt_dlp_path = self._find_executable('yt-dlp', self.configured_yt_dlp)
        return self.yt_dlp_path

    def find_ffmpeg(self) -> Optional[Path]:
        """Finds the ffmpeg executable."""
        self.ffmpeg_path = self._find_executable('ffmpeg', self.configured_ffmpeg)
        return self.ffmpeg_path

    def _find_executable(self, name: str, configured: Optional[Path]) -> Optional[Path]:
        """Finds an executable, preferring an explicitly configured one."""
        if configured is not None:
            if not configured.exists():
                self.logger.warning(f"Configured {name} path does not exist: {configured}")
            return configured
        path_in_system = shutil.which(name)
        return Path(path_in_system) if path_in_system else None

    async def get_version(self, executable_path: Optional[Path]) -> str:
        """Asynchronously returns the version of an executable by running it with '--version'."""
        if not executable_path or not executable_path.exists():
            return "Not found"
        try:
            command: List[str] = [str(executable_path)]
            if 'ffmpeg' in executable_path.name.lower():
                command.append('-version')
            else:
                command.append('--version')

            kwargs = {'stdout': asyncio.subprocess.PIPE, 'stderr': asyncio.subprocess.PIPE}
            if sys.platform == 'win32':
                kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

            process = await asyncio.create_subprocess_exec(*command, **kwargs)
            try:
                stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=15)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
                return "Version check timed out"

            if process.returncode != 0:
                return "Cannot execute"

            return stdout_bytes.decode('utf-8', 'replace').strip().split('\n')[0]
        except FileNotFoundError:
            return "Not found or no permission"
        except OSError:
            return "Cannot execute"
