"""Browser front end and job orchestrator for yt-dlp downloads."""

from ._version import __version__

__all__ = ["__version__"]
