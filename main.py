"""
Main entry point for the ytdlp-web service.

This script loads the configuration, sets up logging, builds the download
orchestrator and serves the web application until interrupted.
"""

import sys
import logging
import asyncio
from types import TracebackType
from typing import Type

from aiohttp import web

from ytdlp_web.config import ConfigManager
from ytdlp_web.constants import CONFIG_FILE
from ytdlp_web.controller import DownloadOrchestrator
from ytdlp_web.logging_config import setup_logging
from ytdlp_web.web import create_app


def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))


def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


async def install_async_exception_handler(app: web.Application):
    asyncio.get_running_loop().set_exception_handler(handle_async_exception)


def main():
    """
    Main entry point for the service.
    """
    # 1. Load configuration before setting up logging
    config_manager = ConfigManager(CONFIG_FILE)
    config = config_manager.load()

    # 2. Use the configured log level
    setup_logging(config.log_level)

    # 3. Set up global exception handlers
    sys.excepthook = handle_exception

    # 4. Create the orchestrator, which holds all job logic
    orchestrator = DownloadOrchestrator(config)

    # 5. Create and run the web application
    app = create_app(orchestrator)
    app.on_startup.insert(0, install_async_exception_handler)

    logging.info(f"Listening on {config.host}:{config.port}")
    web.run_app(app, host=config.host, port=config.port, print=None)


if __name__ == "__main__":
    main()
