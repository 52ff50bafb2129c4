"""
Main entry point for the SubOverlay application.

This script initializes the configuration, sets up logging, starts the overlay
server, optionally downloads the URLs given on the command line, and then
serves the overlay until interrupted.
"""

import argparse
import sys
import logging
import asyncio
from types import TracebackType
from typing import List, Type

from suboverlay.logging_config import setup_logging
from suboverlay.config import ConfigStore
from suboverlay.constants import CONFIG_FILE
from suboverlay.controller import AppController
from suboverlay.exceptions import SubOverlayError
from suboverlay.jobs import JobEvent

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


def parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog='suboverlay', description="Subtitle overlay server with yt-dlp downloads.")
    parser.add_argument('urls', nargs='*', help="URLs to download into the video cache on startup.")
    parser.add_argument('--audio', action='store_true', help="Download audio only.")
    parser.add_argument('--subs', action='store_true', help="Also fetch subtitles for each video.")
    parser.add_argument('--port', type=int, default=None, help="Overlay port (defaults to the configured one).")
    return parser.parse_args(argv)


async def run(controller: AppController, args: argparse.Namespace):
    """Starts the services, queues the requested downloads and serves until cancelled."""
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(handle_async_exception)

    async def print_event(event: JobEvent):
        if event.type in ('done', 'error'):
            print(event.to_payload(), flush=True)
    controller.add_listener(print_event)

    await controller.run_startup_checks()
    try:
        await controller.overlay.start(args.port)
        for url in args.urls:
            if args.audio:
                job_id = await controller.download_audio(url)
            else:
                job_id = await controller.download_video(url, with_subtitles=args.subs)
            logging.info(f"Queued {url} as {job_id}")
        await asyncio.Event().wait()
    except SubOverlayError as e:
        logging.error(str(e))
    finally:
        await controller.shutdown()


if __name__ == "__main__":
    """
    Main entry point for the application.
    """
    args = parse_args(sys.argv[1:])

    # 1. Load configuration before setting up logging
    config_store = ConfigStore.open(CONFIG_FILE)

    # 2. Use the configured log level for file logging
    setup_logging(file_log_level_str=config_store.get('log_level'))

    # 3. Set up global exception handlers
    sys.excepthook = handle_exception

    # 4. Create the Controller, which holds all business logic
    controller = AppController(config_store)

    try:
        asyncio.run(run(controller, args))
    except KeyboardInterrupt:
        logging.info("Application interrupted by user.")
