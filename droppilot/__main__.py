from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import traceback
import warnings
from logging.handlers import TimedRotatingFileHandler

import truststore


class ParsedArgs(argparse.Namespace):
    _verbose: int
    _debug_gql: bool
    log: bool
    web: bool
    port: int

    @property
    def logging_level(self) -> int:
        from droppilot.config import LOGGING_LEVELS

        return LOGGING_LEVELS[min(self._verbose, 4)]

    @property
    def debug_gql(self) -> int:
        """
        If the debug flag is True, return DEBUG.
        If the main logging level is DEBUG, return INFO to avoid seeing raw responses.
        Otherwise, return NOTSET to inherit the global logging level.
        """
        if self._debug_gql:
            return logging.DEBUG
        elif self._verbose >= 4:
            return logging.INFO
        return logging.NOTSET


def parse_args(argv: list[str] | None = None) -> ParsedArgs:
    from droppilot.version import __version__

    parser = argparse.ArgumentParser(
        prog="droppilot",
        description="Watches live channels to farm timed drops, hands-free.",
    )
    parser.add_argument("--version", action="version", version=f"v{__version__}")
    parser.add_argument("-v", dest="_verbose", action="count", default=0)
    parser.add_argument("--log", action="store_true", help="log to a file in the data directory")
    parser.add_argument("--no-web", dest="web", action="store_false", help="run without web UI")
    parser.add_argument("--port", type=int, default=8080)
    # undocumented debug args
    parser.add_argument(
        "--debug-gql", dest="_debug_gql", action="store_true", help=argparse.SUPPRESS
    )
    return parser.parse_args(argv, namespace=ParsedArgs())


async def main(settings) -> int:
    from droppilot.config import FILE_FORMATTER, LOG_DIR
    from droppilot.core.farmer import DropFarmer
    from droppilot.services import StatsStore
    from droppilot.version import __version__

    logger = logging.getLogger("DropPilot")
    if settings.log:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        log_file = LOG_DIR / "droppilot.log"
        file_handler = TimedRotatingFileHandler(log_file, when="midnight", backupCount=5)
        file_handler.setFormatter(FILE_FORMATTER)
        logger.addHandler(file_handler)
        logger.info(f"Logging to file: {log_file}")
    logging.getLogger("DropPilot.gql").setLevel(settings.debug_gql)

    logger.info(f"=== DropPilot v{__version__} starting ===")
    logger.info(f"Python version: {sys.version}")

    exit_status = 0
    farmer = DropFarmer(settings, stats=StatsStore())

    web_server_task: asyncio.Task[None] | None = None
    if settings.web:
        from droppilot.web import app as webapp

        webapp.set_farmer(farmer)
        logger.info(f"Starting web server on http://0.0.0.0:{settings.port}")
        web_server_task = asyncio.create_task(webapp.run_server(port=settings.port))

    loop = asyncio.get_running_loop()
    if sys.platform == "linux":
        loop.add_signal_handler(signal.SIGINT, lambda *_: farmer.close())
        loop.add_signal_handler(signal.SIGTERM, lambda *_: farmer.close())

    try:
        await farmer.run()
        logger.info("Run loop completed normally")
    except Exception:
        logger.exception("Fatal error encountered during run")
        exit_status = 1
    finally:
        logger.info("=== Starting shutdown sequence ===")
        if sys.platform == "linux":
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGTERM)
        if web_server_task is not None and not web_server_task.done():
            logger.info("Shutting down web server")
            await webapp.shutdown_server()
            try:
                await asyncio.wait_for(web_server_task, timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Web server didn't exit in time, forcing cancellation")
                web_server_task.cancel()
            webapp.set_farmer(None)
        await farmer.shutdown()
    farmer.save(force=True)
    logger.info(f"=== Exiting with status code: {exit_status} ===")
    return exit_status


def cli(argv: list[str] | None = None) -> None:
    truststore.inject_into_ssl()

    from droppilot.config import OUTPUT_FORMATTER
    from droppilot.config.settings import Settings

    warnings.simplefilter("default", ResourceWarning)

    args = parse_args(argv)
    logger = logging.getLogger("DropPilot")
    logger.setLevel(args.logging_level)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(OUTPUT_FORMATTER)
    logger.addHandler(console_handler)

    try:
        settings = Settings(args)
    except Exception:
        logger.exception("Error while loading settings")
        print(f"Settings error: {traceback.format_exc()}", file=sys.stderr)
        sys.exit(4)

    sys.exit(asyncio.run(main(settings)))


if __name__ == "__main__":
    cli()
