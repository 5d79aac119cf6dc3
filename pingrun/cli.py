"""
pingrun command line entry point.
"""

from __future__ import annotations

import logging
import platform
import signal
import sys
from pathlib import Path
from typing import Callable, List, Optional

from pingrun import __version__
from pingrun.client import APIClient
from pingrun.config import Settings, resolve_settings
from pingrun.errors import PingrunError
from pingrun.lock import InstanceLock
from pingrun.runner import Runner, Scheduler

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

logger = logging.getLogger("pingrun")


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    # stdout belongs to the supervised command, our own log goes to stderr.
    if logger.handlers:
        return logger
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    if log_file is not None:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


def user_agent() -> str:
    system = platform.system().lower() or "unknown"
    machine = platform.machine().lower() or "unknown"
    return f"pingrun/{__version__} ({system}-{machine})"


def build_client(settings: Settings) -> APIClient:
    return APIClient(
        base_url=settings.api_url,
        retries=settings.api_retries,
        timeout=settings.api_timeout,
        backoff=settings.api_backoff,
        user_agent=user_agent(),
        headers=settings.req_headers,
    )


def build_task(settings: Settings, runner: Runner) -> Callable[[], int]:
    if not settings.single_instance:
        return runner.run

    def task() -> int:
        return runner.run_exclusive(InstanceLock(settings.command))

    return task


def install_run_now_handler(scheduler: Scheduler) -> None:
    if not hasattr(signal, "SIGALRM"):
        logger.warning("SIGALRM is not available; run-now requests are disabled.")
        return
    signal.signal(signal.SIGALRM, lambda signum, frame: scheduler.trigger())


def main(argv: Optional[List[str]] = None) -> int:
    try:
        settings = resolve_settings(argv)
    except PingrunError as exc:
        setup_logging()
        logger.error(str(exc))
        return EXIT_CONFIG_ERROR

    setup_logging(settings.log_file, settings.verbose)
    client = build_client(settings)
    try:
        runner = Runner(settings.command, settings.run, settings.handle, client)
        task = build_task(settings, runner)

        # One-shot mode exits with the command's exit code.
        if not settings.periodic:
            return task()

        scheduler = Scheduler(task, every=settings.every, schedule=settings.schedule)
        install_run_now_handler(scheduler)
        if settings.schedule is not None:
            logger.info('Running %s on cron schedule "%s"', settings.command[0], settings.schedule.expression)
        else:
            logger.info("Running %s every %ss", settings.command[0], settings.every)
        scheduler.run_forever()
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        return EXIT_INTERRUPTED
    except PingrunError as exc:
        logger.error(str(exc))
        return 1
    finally:
        client.close()


if __name__ == "__main__":
    raise SystemExit(main())
