"""
Run orchestration: one supervised run, and the loop that repeats it.
"""

from __future__ import annotations

import enum
import logging
import queue
import sys
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional, Sequence, Union

from pingrun.client import PingParams, PingType
from pingrun.cron import Schedule
from pingrun.errors import ConfigError, ReportError
from pingrun.executor import CommandExecutor, ExecResult, TeeWriter
from pingrun.lock import InstanceLock
from pingrun.ringbuffer import CaptureBuffer, UnboundedBuffer

NAME = "pingrun"
DEFAULT_PING_BODY_LIMIT = 10_000
# Ceiling for a server supplied limit, CaptureBuffer grows up to it.
MAX_NEGOTIATED_PING_BODY_LIMIT = 10_000_000

logger = logging.getLogger("pingrun")

PingBody = Union[CaptureBuffer, UnboundedBuffer]


@dataclass
class RunConfig:
    quiet: bool = False
    silent: bool = False
    no_start_ping: bool = False
    no_output_in_ping: bool = False
    no_run_id: bool = False
    create: bool = False
    ping_body_limit: int = DEFAULT_PING_BODY_LIMIT
    ping_body_limit_is_explicit: bool = False
    on_success: PingType = PingType.SUCCESS
    on_nonzero_exit: PingType = PingType.EXIT_CODE
    on_exec_fail: PingType = PingType.FAIL


class RunState(enum.Enum):
    NOT_STARTED = "not-started"
    RUNNING = "running"
    CLASSIFIED = "classified"
    REPORTED = "reported"


class OutcomeKind(enum.Enum):
    SUCCESS = "success"
    NONZERO_EXIT = "nonzero-exit"
    EXECUTION_FAILURE = "execution-failure"


@dataclass(frozen=True)
class RunOutcome:
    kind: OutcomeKind
    exit_code: int
    message: Optional[str] = None


def classify(result: ExecResult) -> RunOutcome:
    error = result.error
    if error is not None:
        return RunOutcome(kind=OutcomeKind.EXECUTION_FAILURE, exit_code=1, message=error)
    if result.exit_code == 0:
        return RunOutcome(kind=OutcomeKind.SUCCESS, exit_code=0)
    return RunOutcome(kind=OutcomeKind.NONZERO_EXIT, exit_code=result.exit_code)


def reconcile_body_limit(configured: int, explicit: bool, negotiated: Optional[int]) -> int:
    """Merge a server advertised Ping-Body-Limit into the configured limit.

    An explicitly configured limit can only shrink. Otherwise the server value
    replaces the default, up to MAX_NEGOTIATED_PING_BODY_LIMIT.
    """
    if negotiated is None:
        return configured
    if explicit:
        return min(configured, negotiated)
    return min(negotiated, MAX_NEGOTIATED_PING_BODY_LIMIT)


def new_run_id() -> str:
    return str(uuid.uuid4())


class Runner:
    def __init__(
        self,
        command: Sequence[str],
        config: RunConfig,
        handle: str,
        pinger: Any,
        executor: Optional[CommandExecutor] = None,
        stdout: Optional[Any] = None,
        stderr: Optional[Any] = None,
    ) -> None:
        if not command:
            raise ConfigError("Error: missing command.")
        self.command = list(command)
        self.config = config
        self.handle = handle
        self.pinger = pinger
        self.executor = executor or CommandExecutor()
        self._stdout = stdout
        self._stderr = stderr
        self.ping_body_limit = config.ping_body_limit
        self.state = RunState.NOT_STARTED
        self.last_outcome: Optional[RunOutcome] = None

    @property
    def stdout(self) -> Any:
        return self._stdout if self._stdout is not None else sys.stdout.buffer

    @property
    def stderr(self) -> Any:
        return self._stderr if self._stderr is not None else sys.stderr

    def run(self) -> int:
        """Run the command once and report it. Returns the exit code to use.

        That is the command's own exit code, or 1 when it could not be
        executed or was killed by a signal. Reporting failures are logged
        and never change it.
        """
        self.state = RunState.NOT_STARTED
        params = PingParams(
            run_id=None if self.config.no_run_id else new_run_id(),
            create=self.config.create,
        )
        logger.info("Starting %s (rid=%s)", " ".join(self.command), params.run_id or "-")

        if not self.config.no_start_ping:
            self._ping_start(params)

        body = self.allocate_body()
        self.state = RunState.RUNNING
        result = self._execute(body)

        outcome = classify(result)
        self._annotate(outcome, body)
        self.last_outcome = outcome
        self.state = RunState.CLASSIFIED

        ping = self.select_ping(outcome)
        self._report(ping, params, outcome.exit_code, body)
        self.state = RunState.REPORTED
        logger.info("Finished %s with exit code %s (%s)", self.command[0], outcome.exit_code, outcome.kind.value)
        return outcome.exit_code

    def run_exclusive(self, lock: InstanceLock) -> int:
        """Run only if no other process is running the same command."""
        if not lock.acquire():
            logger.warning("Skipping run of %s: another instance holds the lock.", self.command[0])
            return 0
        try:
            return self.run()
        finally:
            lock.release()

    def allocate_body(self) -> PingBody:
        if self.ping_body_limit > 0:
            return CaptureBuffer(self.ping_body_limit)
        return UnboundedBuffer()

    def select_ping(self, outcome: RunOutcome) -> PingType:
        if outcome.kind is OutcomeKind.SUCCESS:
            return self.config.on_success
        if outcome.kind is OutcomeKind.NONZERO_EXIT:
            return self.config.on_nonzero_exit
        return self.config.on_exec_fail

    def _ping_start(self, params: PingParams) -> None:
        try:
            instance = self.pinger.ping_start(self.handle, params)
        except ReportError as exc:
            logger.error("Ping(start): %s", exc)
            return
        limit = reconcile_body_limit(
            self.ping_body_limit,
            self.config.ping_body_limit_is_explicit,
            instance.ping_body_limit,
        )
        if limit != self.ping_body_limit:
            logger.info("Ping body limit set to %s bytes (instance limit %s).", limit, instance.ping_body_limit)
        self.ping_body_limit = limit

    def _execute(self, body: PingBody) -> ExecResult:
        # stdout and stderr share this one writer so their relative order
        # survives in the ping body.
        sink = TeeWriter(self.stdout, None if self.config.no_output_in_ping else body)
        cmd_stdout = None if (self.config.quiet or self.config.silent) else sink
        cmd_stderr = None if self.config.silent else sink
        return self.executor.execute(self.command, cmd_stdout, cmd_stderr)

    def _annotate(self, outcome: RunOutcome, body: PingBody) -> None:
        if outcome.kind is OutcomeKind.NONZERO_EXIT:
            body.write(f"\n[{NAME}] Command exited with code {outcome.exit_code}".encode("utf-8"))
        elif outcome.kind is OutcomeKind.EXECUTION_FAILURE:
            line = f"[{NAME}] {outcome.message}\n"
            self.stderr.write(line)
            self.stderr.flush()
            body.write(line.encode("utf-8"))

        if body.wrapped():
            body.write(f"\n[{NAME}] Output truncated to last {body.cap} bytes.".encode("utf-8"))

    def _report(self, ping: PingType, params: PingParams, exit_code: int, body: PingBody) -> None:
        try:
            if ping is PingType.SUCCESS:
                self.pinger.ping_success(self.handle, params, body)
            elif ping is PingType.FAIL:
                self.pinger.ping_fail(self.handle, params, body)
            elif ping is PingType.LOG:
                self.pinger.ping_log(self.handle, params, body)
            else:
                self.pinger.ping_exit_code(self.handle, params, exit_code, body)
        except ReportError as exc:
            logger.error("Ping(%s): %s", ping.value, exc)


class Scheduler:
    """Repeat `task` at a fixed interval or on a cron schedule.

    trigger() requests an immediate run and restarts the interval countdown.
    It only puts a token on a SimpleQueue, so it is safe to call from a
    signal handler that interrupts the loop mid-wait. Requests made while a
    run is in progress collapse into one pending run that starts as soon as
    the current one finishes.
    """

    def __init__(
        self,
        task: Callable[[], int],
        every: Optional[float] = None,
        schedule: Optional[Schedule] = None,
        now: Callable[[], datetime] = datetime.now,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if (every is None) == (schedule is None):
            raise ConfigError("Error: exactly one of an interval or a cron schedule is required.")
        if every is not None and every <= 0:
            raise ConfigError("Error: interval must be > 0.")
        self.task = task
        self.every = every
        self.schedule = schedule
        self._now = now
        self._clock = clock
        self._wakeups: queue.SimpleQueue = queue.SimpleQueue()
        self._stop = threading.Event()
        self.exit_codes: List[int] = []

    def trigger(self) -> None:
        self._wakeups.put(None)

    def stop(self) -> None:
        self._stop.set()
        self._wakeups.put(None)

    def wait_for_trigger(self, timeout: Optional[float]) -> bool:
        """Block until a run-now request or `timeout`. Consumes every pending request."""
        try:
            self._wakeups.get(timeout=timeout)
        except queue.Empty:
            return False
        while True:
            try:
                self._wakeups.get_nowait()
            except queue.Empty:
                return True

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run_forever(self) -> None:
        self._run_task()
        anchor = self._clock()
        target: Optional[datetime] = None
        last_fire: Optional[datetime] = None

        while not self.stopped:
            if self.every is not None:
                timeout = max(anchor + self.every - self._clock(), 0.0)
            else:
                now = self._now()
                # A wait that returns a hair early must not fire the same minute twice.
                base = now if last_fire is None or now > last_fire else last_fire
                target = self.schedule.next(base)
                timeout = max((target - now).total_seconds(), 0.0)
                logger.debug("Next scheduled run at %s", target.isoformat())

            triggered = self.wait_for_trigger(timeout)
            if self.stopped:
                break
            if triggered:
                anchor = self._clock()
                logger.info("Run requested, running now and resetting the schedule.")
            else:
                anchor = self._next_anchor(anchor)
                last_fire = target
            self._run_task()

    def _next_anchor(self, anchor: float) -> float:
        if self.every is None:
            return anchor
        anchor += self.every
        behind = self._clock() - anchor
        if behind >= self.every:
            # Overran several ticks, fire once and resume the cadence.
            anchor += (behind // self.every) * self.every
        return anchor

    def _run_task(self) -> None:
        self.exit_codes.append(self.task())
