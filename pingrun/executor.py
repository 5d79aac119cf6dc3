"""
Child process execution with output redirected to caller supplied writers.
"""

from __future__ import annotations

import logging
import signal
import subprocess
from dataclasses import dataclass
from typing import Any, BinaryIO, List, Optional, Sequence

from pingrun.errors import SpawnError

logger = logging.getLogger("pingrun")

DEFAULT_CHUNK_SIZE = 64 * 1024
MAX_REPORTABLE_EXIT_CODE = 255


class TeeWriter:
    """Fan one byte stream out to several binary writers."""

    def __init__(self, *targets: Any) -> None:
        self.targets: List[Any] = [target for target in targets if target is not None]

    def write(self, data: bytes) -> int:
        for target in list(self.targets):
            try:
                target.write(data)
                flush = getattr(target, "flush", None)
                if flush is not None:
                    flush()
            except OSError as exc:
                # Drop the failing target, the others keep receiving output.
                self.targets.remove(target)
                logger.warning("Stopped copying output to %r: %s", target, exc)
        return len(data)


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    spawn_error: Optional[str] = None
    signal_number: Optional[int] = None

    @property
    def error(self) -> Optional[str]:
        if self.spawn_error:
            return self.spawn_error
        if self.signal_number is not None:
            return f"command terminated by signal {signal_name(self.signal_number)}"
        return None


def signal_name(number: int) -> str:
    try:
        return signal.Signals(number).name
    except ValueError:
        return str(number)


def normalize_exit_code(returncode: int) -> int:
    # The ping API only accepts a single byte; Windows allows any 32-bit code.
    if returncode < 0 or returncode > MAX_REPORTABLE_EXIT_CODE:
        return 1
    return returncode


class CommandExecutor:
    def __init__(self, stdin: Optional[BinaryIO] = None, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.stdin = stdin
        self.chunk_size = chunk_size

    def execute(self, argv: Sequence[str], stdout: Any = None, stderr: Any = None) -> ExecResult:
        """Run `argv` to completion, streaming its output into the writers.

        A None writer discards that stream. When both are given they must be
        the same object: stderr is then merged into the stdout pipe so the
        writer sees both streams in the order the child produced them.
        """
        if not argv:
            raise ValueError("missing command")
        if stdout is not None and stderr is not None and stdout is not stderr:
            raise ValueError("stdout and stderr must share one writer to preserve ordering")

        writer = stdout if stdout is not None else stderr
        if stdout is not None:
            out_target = subprocess.PIPE
            err_target = subprocess.STDOUT if stderr is not None else subprocess.DEVNULL
        else:
            out_target = subprocess.DEVNULL
            err_target = subprocess.PIPE if stderr is not None else subprocess.DEVNULL

        try:
            proc = self.spawn(argv, out_target, err_target)
        except SpawnError as exc:
            return ExecResult(exit_code=-1, spawn_error=str(exc))

        pipe = proc.stdout if proc.stdout is not None else proc.stderr
        try:
            if pipe is not None:
                with pipe:
                    while True:
                        chunk = pipe.read(self.chunk_size)
                        if not chunk:
                            break
                        writer.write(chunk)
        finally:
            returncode = proc.wait()
        logger.debug("Command %s exited with returncode=%s", argv[0], returncode)
        if returncode < 0:
            return ExecResult(exit_code=1, signal_number=-returncode)
        return ExecResult(exit_code=normalize_exit_code(returncode))

    def spawn(self, argv: Sequence[str], stdout: int, stderr: int) -> subprocess.Popen:
        try:
            return subprocess.Popen(
                list(argv),
                stdin=self.stdin,
                stdout=stdout,
                stderr=stderr,
                bufsize=0,
            )
        except OSError as exc:
            reason = exc.strerror or str(exc)
            raise SpawnError(f'could not execute "{argv[0]}": {reason}') from exc
