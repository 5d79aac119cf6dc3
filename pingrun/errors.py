"""
Exception taxonomy for pingrun.
"""

from __future__ import annotations

from typing import Optional


class PingrunError(Exception):
    """Base error for pingrun."""


class ConfigError(PingrunError):
    """Invalid flags, environment or config file."""


class BufferReadOnlyError(PingrunError):
    """Write attempted on a capture buffer that has already been read."""

    def __init__(self) -> None:
        super().__init__("read only")


class CronParseError(ConfigError):
    """Malformed cron expression."""

    reason = "invalid cron expression"

    def __init__(self, field: Optional[str] = None, detail: str = "") -> None:
        self.field = field
        self.detail = detail
        message = self.reason
        if detail:
            message = f"{message} {detail}"
        if field:
            message = f"parsing {field}: {message}"
        super().__init__(message)


class CronFieldCountError(CronParseError):
    reason = "expected 5 fields"


class CronInvalidStepError(CronParseError):
    reason = "invalid step"


class CronNonPositiveStepError(CronParseError):
    reason = "step must be positive"


class CronRangeStartError(CronParseError):
    reason = "invalid range start"


class CronRangeEndError(CronParseError):
    reason = "invalid range end"


class CronInvalidValueError(CronParseError):
    reason = "invalid value"


class CronOutOfRangeError(CronParseError):
    reason = "value out of range"


class CronRangeOrderError(CronParseError):
    reason = "range start > end"


class CronNoMatchError(PingrunError):
    """Schedule has no occurrence inside the search horizon."""


class SpawnError(PingrunError):
    """The command could not be executed."""


class ReportError(PingrunError):
    """A ping could not be delivered."""


class NonRetriableError(ReportError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MaxTriesReachedError(ReportError):
    def __init__(self, attempts: int, last_error: str) -> None:
        super().__init__(f"max tries reached after try {attempts}. last error: {last_error}")
        self.attempts = attempts
        self.last_error = last_error
