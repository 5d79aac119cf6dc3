"""
Ping API client with linear backoff retries.

Talks to a Healthchecks.io compatible ping endpoint:
POST {base_url}/{handle}/{start|fail|log|<exit code>|}[?rid=...][&create=1]
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import BinaryIO, Callable, Dict, Mapping, Optional, Union
from urllib.parse import quote, urlencode

import requests

from pingrun.errors import MaxTriesReachedError, NonRetriableError
from pingrun.ringbuffer import SeekableSizedBody

DEFAULT_BASE_URL = "https://hc-ping.com"
DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_RETRIES = 2
DEFAULT_BACKOFF_SECONDS = 1.0
PING_BODY_LIMIT_HEADER = "Ping-Body-Limit"
MAX_PING_BODY_LIMIT = 2**32 - 1
SUCCESS_STATUS_CODES = frozenset({200, 201})
RETRIABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

logger = logging.getLogger("pingrun")

# Only None, str, bytes and SeekableSizedBody bodies are resent on retry.
Body = Optional[Union[bytes, bytearray, str, SeekableSizedBody, BinaryIO]]


class PingType(enum.Enum):
    """Terminal ping sent once a run has been classified."""

    EXIT_CODE = "exit-code"
    SUCCESS = "success"
    FAIL = "fail"
    LOG = "log"

    @classmethod
    def parse(cls, value: str) -> "PingType":
        try:
            return cls(value.strip().lower())
        except ValueError:
            options = "|".join(member.value for member in cls)
            raise ValueError(f'unknown ping type "{value}", recognized options: {options}') from None


class Verdict(enum.Enum):
    SUCCESS = "success"
    RETRY = "retry"
    FATAL = "fatal"


def classify_status(status_code: int) -> Verdict:
    if status_code in SUCCESS_STATUS_CODES:
        return Verdict.SUCCESS
    if status_code in RETRIABLE_STATUS_CODES:
        return Verdict.RETRY
    return Verdict.FATAL


def classify_exception(exc: BaseException) -> Verdict:
    # ConnectTimeout is both a Timeout and a ConnectionError.
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return Verdict.RETRY
    return Verdict.FATAL


def backoff_delay(attempt: int, unit: float) -> float:
    """Seconds to wait before the 1-based `attempt`."""
    return max(attempt - 1, 0) * unit


@dataclass
class InstanceConfig:
    """Instance specific parameters relayed in ping response headers."""

    ping_body_limit: Optional[int] = None

    @staticmethod
    def from_headers(headers: Mapping[str, str]) -> "InstanceConfig":
        raw = (headers.get(PING_BODY_LIMIT_HEADER) or "").strip()
        if not (raw.isascii() and raw.isdigit()):
            return InstanceConfig()
        value = int(raw)
        if value > MAX_PING_BODY_LIMIT:
            return InstanceConfig()
        return InstanceConfig(ping_body_limit=value)


@dataclass(frozen=True)
class PingParams:
    run_id: Optional[str] = None
    create: bool = False

    def query(self) -> str:
        pairs = []
        if self.run_id:
            pairs.append(("rid", self.run_id))
        if self.create:
            pairs.append(("create", "1"))
        return urlencode(pairs)


class APIClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        retries: int = DEFAULT_RETRIES,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        backoff: float = DEFAULT_BACKOFF_SECONDS,
        user_agent: str = "",
        headers: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.retries = max(retries, 0)
        self.timeout = timeout
        self.backoff = backoff if backoff > 0 else DEFAULT_BACKOFF_SECONDS
        self.user_agent = user_agent
        self.headers = dict(headers or {})
        # One session for the process lifetime so connections and TLS
        # sessions to the ping host are reused between runs.
        self.session = session if session is not None else requests.Session()
        self._sleep = sleep

    def close(self) -> None:
        self.session.close()

    def build_url(self, handle: str, subpath: str, params: PingParams) -> str:
        url = f"{self.base_url}/{quote(handle.strip('/'), safe='/')}"
        if subpath:
            url = f"{url}/{subpath}"
        query = params.query()
        if query:
            url = f"{url}?{query}"
        return url

    def post(self, url: str, content_type: str, body: Body = None) -> requests.Response:
        """POST `body` to `url`, retrying transient failures.

        Timeouts, connection errors and 408/429/5xx gateway style responses
        are retried with a linear backoff: the first retry waits one backoff
        unit, the second two units and so on. Any other error status raises
        NonRetriableError; running out of attempts raises MaxTriesReachedError.
        """
        headers = dict(self.headers)
        headers["Content-Type"] = content_type
        if self.user_agent:
            headers["User-Agent"] = self.user_agent

        rewindable = isinstance(body, SeekableSizedBody)
        data: Body = body
        if rewindable and len(body) == 0:
            data = None
        resendable = body is None or rewindable or isinstance(body, (bytes, bytearray, str))
        attempts = 1 + self.retries if resendable else 1

        last_error = ""
        for attempt in range(1, attempts + 1):
            delay = backoff_delay(attempt, self.backoff)
            if delay > 0:
                logger.info(
                    "Retrying POST %s in %.1fs (try %s/%s), last error: %s",
                    url,
                    delay,
                    attempt,
                    attempts,
                    last_error,
                )
                self._sleep(delay)
            if rewindable:
                body.seek(0)

            try:
                response = self.session.post(url, data=data, headers=headers, timeout=self.timeout)
            except requests.RequestException as exc:
                if classify_exception(exc) is Verdict.FATAL:
                    raise NonRetriableError(str(exc)) from exc
                last_error = str(exc)
                continue

            verdict = classify_status(response.status_code)
            if verdict is Verdict.SUCCESS:
                return response

            status = f"{response.status_code} {response.reason or ''}".strip()
            response.close()
            if verdict is Verdict.FATAL:
                raise NonRetriableError(
                    f"nonretriable error response: {status}",
                    status_code=response.status_code,
                )
            last_error = status

        raise MaxTriesReachedError(attempts, last_error)

    def ping(self, handle: str, params: PingParams, subpath: str, body: Body = None) -> InstanceConfig:
        url = self.build_url(handle, subpath, params)
        logger.debug("Ping %s", url)
        response = self.post(url, "text/plain", body)
        try:
            return InstanceConfig.from_headers(response.headers)
        finally:
            response.close()

    def ping_start(self, handle: str, params: PingParams) -> InstanceConfig:
        return self.ping(handle, params, "start")

    def ping_success(self, handle: str, params: PingParams, body: Body = None) -> InstanceConfig:
        return self.ping(handle, params, "", body)

    def ping_fail(self, handle: str, params: PingParams, body: Body = None) -> InstanceConfig:
        return self.ping(handle, params, "fail", body)

    def ping_log(self, handle: str, params: PingParams, body: Body = None) -> InstanceConfig:
        return self.ping(handle, params, "log", body)

    def ping_exit_code(
        self,
        handle: str,
        params: PingParams,
        exit_code: int,
        body: Body = None,
    ) -> InstanceConfig:
        return self.ping(handle, params, str(exit_code), body)
