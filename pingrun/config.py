"""
Settings resolution from command line flags, environment and a YAML file.

Precedence is flag, then environment variable, then config file, then the
built-in default.
"""

from __future__ import annotations

import argparse
import math
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml

from pingrun import __version__
from pingrun.client import (
    DEFAULT_BACKOFF_SECONDS,
    DEFAULT_BASE_URL,
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT_SECONDS,
    PingType,
)
from pingrun.cron import Schedule, parse_cron
from pingrun.errors import ConfigError
from pingrun.runner import DEFAULT_PING_BODY_LIMIT, RunConfig

UUID_HANDLE = "uuid"
KEY_AND_SLUG_HANDLE = "key-and-slug"

ENV_API_URL = "HC_API_URL"
ENV_UUID = "CHECK_UUID"
ENV_SLUG = "CHECK_SLUG"
ENV_PING_KEY = "HC_PING_KEY"

CONFIG_KEYS = {
    "api_url",
    "api_retries",
    "api_timeout",
    "api_backoff",
    "uuid",
    "slug",
    "ping_key",
    "create",
    "every",
    "cron",
    "quiet",
    "silent",
    "on_success",
    "on_nonzero_exit",
    "on_exec_fail",
    "no_start_ping",
    "no_output_in_ping",
    "no_run_id",
    "ping_body_limit",
    "req_headers",
    "single_instance",
    "log_file",
}

DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


@dataclass(frozen=True)
class HandleParam:
    value: str = ""
    source: str = ""

    @property
    def from_flag(self) -> bool:
        return bool(self.value) and self.source == "flag"

    @property
    def specified(self) -> bool:
        return bool(self.value)


@dataclass
class Settings:
    command: List[str]
    handle: str
    handle_kind: str
    api_url: str = DEFAULT_BASE_URL
    api_retries: int = DEFAULT_RETRIES
    api_timeout: float = DEFAULT_TIMEOUT_SECONDS
    api_backoff: float = DEFAULT_BACKOFF_SECONDS
    req_headers: Dict[str, str] = field(default_factory=dict)
    every: Optional[float] = None
    schedule: Optional[Schedule] = None
    run: RunConfig = field(default_factory=RunConfig)
    single_instance: bool = False
    log_file: Optional[Path] = None
    verbose: bool = False

    @property
    def periodic(self) -> bool:
        return self.every is not None or self.schedule is not None


def parse_duration(value: Any, field_path: str) -> float:
    """Parse `1h40m`, `90s`, `500ms` or a plain number of seconds."""
    if isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be a duration like 5s, 1m30s or 2h.")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            if not text or DURATION_PART_RE.sub("", text) != "":
                raise ConfigError(
                    f'Error: {field_path} must be a duration like 5s, 1m30s or 2h, got "{value}".'
                ) from None
            seconds = sum(
                float(amount) * DURATION_UNITS[unit] for amount, unit in DURATION_PART_RE.findall(text)
            )
    else:
        raise ConfigError(f"Error: {field_path} must be a duration like 5s, 1m30s or 2h.")
    if not math.isfinite(seconds) or seconds < 0:
        raise ConfigError(f"Error: {field_path} must be a finite duration >= 0.")
    return seconds


def parse_req_header(value: str) -> Tuple[str, str]:
    if ":" not in value:
        raise ConfigError(f'Error: header "{value}" is not in "key: value" format.')
    key, header_value = value.split(":", 1)
    key = key.strip()
    if not key:
        raise ConfigError(f'Error: header "{value}" has an empty name.')
    return key, header_value.strip()


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_optional_str(value: Any, field_path: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"Error: {field_path} must be a string.")
    return value.strip()


def ensure_ping_type(value: Any, field_path: str, default: PingType) -> PingType:
    if value is None:
        return default
    if isinstance(value, PingType):
        return value
    if not isinstance(value, str):
        raise ConfigError(f"Error: {field_path} must be a string.")
    try:
        return PingType.parse(value)
    except ValueError as exc:
        raise ConfigError(f"Error: {field_path}: {exc}.") from exc


def load_config_file(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")
    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    unknown = set(payload.keys()) - CONFIG_KEYS
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {config_path.name}: {sorted(str(k) for k in unknown)}.")

    headers = payload.get("req_headers")
    if headers is not None:
        if not isinstance(headers, dict):
            raise ConfigError("Error: req_headers must be a mapping of header name to value.")
        for key, value in headers.items():
            if not isinstance(key, str) or not isinstance(value, (str, int)):
                raise ConfigError(f"Error: req_headers.{key} must be a string.")
    return payload


def _pick(flag_value: Any, env_value: Optional[str], file_value: Any) -> HandleParam:
    if flag_value:
        return HandleParam(value=flag_value, source="flag")
    if env_value:
        return HandleParam(value=env_value, source="env")
    if file_value:
        return HandleParam(value=file_value, source="file")
    return HandleParam()


def resolve_handle(uuid: HandleParam, slug: HandleParam, ping_key: HandleParam) -> Tuple[str, str]:
    """Compose the check handle used in ping URLs.

    A UUID passed as a flag wins outright. Ping key or slug flags win over a
    UUID from the environment. Otherwise a UUID from any source is used, and
    failing that both a ping key and a slug are required.
    """
    if uuid.from_flag:
        if ping_key.from_flag or slug.from_flag:
            raise ConfigError("Error: cannot pass --ping-key or --slug when already passing --uuid.")
        return uuid.value, UUID_HANDLE

    if not (ping_key.from_flag or slug.from_flag):
        if uuid.specified:
            return uuid.value, UUID_HANDLE
        if not (ping_key.specified and slug.specified):
            raise ConfigError("Error: must pass either a check UUID or check slug along with project ping key.")

    if not ping_key.specified:
        raise ConfigError(
            f"Error: must also pass ping key either with --ping-key or {ENV_PING_KEY} environment variable."
        )
    if not slug.specified:
        raise ConfigError(f"Error: must also pass check slug with --slug or {ENV_SLUG} environment variable.")
    return f"{ping_key.value}/{slug.value}", KEY_AND_SLUG_HANDLE


def _ping_type_arg(value: str) -> PingType:
    try:
        return PingType.parse(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    options = "|".join(member.value for member in PingType)
    parser = argparse.ArgumentParser(
        prog="pingrun",
        description=(
            "Run a command, capture its output and report start, success or failure "
            "to a Healthchecks.io compatible ping API."
        ),
        usage="%(prog)s [options] -- command [arg ...]",
    )
    parser.add_argument("--config", help="YAML file with default settings")
    parser.add_argument("--api-url", help=f"API URL. Takes precedence over {ENV_API_URL} (default: {DEFAULT_BASE_URL})")
    parser.add_argument(
        "--api-retries",
        type=int,
        help=f"Times an API request is retried after a transient error (default: {DEFAULT_RETRIES})",
    )
    parser.add_argument("--api-timeout", help="Client timeout per request (default: 5s)")
    parser.add_argument("--api-backoff", help="Linear backoff unit between retries (default: 1s)")
    parser.add_argument("--uuid", help=f"UUID of check. Takes precedence over {ENV_UUID}")
    parser.add_argument("--slug", help=f"Slug of check, requires a ping key. Takes precedence over {ENV_SLUG}")
    parser.add_argument("--ping-key", help=f"Project ping key. Takes precedence over {ENV_PING_KEY}")
    parser.add_argument(
        "--create",
        action="store_true",
        default=None,
        help="Create the check if the slug is not found in the project",
    )
    parser.add_argument("--every", help="Run the command periodically at this interval, e.g. 1h40m")
    parser.add_argument("--cron", help='Run the command on a cron schedule, e.g. "*/15 * * * *"')
    parser.add_argument("--quiet", action="store_true", default=None, help="Don't capture command's stdout")
    parser.add_argument(
        "--silent",
        action="store_true",
        default=None,
        help="Don't capture command's stdout or stderr",
    )
    parser.add_argument(
        "--on-success",
        type=_ping_type_arg,
        help=f"Ping type to send when the command exits successfully ({options}, default: success)",
    )
    parser.add_argument(
        "--on-nonzero-exit",
        type=_ping_type_arg,
        help=f"Ping type to send when the command exits with a nonzero code ({options}, default: exit-code)",
    )
    parser.add_argument(
        "--on-exec-fail",
        type=_ping_type_arg,
        help=f"Ping type to send when the command cannot be executed ({options}, default: fail)",
    )
    parser.add_argument("--no-start-ping", action="store_true", default=None, help="Don't send start ping")
    parser.add_argument(
        "--no-output-in-ping",
        action="store_true",
        default=None,
        help="Don't send command's output in pings",
    )
    parser.add_argument(
        "--no-run-id",
        action="store_true",
        default=None,
        help="Don't generate and send a run id per run in pings",
    )
    parser.add_argument(
        "--ping-body-limit",
        type=int,
        help=(
            "If non-zero, truncate the ping body to its last N bytes, including a truncation "
            f"notice (default: {DEFAULT_PING_BODY_LIMIT})"
        ),
    )
    parser.add_argument(
        "--req-header",
        action="append",
        default=[],
        metavar='"KEY: VALUE"',
        help="Additional request header, may be repeated",
    )
    parser.add_argument(
        "--single-instance",
        action="store_true",
        default=None,
        help="Skip a run while another process is running the same command",
    )
    parser.add_argument("--log-file", help="Also write pingrun's own log to this file")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"pingrun {__version__}")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Command to run and its arguments")
    return parser


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def resolve_settings(
    argv: Optional[Sequence[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    args = build_parser().parse_args(argv)
    env = os.environ if environ is None else environ
    payload: Dict[str, Any] = load_config_file(Path(args.config)) if args.config else {}

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        raise ConfigError("Error: missing command.")

    handle, handle_kind = resolve_handle(
        uuid=_pick(args.uuid, env.get(ENV_UUID), ensure_optional_str(payload.get("uuid"), "uuid")),
        slug=_pick(args.slug, env.get(ENV_SLUG), ensure_optional_str(payload.get("slug"), "slug")),
        ping_key=_pick(args.ping_key, env.get(ENV_PING_KEY), ensure_optional_str(payload.get("ping_key"), "ping_key")),
    )

    create = ensure_bool(_first(args.create, payload.get("create")), "create", False)
    if create and handle_kind != KEY_AND_SLUG_HANDLE:
        raise ConfigError("Error: --create can be used only with a ping key and slug handle.")

    api_url = (
        args.api_url
        or env.get(ENV_API_URL)
        or ensure_optional_str(payload.get("api_url"), "api_url")
        or DEFAULT_BASE_URL
    )
    if not (api_url.startswith("http://") or api_url.startswith("https://")):
        raise ConfigError("Error: api_url must be an HTTP URL.")

    every_raw = _first(args.every, payload.get("every"))
    every = parse_duration(every_raw, "every") if every_raw is not None else 0.0
    cron_raw = _first(args.cron, payload.get("cron"))
    schedule = None
    if cron_raw is not None:
        if not isinstance(cron_raw, str):
            raise ConfigError("Error: cron must be a string.")
        schedule = parse_cron(cron_raw)
    if every > 0 and schedule is not None:
        raise ConfigError("Error: --every and --cron cannot be used together.")

    limit_raw = _first(args.ping_body_limit, payload.get("ping_body_limit"))
    ping_body_limit = ensure_int(limit_raw, "ping_body_limit", DEFAULT_PING_BODY_LIMIT, 0)

    silent = ensure_bool(_first(args.silent, payload.get("silent")), "silent", False)
    quiet = ensure_bool(_first(args.quiet, payload.get("quiet")), "quiet", False) or silent

    run = RunConfig(
        quiet=quiet,
        silent=silent,
        no_start_ping=ensure_bool(_first(args.no_start_ping, payload.get("no_start_ping")), "no_start_ping", False),
        no_output_in_ping=ensure_bool(
            _first(args.no_output_in_ping, payload.get("no_output_in_ping")), "no_output_in_ping", False
        ),
        no_run_id=ensure_bool(_first(args.no_run_id, payload.get("no_run_id")), "no_run_id", False),
        create=create,
        ping_body_limit=ping_body_limit,
        ping_body_limit_is_explicit=limit_raw is not None,
        on_success=ensure_ping_type(
            _first(args.on_success, payload.get("on_success")), "on_success", PingType.SUCCESS
        ),
        on_nonzero_exit=ensure_ping_type(
            _first(args.on_nonzero_exit, payload.get("on_nonzero_exit")), "on_nonzero_exit", PingType.EXIT_CODE
        ),
        on_exec_fail=ensure_ping_type(
            _first(args.on_exec_fail, payload.get("on_exec_fail")), "on_exec_fail", PingType.FAIL
        ),
    )

    req_headers = {str(k): str(v).strip() for k, v in (payload.get("req_headers") or {}).items()}
    for raw_header in args.req_header:
        key, value = parse_req_header(raw_header)
        req_headers[key] = value

    api_timeout_raw = _first(args.api_timeout, payload.get("api_timeout"))
    api_backoff_raw = _first(args.api_backoff, payload.get("api_backoff"))
    log_file_raw = _first(args.log_file, payload.get("log_file"))
    api_timeout = (
        parse_duration(api_timeout_raw, "api_timeout") if api_timeout_raw is not None else DEFAULT_TIMEOUT_SECONDS
    )
    if api_timeout <= 0:
        raise ConfigError("Error: api_timeout must be > 0.")

    return Settings(
        command=command,
        handle=handle,
        handle_kind=handle_kind,
        api_url=api_url,
        api_retries=ensure_int(_first(args.api_retries, payload.get("api_retries")), "api_retries", DEFAULT_RETRIES),
        api_timeout=api_timeout,
        api_backoff=(
            parse_duration(api_backoff_raw, "api_backoff") if api_backoff_raw is not None else DEFAULT_BACKOFF_SECONDS
        ),
        req_headers=req_headers,
        every=every if every > 0 else None,
        schedule=schedule,
        run=run,
        single_instance=ensure_bool(
            _first(args.single_instance, payload.get("single_instance")), "single_instance", False
        ),
        log_file=Path(ensure_optional_str(log_file_raw, "log_file")) if log_file_raw else None,
        verbose=bool(args.verbose),
    )
