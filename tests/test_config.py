from __future__ import annotations

from pathlib import Path

import pytest

from pingrun.client import DEFAULT_BASE_URL, PingType
from pingrun.config import (
    KEY_AND_SLUG_HANDLE,
    UUID_HANDLE,
    HandleParam,
    load_config_file,
    parse_duration,
    parse_req_header,
    resolve_handle,
    resolve_settings,
)
from pingrun.errors import ConfigError, CronParseError

UUID = "2f9a4b4e-8d1c-4a5f-b1a8-0c5a1e4d2b61"


def _write_config(tmp_path: Path, text: str) -> Path:
    config_path = tmp_path / "pingrun.yaml"
    config_path.write_text(text, encoding="utf-8")
    return config_path


def test_uuid_flag_and_command() -> None:
    settings = resolve_settings(["--uuid", UUID, "--", "echo", "hi"], environ={})
    assert settings.handle == UUID
    assert settings.handle_kind == UUID_HANDLE
    assert settings.command == ["echo", "hi"]
    assert settings.api_url == DEFAULT_BASE_URL
    assert settings.periodic is False


def test_command_without_separator_keeps_its_own_flags() -> None:
    settings = resolve_settings(["--uuid", UUID, "ls", "-la", "--color"], environ={})
    assert settings.command == ["ls", "-la", "--color"]


def test_missing_command() -> None:
    with pytest.raises(ConfigError, match="missing command"):
        resolve_settings(["--uuid", UUID, "--"], environ={})


def test_missing_handle() -> None:
    with pytest.raises(ConfigError, match="either a check UUID or check slug"):
        resolve_settings(["--", "true"], environ={})


def test_uuid_from_environment() -> None:
    settings = resolve_settings(["--", "true"], environ={"CHECK_UUID": UUID})
    assert settings.handle == UUID


def test_key_and_slug_from_environment() -> None:
    settings = resolve_settings(["--", "true"], environ={"HC_PING_KEY": "pk", "CHECK_SLUG": "backup"})
    assert settings.handle == "pk/backup"
    assert settings.handle_kind == KEY_AND_SLUG_HANDLE


def test_slug_flag_beats_uuid_from_environment() -> None:
    settings = resolve_settings(
        ["--slug", "backup", "--", "true"],
        environ={"CHECK_UUID": UUID, "HC_PING_KEY": "pk"},
    )
    assert settings.handle == "pk/backup"


def test_uuid_flag_conflicts_with_slug_flag() -> None:
    with pytest.raises(ConfigError, match="cannot pass --ping-key or --slug"):
        resolve_settings(["--uuid", UUID, "--slug", "s", "--", "true"], environ={})


def test_slug_flag_needs_ping_key() -> None:
    with pytest.raises(ConfigError, match="must also pass ping key"):
        resolve_settings(["--slug", "s", "--", "true"], environ={})


def test_ping_key_flag_needs_slug() -> None:
    with pytest.raises(ConfigError, match="must also pass check slug"):
        resolve_settings(["--ping-key", "pk", "--", "true"], environ={"CHECK_UUID": UUID})


def test_resolve_handle_prefers_uuid_without_key_flags() -> None:
    handle = resolve_handle(
        HandleParam(UUID, "env"),
        HandleParam("s", "env"),
        HandleParam("pk", "env"),
    )
    assert handle == (UUID, UUID_HANDLE)


def test_create_requires_key_and_slug() -> None:
    with pytest.raises(ConfigError, match="--create"):
        resolve_settings(["--uuid", UUID, "--create", "--", "true"], environ={})
    settings = resolve_settings(["--ping-key", "pk", "--slug", "s", "--create", "--", "true"], environ={})
    assert settings.run.create is True


def test_api_url_flag_beats_environment() -> None:
    environ = {"HC_API_URL": "https://env.example.test"}
    assert resolve_settings(["--uuid", UUID, "true"], environ=environ).api_url == "https://env.example.test"
    settings = resolve_settings(["--uuid", UUID, "--api-url", "http://flag.example.test", "true"], environ=environ)
    assert settings.api_url == "http://flag.example.test"


def test_api_url_must_be_http() -> None:
    with pytest.raises(ConfigError, match="HTTP URL"):
        resolve_settings(["--uuid", UUID, "--api-url", "ftp://x", "true"], environ={})


@pytest.mark.parametrize(
    "value,expected",
    [
        ("90s", 90.0),
        ("1h40m", 6000.0),
        ("500ms", 0.5),
        ("1.5m", 90.0),
        ("30", 30.0),
        (15, 15.0),
        ("0s", 0.0),
    ],
)
def test_parse_duration(value: object, expected: float) -> None:
    assert parse_duration(value, "every") == pytest.approx(expected)


@pytest.mark.parametrize("value", ["", "5 minutes", "1d", "-5s", "inf", True, [1]])
def test_parse_duration_rejects(value: object) -> None:
    with pytest.raises(ConfigError, match="every"):
        parse_duration(value, "every")


def test_every_makes_settings_periodic() -> None:
    settings = resolve_settings(["--uuid", UUID, "--every", "1h", "true"], environ={})
    assert settings.every == 3600.0
    assert settings.periodic is True


def test_zero_every_is_one_shot() -> None:
    settings = resolve_settings(["--uuid", UUID, "--every", "0s", "true"], environ={})
    assert settings.every is None
    assert settings.periodic is False


def test_cron_schedule() -> None:
    settings = resolve_settings(["--uuid", UUID, "--cron", "*/15 * * * *", "true"], environ={})
    assert settings.schedule.minutes == frozenset({0, 15, 30, 45})
    assert settings.periodic is True


def test_every_and_cron_conflict() -> None:
    with pytest.raises(ConfigError, match="cannot be used together"):
        resolve_settings(["--uuid", UUID, "--every", "5m", "--cron", "* * * * *", "true"], environ={})


def test_bad_cron_is_a_config_error() -> None:
    with pytest.raises(CronParseError, match="parsing minute"):
        resolve_settings(["--uuid", UUID, "--cron", "61 * * * *", "true"], environ={})


def test_ping_body_limit_explicitness() -> None:
    default = resolve_settings(["--uuid", UUID, "true"], environ={})
    assert default.run.ping_body_limit == 10_000
    assert default.run.ping_body_limit_is_explicit is False

    explicit = resolve_settings(["--uuid", UUID, "--ping-body-limit", "100", "true"], environ={})
    assert explicit.run.ping_body_limit == 100
    assert explicit.run.ping_body_limit_is_explicit is True


def test_negative_retries_rejected() -> None:
    with pytest.raises(ConfigError, match="api_retries"):
        resolve_settings(["--uuid", UUID, "--api-retries", "-1", "true"], environ={})


def test_api_timeout_must_be_positive() -> None:
    with pytest.raises(ConfigError, match="api_timeout"):
        resolve_settings(["--uuid", UUID, "--api-timeout", "0s", "true"], environ={})


def test_silent_implies_quiet() -> None:
    settings = resolve_settings(["--uuid", UUID, "--silent", "true"], environ={})
    assert settings.run.silent is True
    assert settings.run.quiet is True


def test_ping_type_flags() -> None:
    settings = resolve_settings(
        ["--uuid", UUID, "--on-success", "log", "--on-nonzero-exit", "fail", "true"],
        environ={},
    )
    assert settings.run.on_success is PingType.LOG
    assert settings.run.on_nonzero_exit is PingType.FAIL
    assert settings.run.on_exec_fail is PingType.FAIL


def test_invalid_ping_type_flag_exits() -> None:
    with pytest.raises(SystemExit):
        resolve_settings(["--uuid", UUID, "--on-success", "maybe", "true"], environ={})


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("X-Team: ops", ("X-Team", "ops")),
        ("Authorization:Bearer a:b", ("Authorization", "Bearer a:b")),
        ("X-Empty:", ("X-Empty", "")),
    ],
)
def test_parse_req_header(raw: str, expected: tuple) -> None:
    assert parse_req_header(raw) == expected


@pytest.mark.parametrize("raw", ["no-colon", ": value"])
def test_parse_req_header_rejects(raw: str) -> None:
    with pytest.raises(ConfigError):
        parse_req_header(raw)


def test_config_file_values(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path,
        "\n".join(
            [
                f"uuid: {UUID}",
                "api_url: https://file.example.test",
                "api_retries: 5",
                "api_timeout: 10s",
                "api_backoff: 2s",
                "cron: '0 3 * * *'",
                "no_start_ping: true",
                "ping_body_limit: 2048",
                "on_exec_fail: log",
                "single_instance: true",
                "req_headers:",
                "  X-Team: ops",
            ]
        ),
    )
    settings = resolve_settings(["--config", str(config_path), "true"], environ={})
    assert settings.handle == UUID
    assert settings.api_url == "https://file.example.test"
    assert settings.api_retries == 5
    assert settings.api_timeout == 10.0
    assert settings.api_backoff == 2.0
    assert settings.schedule.hours == frozenset({3})
    assert settings.run.no_start_ping is True
    assert settings.run.ping_body_limit == 2048
    assert settings.run.ping_body_limit_is_explicit is True
    assert settings.run.on_exec_fail is PingType.LOG
    assert settings.single_instance is True
    assert settings.req_headers == {"X-Team": "ops"}


def test_flags_and_environment_beat_config_file(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path,
        "uuid: from-file\napi_url: https://file.example.test\napi_retries: 5\nreq_headers:\n  X-Team: file\n",
    )
    settings = resolve_settings(
        ["--config", str(config_path), "--api-retries", "1", "--req-header", "X-Team: flag", "true"],
        environ={"CHECK_UUID": UUID, "HC_API_URL": "https://env.example.test"},
    )
    assert settings.handle == UUID
    assert settings.api_url == "https://env.example.test"
    assert settings.api_retries == 1
    assert settings.req_headers == {"X-Team": "flag"}


def test_config_file_unknown_keys(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, "uuid: abc\nretries: 3\n")
    with pytest.raises(ConfigError, match="Unknown keys"):
        load_config_file(config_path)


def test_config_file_wrong_types(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, f"uuid: {UUID}\nquiet: 'yes please'\n")
    with pytest.raises(ConfigError, match="quiet must be true or false"):
        resolve_settings(["--config", str(config_path), "true"], environ={})


def test_config_file_must_be_a_mapping(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="mapping"):
        load_config_file(_write_config(tmp_path, "- a\n- b\n"))


def test_config_file_invalid_yaml(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Failed to parse YAML"):
        load_config_file(_write_config(tmp_path, "uuid: [unclosed\n"))


def test_config_file_missing(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config_file(tmp_path / "absent.yaml")


def test_empty_config_file(tmp_path: Path) -> None:
    assert load_config_file(_write_config(tmp_path, "")) == {}
