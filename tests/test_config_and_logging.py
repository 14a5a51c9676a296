from __future__ import annotations

import json
import logging
import sys
from datetime import timedelta, timezone

import pytest

from adherence_core.bootstrap import create_gateway
from adherence_core.config import Config
from adherence_core.infrastructure.in_memory_attachment_store import InMemoryAttachmentStore
from adherence_core.infrastructure.in_memory_change_feed import InMemoryChangeFeed
from adherence_core.infrastructure.in_memory_remote_store import InMemoryRemoteStore
from adherence_core.logging import JSONFormatter, setup_logging


_ENV_KEYS = (
    "ADHERENCE_TOLERANCE_MINUTES",
    "ADHERENCE_WINDOW_DAYS",
    "ADHERENCE_STREAK_CAP",
    "ADHERENCE_ACTIVITY_DAYS",
    "ADHERENCE_TIMEZONE",
    "ADHERENCE_LOG_FORMAT",
    "ADHERENCE_LOG_LEVEL",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_config_defaults(clean_env: pytest.MonkeyPatch) -> None:
    cfg = Config.from_env()

    assert cfg.tolerance == timedelta(minutes=15)
    assert cfg.window_days == 30
    assert cfg.streak_cap == 366
    assert cfg.activity_days == 7
    assert cfg.zone() is timezone.utc
    assert cfg.log_format == "json"
    assert cfg.log_level == "INFO"


def test_config_from_env_overrides(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("ADHERENCE_TOLERANCE_MINUTES", "30")
    clean_env.setenv("ADHERENCE_WINDOW_DAYS", "14")
    clean_env.setenv("ADHERENCE_LOG_FORMAT", "text")
    clean_env.setenv("ADHERENCE_LOG_LEVEL", "debug")

    cfg = Config.from_env()

    assert cfg.tolerance == timedelta(minutes=30)
    assert cfg.window_days == 14
    assert cfg.log_format == "text"
    assert cfg.log_level == "DEBUG"


def test_config_rejects_non_integer(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("ADHERENCE_WINDOW_DAYS", "a month")

    with pytest.raises(RuntimeError, match="Invalid adherence configuration"):
        Config.from_env()


@pytest.mark.parametrize("overrides,message", [
    ({"tolerance_minutes": -1}, "TOLERANCE"),
    ({"window_days": 0}, "WINDOW_DAYS"),
    ({"streak_cap": 30}, "STREAK_CAP"),
    ({"log_format": "xml"}, "LOG_FORMAT"),
    ({"log_level": "VERBOSE"}, "LOG_LEVEL"),
])
def test_config_validation(overrides: dict, message: str) -> None:
    with pytest.raises(RuntimeError, match=message):
        Config(**overrides)


def test_unknown_timezone_is_a_config_error() -> None:
    with pytest.raises(RuntimeError, match="ADHERENCE_TIMEZONE"):
        Config(timezone="Mars/Olympus_Mons").zone()


def test_json_formatter_includes_adherence_extras() -> None:
    record = logging.makeLogRecord({
        "name": "adherence_core.application.mutation",
        "levelname": "WARNING",
        "levelno": logging.WARNING,
        "msg": "Mutation rolled back: %s",
        "args": ("rejected",),
        "adherence_mutation_kind": "mark_taken",
        "adherence_subject_id": "patient-1",
        "unrelated": "dropped",
    })

    payload = json.loads(JSONFormatter().format(record))

    assert payload["message"] == "Mutation rolled back: rejected"
    assert payload["level"] == "WARNING"
    assert payload["logger"] == "adherence_core.application.mutation"
    assert payload["adherence_mutation_kind"] == "mark_taken"
    assert payload["adherence_subject_id"] == "patient-1"
    assert "unrelated" not in payload


def test_json_formatter_includes_exception() -> None:
    try:
        raise ValueError("bad slot")
    except ValueError:
        record = logging.LogRecord(
            "adherence_core", logging.ERROR, __file__, 1, "failed", None, exc_info=sys.exc_info(),
        )

    payload = json.loads(JSONFormatter().format(record))
    assert "ValueError: bad slot" in payload["exception"]


def test_setup_logging_installs_single_handler() -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        setup_logging("json", logging.DEBUG)
        setup_logging("json", logging.DEBUG)

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert root.level == logging.DEBUG

        setup_logging("text")
        assert not isinstance(root.handlers[0].formatter, JSONFormatter)
    finally:
        for handler in root.handlers[:]:
            root.removeHandler(handler)
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)


def test_create_gateway_applies_env_config(
    clean_env: pytest.MonkeyPatch, restore_root_logger: logging.Logger,
) -> None:
    clean_env.setenv("ADHERENCE_TOLERANCE_MINUTES", "30")
    clean_env.setenv("ADHERENCE_LOG_FORMAT", "text")
    clean_env.setenv("ADHERENCE_LOG_LEVEL", "warning")
    feed = InMemoryChangeFeed()

    gateway = create_gateway(InMemoryRemoteStore(feed), InMemoryAttachmentStore(), feed)

    assert gateway.config.tolerance_minutes == 30
    assert gateway.active_subject is None
    assert restore_root_logger.level == logging.WARNING
    assert len(restore_root_logger.handlers) == 1
    assert not isinstance(restore_root_logger.handlers[0].formatter, JSONFormatter)


def test_create_gateway_prefers_explicit_config(
    clean_env: pytest.MonkeyPatch, restore_root_logger: logging.Logger,
) -> None:
    clean_env.setenv("ADHERENCE_LOG_FORMAT", "text")
    feed = InMemoryChangeFeed()
    config = Config(window_days=14, log_level="DEBUG")

    gateway = create_gateway(InMemoryRemoteStore(feed), InMemoryAttachmentStore(), feed, config=config)

    assert gateway.config is config
    assert restore_root_logger.level == logging.DEBUG
    assert isinstance(restore_root_logger.handlers[0].formatter, JSONFormatter)


def test_create_gateway_rejects_bad_env(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("ADHERENCE_LOG_LEVEL", "chatty")
    feed = InMemoryChangeFeed()

    with pytest.raises(RuntimeError, match="ADHERENCE_LOG_LEVEL"):
        create_gateway(InMemoryRemoteStore(feed), InMemoryAttachmentStore(), feed)
