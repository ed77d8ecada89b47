"""Tests for configuration loading and settings.yaml handling."""

from __future__ import annotations

import pytest
import yaml

from telegram_threads.config import (
    SETTINGS_DEFAULTS,
    ThreadsConfig,
    ThreadSettings,
    load_credentials_from_env,
    load_settings,
    resolve_settings_file,
    save_settings,
)


def test_defaults():
    s = ThreadSettings()

    assert (s.history_page_size, s.max_history_pages, s.history_message_budget) == (100, 5, 100)
    assert s.min_reply_count == 2
    assert s.preview_reply_limit == 3
    assert s.download_priority == 1
    assert s.max_concurrent_chats is None


def test_config_creates_directories(tmp_path):
    config = ThreadsConfig(api_id="1", api_hash="h", data_dir=str(tmp_path / "d"))

    assert config.media_dir.is_dir()
    assert config.sessions_dir.is_dir()


def test_load_settings_ignores_unknown_keys(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        yaml.dump(
            {
                "min_reply_count": "4",
                "max_concurrent_chats": 0,
                "download_media": False,
                "telegram_batch_size": 50,
            }
        )
    )

    s = load_settings(path)

    assert s.min_reply_count == 4
    assert s.max_concurrent_chats is None
    assert s.download_media is False
    assert s.history_page_size == 100


@pytest.mark.parametrize(
    "raw, expected",
    [
        ('"false"', False),
        ("'False'", False),
        ('"no"', False),
        ('"0"', False),
        ('"true"', True),
        ('"yes"', True),
        ("true", True),
        ("off", False),
    ],
)
def test_download_media_from_string(tmp_path, raw, expected):
    path = tmp_path / "settings.yaml"
    path.write_text(f"download_media: {raw}\n")

    assert load_settings(path).download_media is expected


def test_download_media_rejects_unknown_string(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text('download_media: "sometimes"\n')

    with pytest.raises(ValueError, match="download_media"):
        load_settings(path)


def test_load_empty_settings_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("")

    assert load_settings(path) == ThreadSettings()


def test_resolve_creates_defaults(tmp_path):
    path = resolve_settings_file(tmp_path / "data")

    assert path == tmp_path / "data" / "settings.yaml"
    assert path.read_text().startswith("# Telegram Threads")
    assert yaml.safe_load(path.read_text()) == SETTINGS_DEFAULTS


def test_resolve_imports_cli_file(tmp_path):
    source = tmp_path / "custom.yaml"
    source.write_text(yaml.dump({"min_reply_count": 7}))

    path = resolve_settings_file(tmp_path / "data", source)

    assert load_settings(path).min_reply_count == 7


def test_resolve_missing_cli_file(tmp_path):
    with pytest.raises(ValueError, match="Settings file not found"):
        resolve_settings_file(tmp_path / "data", tmp_path / "missing.yaml")


def test_save_settings_round_trip(tmp_path):
    path = resolve_settings_file(tmp_path)
    config = ThreadsConfig(
        api_id="1", api_hash="h", data_dir=tmp_path, settings_path=path
    )
    config.settings.max_concurrent_chats = 3

    save_settings(config)

    assert load_settings(path).max_concurrent_chats == 3


def test_credentials_from_env(monkeypatch):
    monkeypatch.setenv("TELEGRAM_API_ID", "12345")
    monkeypatch.setenv("TELEGRAM_API_HASH", "abcdef")

    assert load_credentials_from_env() == {"api_id": "12345", "api_hash": "abcdef"}


def test_missing_credentials(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("TELEGRAM_API_ID", raising=False)
    monkeypatch.delenv("TELEGRAM_API_HASH", raising=False)

    with pytest.raises(ValueError, match="TELEGRAM_API_ID"):
        load_credentials_from_env()
