from __future__ import annotations

import pytest

from campusconnect import config


@pytest.fixture()
def isolated_env(monkeypatch, tmp_path):
    for key in list(config.DEFAULTS):
        monkeypatch.delenv(f"CAMPUSCONNECT_{key.upper()}", raising=False)
    for key in ("CONFIG", "DATA_DIR", "DB"):
        monkeypatch.delenv(f"CAMPUSCONNECT_{key}", raising=False)
    monkeypatch.setenv("CAMPUSCONNECT_BASE_DIR", str(tmp_path))
    return tmp_path


def test_defaults_and_paths(isolated_env):
    loaded = config.load_settings()

    assert loaded.events_per_page == 12
    assert loaded.activity_log_limit == 100
    assert loaded.organizer_activity_limit == 200
    assert loaded.database_path == isolated_env / "data" / "campusconnect.db"
    assert loaded.config_path == isolated_env / "campusconnect.toml"
    assert loaded.data_dir.is_dir()


def test_env_overrides_toml(isolated_env, monkeypatch):
    (isolated_env / "campusconnect.toml").write_text(
        "trending_limit = 8\nenable_scheduler = false\nassistant_model = \"small\"\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("CAMPUSCONNECT_TRENDING_LIMIT", "2")

    loaded = config.load_settings()

    assert loaded.trending_limit == 2
    assert loaded.enable_scheduler is False
    assert loaded.assistant_model == "small"


def test_invalid_boolean_is_rejected(isolated_env, monkeypatch):
    monkeypatch.setenv("CAMPUSCONNECT_ASSISTANT_ENABLED", "sometimes")
    with pytest.raises(ValueError):
        config.load_settings()


def test_update_config_file_ignores_unknown_keys(isolated_env, monkeypatch):
    monkeypatch.setattr(config, "settings", config.load_settings())
    target = isolated_env / "custom.toml"

    updated = config.update_config_file(
        {"comment_max_length": "280", "not_a_setting": 1}, path=target
    )

    text = target.read_text(encoding="utf-8")
    assert "comment_max_length = 280" in text
    assert "not_a_setting" not in text
    assert updated.comment_max_length == 280
    assert config.settings.comment_max_length == 280


def test_settings_as_dict_lists_every_key(isolated_env):
    payload = config.settings_as_dict(config.load_settings())
    assert set(config.DEFAULTS) <= set(payload)
    assert payload["trending_refresh_minutes"] == 30
