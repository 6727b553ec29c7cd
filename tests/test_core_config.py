import json
from pathlib import Path

import pytest

from core import config as config_module
from core.config import AppSettings, default_app_data_root


@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    directory = tmp_path / "config"
    directory.mkdir()
    monkeypatch.setattr(config_module, "CONFIG_DIR", directory)
    return directory


def test_defaults(config_dir, monkeypatch):
    monkeypatch.delenv("HEADLESS", raising=False)
    settings = AppSettings(_env_file=None)
    assert settings.headless is True
    assert settings.accept_language == "ja-JP,ja,en-US,en"
    assert settings.script_timeout_seconds == 30.0
    assert settings.max_instance_slots == 99
    assert settings.proxy_rotation_strategy == "round_robin"
    assert settings.launch_proxy is None


def test_environment_overrides(config_dir, monkeypatch):
    monkeypatch.setenv("HEADLESS", "false")
    monkeypatch.setenv("ACCEPT_LANGUAGE", "en-US,en")
    monkeypatch.setenv("PROXY_BYPASS_LIST", '["intranet.local"]')
    settings = AppSettings(_env_file=None)
    assert settings.headless is False
    assert settings.accept_language == "en-US,en"
    assert settings.proxy_bypass_list == ["intranet.local"]


def test_browser_data_dir(config_dir, tmp_path):
    settings = AppSettings(_env_file=None, app_data_root=str(tmp_path), product_name="Pilot")
    assert settings.browser_data_dir == Path(tmp_path) / "Pilot" / "BrowserData"


def test_config_file_fills_unset_keys(config_dir, monkeypatch):
    monkeypatch.delenv("ENGINE_TIMEOUT", raising=False)
    (config_dir / "tabpilot.json").write_text(json.dumps({
        "engine_settings": {"engine_timeout": 5000, "headless": False, "unknown_key": 1},
        "proxy_settings": {"proxy_rotation_strategy": "health_based"},
    }), encoding="utf-8")
    settings = AppSettings(_env_file=None, headless=True)
    assert settings.engine_timeout == 5000
    assert settings.proxy_rotation_strategy == "health_based"
    # Explicit values win over the file
    assert settings.headless is True


def test_corrupt_config_file_is_ignored(config_dir):
    (config_dir / "tabpilot.json").write_text("{not json", encoding="utf-8")
    settings = AppSettings(_env_file=None)
    assert settings.engine_timeout == 60000


def test_default_app_data_root_on_linux(monkeypatch):
    monkeypatch.setattr(config_module.sys, "platform", "linux")
    monkeypatch.setenv("XDG_DATA_HOME", "/data/xdg")
    assert default_app_data_root() == "/data/xdg"


def test_default_app_data_root_on_windows(monkeypatch):
    monkeypatch.setattr(config_module.sys, "platform", "win32")
    monkeypatch.setenv("LOCALAPPDATA", r"C:\Users\me\AppData\Local")
    assert default_app_data_root() == r"C:\Users\me\AppData\Local"
