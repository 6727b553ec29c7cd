import pytest

from core.config import AppSettings
from core.dispatch import OwnerDispatcher
from browser.sessions import SessionManager
from browser.tabs import TabManager
from core.proxy_manager import ProxyManager
from tests.fakes import FakeEngine


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.setattr("core.config.CONFIG_DIR", tmp_path / "config")
    return AppSettings(
        _env_file=None,
        app_data_root=str(tmp_path / "appdata"),
        script_timeout_seconds=2.0,
        input_move_settle=0,
        input_press_settle=0,
        input_focus_settle=0,
        input_char_delay=0,
        cookie_visit_timeout_seconds=0.3,
        proxy_apply_settle_seconds=0,
        proxy_list_file=str(tmp_path / "proxies.txt"),
        proxy_health_file=str(tmp_path / "proxy_health.json"),
    )


@pytest.fixture
def engine():
    engine = FakeEngine().start()
    yield engine
    engine.stop()


@pytest.fixture
def owner():
    owner = OwnerDispatcher().start()
    yield owner
    owner.stop()


@pytest.fixture
def sessions(engine, settings):
    manager = SessionManager(engine, settings)
    yield manager
    manager.slot.release()


@pytest.fixture
def proxy_manager(engine, settings, owner):
    return ProxyManager(engine, settings, owner)


@pytest.fixture
def tabs(engine, owner, sessions, settings, proxy_manager):
    return TabManager(engine, owner, sessions, settings, proxy_manager)
