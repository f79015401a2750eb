# csp-collector/tests/conftest.py

import os

import pytest
from fastapi.testclient import TestClient

import app
from store import ReportStore


@pytest.fixture(scope="session", autouse=True)
def _load_settings_for_tests():
    os.environ.setdefault("MODE", "local")
    os.environ.setdefault("CSP_MODE", "off")

    # ✅ settings キャッシュを確実にクリア（テストの環境変数反映を保証）
    app._SETTINGS = None  # type: ignore[attr-defined]
    app.init_settings()

    # ✅ テストは lifespan を通らないため、app.state をここで初期化する
    settings = app.get_settings()
    app.app.state.csp_mode = settings.csp_mode
    app.app.state.csp_policy = app._build_csp_policy(settings) if settings.csp_mode != "off" else None
    app.app.state.mode = settings.mode

    yield


@pytest.fixture(autouse=True)
def store(tmp_path):
    """
    Every test gets its own data/static directories (never touch ./data or ./static).
    Settings, store and app.state are restored afterwards.
    """
    # ---- Before ----
    old_settings = app._SETTINGS
    old_store = app._STORE
    old_dirs = (app.DATA_DIR, app.STATIC_DIR)

    state_keys = ("csp_mode", "csp_policy", "mode")
    old_state = {k: getattr(app.app.state, k, None) for k in state_keys}

    s = ReportStore(tmp_path / "data", tmp_path / "static")
    s.ensure_dirs()
    app._STORE = s

    yield s

    # ---- After ----
    app._SETTINGS = old_settings
    app._STORE = old_store
    app.DATA_DIR, app.STATIC_DIR = old_dirs
    for k in state_keys:
        setattr(app.app.state, k, old_state[k])


@pytest.fixture
def client():
    return TestClient(app.app)
