# tests/test_app_startup.py
import pytest
from fastapi.testclient import TestClient

import app
from store import ReportStore
from tests.helpers.reports import make_record


def _use_dirs(monkeypatch, tmp_path):
    data_dir, static_dir = tmp_path / "lifespan-data", tmp_path / "lifespan-static"
    monkeypatch.setattr(app, "DATA_DIR", data_dir)
    monkeypatch.setattr(app, "STATIC_DIR", static_dir)
    return data_dir, static_dir


def test_startup_rebuilds_missing_views(monkeypatch, tmp_path):
    """Ledger without view (crash between writes) → view + index rebuilt at startup."""
    monkeypatch.setenv("MODE", "local")
    data_dir, static_dir = _use_dirs(monkeypatch, tmp_path)

    seeded = ReportStore(data_dir, static_dir)
    seeded.ensure_dirs()
    seeded.append("example.com", make_record())
    assert not seeded.view_exists("example.com")

    with TestClient(app.app) as client:
        assert seeded.view_exists("example.com")
        assert seeded.index_path.exists()

        r = client.get("/")
        assert r.status_code == 200
        assert "example.com_csp.html" in r.text


def test_startup_creates_directories(monkeypatch, tmp_path):
    data_dir, static_dir = _use_dirs(monkeypatch, tmp_path)
    with TestClient(app.app) as client:
        assert client.get("/health").json() == {"ok": True, "domains": 0}
    assert data_dir.is_dir()
    assert (static_dir / "index.html").exists()


@pytest.mark.parametrize(
    "env, value",
    [
        ("MODE", "staging"),
        ("CSP_MODE", "sometimes"),
        ("MAX_REPORT_BYTES", "lots"),
        ("MAX_REPORT_BYTES", "0"),
        ("LOG_LEVEL", "LOUD"),
    ],
)
def test_invalid_settings_fail_fast(monkeypatch, env, value):
    monkeypatch.setenv(env, value)
    with pytest.raises(RuntimeError):
        app.load_settings()


def test_invalid_settings_block_startup(monkeypatch, tmp_path):
    data_dir, _ = _use_dirs(monkeypatch, tmp_path)
    monkeypatch.setenv("MODE", "staging")
    with pytest.raises(RuntimeError):
        with TestClient(app.app):
            pass
    assert not data_dir.exists()


def test_settings_defaults(monkeypatch):
    for name in ("MODE", "CSP_MODE", "SITE_TITLE", "MAX_REPORT_BYTES", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    s = app.load_settings()
    assert s.mode == "local"
    assert s.csp_mode == "off"
    assert s.site_title == "CSP Reports"
    assert s.max_report_bytes == app.DEFAULT_MAX_REPORT_BYTES

    monkeypatch.setenv("MODE", "prod")
    assert app.load_settings().csp_mode == "report"


def test_site_title_on_landing_page(monkeypatch, tmp_path):
    _use_dirs(monkeypatch, tmp_path)
    monkeypatch.setenv("SITE_TITLE", "Acme CSP Reports")
    with TestClient(app.app) as client:
        assert "<h1>Acme CSP Reports</h1>" in client.get("/").text


def test_startup_lists_ledgers_missing_from_manifest(monkeypatch, tmp_path):
    """Ledger on disk but not in domains.json → listed and rendered at startup."""
    data_dir, static_dir = _use_dirs(monkeypatch, tmp_path)

    seeded = ReportStore(data_dir, static_dir)
    seeded.ensure_dirs()
    seeded.append("other.org", make_record(document_uri="https://other.org/"))
    seeded.save("example.com", [make_record()])
    assert seeded.list_known_domains() == ["other.org"]

    with TestClient(app.app) as client:
        assert seeded.list_known_domains() == ["example.com", "other.org"]
        assert seeded.view_exists("example.com")
        assert "example.com_csp.html" in client.get("/").text
