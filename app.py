# csp-collector/app.py
from __future__ import annotations

# pyright: reportMissingImports=false
from dotenv import load_dotenv

load_dotenv()

import json
import logging
import os
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, Response
from fastapi.staticfiles import StaticFiles

from domains import InvalidHostname, InvalidURI, extract_root_domain, is_valid_root_domain
from models import MalformedReport, ViolationRecord, parse_report_payload
from render import RenderError, render_domain_report, render_landing_page
from store import CorruptLedger, NotFound, ReportStore, StoreIOError


# ============================================================
# Logging
# ============================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s"
)
logger = logging.getLogger(__name__)


# ============================================================
# Config
# ============================================================

APP_DIR = Path(__file__).resolve().parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(APP_DIR / "data")))
STATIC_DIR = Path(os.getenv("STATIC_DIR", str(APP_DIR / "static")))

REPORT_PATH = "/csp-report"
DEFAULT_MAX_REPORT_BYTES = 64 * 1024


@dataclass
class Settings:
    mode: Literal["local", "prod"]
    site_title: str
    max_report_bytes: int
    # CSP header on the collector's own pages
    csp_mode: Literal["off", "report", "enforce"]
    log_level: str


_SETTINGS: Optional[Settings] = None


def load_settings() -> Settings:
    """Load and validate settings from environment exactly once."""
    mode = (os.getenv("MODE") or "local").strip().lower()
    if mode not in {"local", "prod"}:
        raise RuntimeError(f"MODE must be 'local' or 'prod' (got {mode!r})")

    site_title = (os.getenv("SITE_TITLE") or "CSP Reports").strip()

    raw_max = (os.getenv("MAX_REPORT_BYTES") or str(DEFAULT_MAX_REPORT_BYTES)).strip()
    try:
        max_report_bytes = int(raw_max)
    except ValueError:
        raise RuntimeError(f"MAX_REPORT_BYTES must be an integer (got {raw_max!r})") from None
    if max_report_bytes <= 0:
        raise RuntimeError(f"MAX_REPORT_BYTES must be positive (got {max_report_bytes})")

    # local: off（開発中に自分のページが台帳に混ざらない）
    # prod: report（自分自身の違反も /csp-report に集める）
    csp_mode_default = "report" if mode == "prod" else "off"
    csp_mode = (os.getenv("CSP_MODE", csp_mode_default) or "").strip().lower()
    if csp_mode not in ("off", "report", "enforce"):
        raise RuntimeError(f"Invalid CSP_MODE: {csp_mode}. Must be off/report/enforce")

    log_level = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise RuntimeError(f"Invalid LOG_LEVEL: {log_level}")

    return Settings(
        mode=mode,  # type: ignore[arg-type]
        site_title=site_title,
        max_report_bytes=max_report_bytes,
        csp_mode=csp_mode,  # type: ignore[arg-type]
        log_level=log_level,
    )


def get_settings() -> Settings:
    if _SETTINGS is None:
        raise RuntimeError("Settings not loaded yet")
    return _SETTINGS


def init_settings() -> None:
    global _SETTINGS
    _SETTINGS = load_settings()
    logging.getLogger().setLevel(_SETTINGS.log_level)


# ============================================================
# Store
# ============================================================

_STORE: Optional[ReportStore] = None

# Landing page rewrites are serialized; each one re-reads the manifest.
_INDEX_LOCK = threading.Lock()


def get_store() -> ReportStore:
    if _STORE is None:
        raise RuntimeError("Store not initialized yet")
    return _STORE


def init_store() -> None:
    global _STORE
    store = ReportStore(DATA_DIR, STATIC_DIR)
    store.ensure_dirs()
    _STORE = store
    logger.info(f"Report store ready (data={DATA_DIR}, static={STATIC_DIR})")


def _clean(s: str, limit: int) -> str:
    # ログ注入防止: 改行除去 + 長さ制限
    return s.replace("\n", "").replace("\r", "")[:limit]


# ============================================================
# Pipeline (sync; runs in the threadpool)
# ============================================================

def publish_domain(store: ReportStore, domain: str) -> None:
    """Re-render one domain's view from its ledger."""
    with store.locked(domain):
        records = store.load(domain)
        store.write_view(domain, render_domain_report(domain, records))


def refresh_landing_page(store: ReportStore) -> list[str]:
    with _INDEX_LOCK:
        domains = store.list_known_domains()
        store.write_index(render_landing_page(domains, get_settings().site_title))
    return domains


def ingest_reports(store: ReportStore, items: list[tuple[str, ViolationRecord]]) -> None:
    """
    StoreAppend -> RenderDomainView for each record, then RenderLandingPage.

    The domain lock covers append and render, so the view always matches
    the ledger it was rendered from. A failure after the ledger write leaves
    the ledger in place; the domain is already in the manifest and its view
    is rebuilt on the next append or at startup.
    """
    for domain, record in items:
        with store.locked(domain):
            records = store.append(domain, record)
            store.write_view(domain, render_domain_report(domain, records))
        logger.info(f"CSP report stored: domain={domain}, ledger_size={len(records)}")

    refresh_landing_page(store)


def rebuild_missing_views(store: ReportStore) -> int:
    """Render views for ledgers whose view file is missing (crash or render failure)."""
    rebuilt = 0
    for domain in store.list_known_domains():
        if store.view_exists(domain):
            continue
        try:
            publish_domain(store, domain)
            rebuilt += 1
        except (CorruptLedger, RenderError, StoreIOError) as e:
            logger.error(f"View rebuild failed: domain={domain}, error={e}")
    if rebuilt:
        logger.info(f"Rebuilt {rebuilt} missing view(s)")
    return rebuilt


# ============================================================
# CSP for the collector's own pages
# ============================================================

def _build_csp_policy(settings: Settings) -> str:
    """
    Policy for the landing page and domain views.

    scripts.js attaches handlers itself, so inline scripts are never needed.
    report mode points report-uri back at this collector.
    """
    directives = [
        "default-src 'self'",
        "base-uri 'self'",
        "object-src 'none'",
        "frame-ancestors 'none'",
        "img-src 'self' data:",
        "style-src 'self'",
        "script-src 'self'",
        "connect-src 'self'",
        "form-action 'self'",
    ]
    if settings.csp_mode == "report":
        directives.append(f"report-uri {REPORT_PATH}")
    return "; ".join(directives)


# ============================================================
# FastAPI App
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup order:
    1. Load settings (fail fast on bad env)
    2. Create storage directories
    3. List ledgers missing from the manifest
    4. Rebuild missing views + landing page from the ledgers
    """
    init_settings()
    init_store()

    store = get_store()
    store.reconcile_manifest()
    rebuild_missing_views(store)
    refresh_landing_page(store)

    settings = get_settings()
    app.state.csp_mode = settings.csp_mode
    app.state.csp_policy = _build_csp_policy(settings) if settings.csp_mode != "off" else None
    app.state.mode = settings.mode

    yield


app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    return _apply_security_headers_to_response(response, request)


def _apply_security_headers_to_response(response: Response, request: Request) -> Response:
    """
    Security headers + cache control, shared by the middleware and the
    exception handlers so error responses carry them too.
    """
    csp_mode = getattr(request.app.state, "csp_mode", "off")
    csp_policy = getattr(request.app.state, "csp_policy", None)
    mode = getattr(request.app.state, "mode", "local")

    if csp_mode != "off" and csp_policy:
        if csp_mode == "report":
            response.headers["Content-Security-Policy-Report-Only"] = csp_policy
            if "Content-Security-Policy" in response.headers:
                del response.headers["Content-Security-Policy"]
        else:
            response.headers["Content-Security-Policy"] = csp_policy
            if "Content-Security-Policy-Report-Only" in response.headers:
                del response.headers["Content-Security-Policy-Report-Only"]

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["X-Frame-Options"] = "DENY"

    # Generated pages change on every report; never serve them stale.
    path = request.url.path
    if path == "/" or (path.startswith("/static/") and path.endswith(".html")):
        response.headers["Cache-Control"] = "no-store" if mode == "local" else "no-cache"

    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    response = JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail}
    )
    return _apply_security_headers_to_response(response, request)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Uncaught exceptions: generic 500, headers still applied."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    response = JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )
    return _apply_security_headers_to_response(response, request)


BUNDLED_STATIC_DIR = APP_DIR / "static"


class StoreStaticFiles(StaticFiles):
    """
    /static: generated views + index from the store's static directory,
    then the bundled assets (styles.css, scripts.js).

    Resolved per request, so the mount follows the store created at startup.
    """

    @property
    def all_directories(self) -> list:
        dirs = [get_store().static_dir] if _STORE is not None else [STATIC_DIR]
        if BUNDLED_STATIC_DIR not in dirs:
            dirs.append(BUNDLED_STATIC_DIR)
        return dirs

    @all_directories.setter
    def all_directories(self, value: list) -> None:
        # StaticFiles.__init__ assigns the import-time list; resolved above instead
        pass

    async def check_config(self) -> None:
        # The store directory is created by init_store(); missing files are 404s.
        return None


app.mount("/static", StoreStaticFiles(directory=STATIC_DIR, check_dir=False), name="static")


# ============================================================
# UI Routes
# ============================================================

@app.get("/")
def root():
    store = get_store()
    if store.index_path.is_file():
        return FileResponse(store.index_path, media_type="text/html")
    # First start before any report: render on the fly.
    return HTMLResponse(render_landing_page(store.list_known_domains(), get_settings().site_title))


@app.get("/health")
def health():
    return {"ok": True, "domains": len(get_store().list_known_domains())}


# ============================================================
# CSP Report Endpoint
# ============================================================

@app.post(REPORT_PATH)
async def csp_report(request: Request):
    """
    Ingest one browser CSP report (report-uri or report-to format).

    400: unreadable/unparseable body or a document-uri without a usable host
         (nothing written)
    413: body over MAX_REPORT_BYTES
    500: storage/render failure (ledger writes already done are kept)
    204: stored
    """
    settings = get_settings()

    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > settings.max_report_bytes:
        logger.warning(f"CSP report: oversized payload ({content_length} bytes)")
        raise HTTPException(status_code=413, detail="Report too large")

    # ReceiveBody
    try:
        body_bytes = await request.body()
    except Exception as e:
        logger.warning(f"CSP report: failed to read body: {e}")
        raise HTTPException(status_code=400, detail="Error reading request body")

    if len(body_bytes) > settings.max_report_bytes:
        logger.warning(f"CSP report: oversized payload ({len(body_bytes)} bytes)")
        raise HTTPException(status_code=413, detail="Report too large")

    # ParseReport
    try:
        payload = json.loads(body_bytes.decode("utf-8"))
        records = parse_report_payload(payload)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("CSP report: malformed payload (non-JSON or invalid encoding)")
        raise HTTPException(status_code=400, detail="Error parsing JSON")
    except MalformedReport as e:
        logger.warning(f"CSP report: {e}")
        raise HTTPException(status_code=400, detail="Invalid CSP report")

    # ExtractDomain: every record of a batch before anything is written
    items: list[tuple[str, ViolationRecord]] = []
    for record in records:
        try:
            domain = extract_root_domain(record.document_uri)
        except (InvalidURI, InvalidHostname) as e:
            logger.warning(f"CSP report: cannot extract root domain: {_clean(str(e), 300)}")
            raise HTTPException(status_code=400, detail="Error extracting root domain")
        items.append((domain, record))
        logger.info(
            f"CSP violation: domain={domain}, "
            f"blocked-uri={_clean(record.blocked_uri, 200)}, "
            f"violated-directive={_clean(record.violated_directive, 100)}"
        )

    # StoreAppend -> RenderDomainView -> ListDomains -> RenderLandingPage
    try:
        await run_in_threadpool(ingest_reports, get_store(), items)
    except (CorruptLedger, StoreIOError, RenderError) as e:
        domains = ",".join(sorted({d for d, _ in items}))
        logger.error(f"CSP report ingest failed: domain={domains}, error={e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal Server Error")

    return Response(status_code=204)


# ============================================================
# Delete Endpoint
# ============================================================

@app.api_route("/delete-site", methods=["GET", "POST", "DELETE"])
def delete_site(rootDomain: Optional[str] = None):
    domain = (rootDomain or "").strip()
    if not domain:
        raise HTTPException(status_code=400, detail="Root domain parameter is missing")
    if not is_valid_root_domain(domain):
        logger.warning(f"Delete rejected: invalid root domain {_clean(domain, 200)!r}")
        raise HTTPException(status_code=400, detail="Invalid root domain")

    store = get_store()
    error: Optional[HTTPException] = None
    try:
        store.delete_ledger(domain)
        logger.info(f"Deleted site: domain={domain}")
    except NotFound:
        logger.warning(f"Delete: nothing stored for domain={domain}")
        error = HTTPException(status_code=404, detail="Unknown root domain")
    except (StoreIOError, CorruptLedger) as e:
        logger.error(f"Delete failed: domain={domain}, error={e}", exc_info=True)
        error = HTTPException(status_code=500, detail="Error deleting site files")

    # Landing page is regenerated on every path, including failures.
    try:
        refresh_landing_page(store)
    except (StoreIOError, CorruptLedger) as e:
        logger.error(f"Landing page update failed after delete: domain={domain}, error={e}", exc_info=True)
        if error is None:
            error = HTTPException(status_code=500, detail="Error updating index file")

    if error is not None:
        raise error
    return {"deleted": domain}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
    )
