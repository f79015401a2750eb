# store.py
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from models import CSPReportError, ViolationRecord

logger = logging.getLogger(__name__)


class CorruptLedger(CSPReportError):
    pass


class StoreIOError(CSPReportError):
    pass


class NotFound(CSPReportError):
    pass


LEDGER_SUFFIX = ".json"
VIEW_SUFFIX = "_csp.html"
MANIFEST_NAME = "domains.json"
INDEX_NAME = "index.html"


# ============================================================
# Locks
# ============================================================

class KeyedLocks:
    """
    One reentrant lock per key.

    Entries are reference counted and dropped once no thread holds or waits
    on them, so deleted (or idle) domains do not accumulate locks.
    """

    def __init__(self) -> None:
        # key -> [lock, holders + waiters]
        self._locks: dict[str, list] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


# ============================================================
# Atomic file writes
# ============================================================

def atomic_write_text(path: Path, text: str) -> None:
    """
    Write to a temp file in the target directory, fsync, then os.replace.

    Readers see either the old or the new content, never a partial file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


# ============================================================
# Report Store
# ============================================================

class ReportStore:
    """
    Per-root-domain ledgers on disk.

    data_dir:   <domain>.json ledgers + domains.json manifest
    static_dir: <domain>_csp.html views + index.html
    """

    def __init__(self, data_dir: Path, static_dir: Path) -> None:
        self.data_dir = Path(data_dir)
        self.static_dir = Path(static_dir)
        self.domain_locks = KeyedLocks()
        self._manifest_lock = threading.Lock()

    # ---- paths ----

    def ledger_path(self, domain: str) -> Path:
        return self.data_dir / f"{domain}{LEDGER_SUFFIX}"

    def view_path(self, domain: str) -> Path:
        return self.static_dir / f"{domain}{VIEW_SUFFIX}"

    @property
    def manifest_path(self) -> Path:
        return self.data_dir / MANIFEST_NAME

    @property
    def index_path(self) -> Path:
        return self.static_dir / INDEX_NAME

    def ensure_dirs(self) -> None:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self.static_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreIOError(f"cannot create storage directories: {e}") from e

    # ---- ledger ----

    def load(self, domain: str) -> list[ViolationRecord]:
        path = self.ledger_path(domain)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StoreIOError(f"failed to read ledger for {domain}: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CorruptLedger(f"ledger for {domain} is not valid JSON: {e}") from e
        if not isinstance(data, list):
            raise CorruptLedger(f"ledger for {domain} is not a JSON array")

        try:
            return [ViolationRecord.model_validate(item) for item in data]
        except ValidationError as e:
            raise CorruptLedger(f"ledger for {domain} has invalid records") from e

    def save(self, domain: str, records: list[ViolationRecord]) -> None:
        text = json.dumps([r.to_json() for r in records], ensure_ascii=False, indent=1)
        try:
            atomic_write_text(self.ledger_path(domain), text + "\n")
        except OSError as e:
            raise StoreIOError(f"failed to write ledger for {domain}: {e}") from e

    def append(self, domain: str, record: ViolationRecord) -> list[ViolationRecord]:
        """
        load -> append -> save for one domain.

        Callers that also render the view hold locked(domain) around the
        whole sequence; the domain lock is reentrant.

        The manifest entry is written before the ledger: a listed domain
        without a ledger loads as [], a ledger without a listing is lost.
        """
        with self.locked(domain):
            records = self.load(domain)
            records.append(record)
            self._register(domain)
            self.save(domain, records)
            return records

    def locked(self, domain: str):
        return self.domain_locks.hold(domain)

    def delete_ledger(self, domain: str) -> None:
        with self.locked(domain):
            removed = False
            for path in (self.ledger_path(domain), self.view_path(domain)):
                try:
                    path.unlink()
                    removed = True
                except FileNotFoundError:
                    continue
                except OSError as e:
                    raise StoreIOError(f"failed to delete {path.name}: {e}") from e
            if self._unregister(domain):
                removed = True
        if not removed:
            raise NotFound(domain)

    # ---- views ----

    def write_view(self, domain: str, html: str) -> None:
        try:
            atomic_write_text(self.view_path(domain), html)
        except OSError as e:
            raise StoreIOError(f"failed to write view for {domain}: {e}") from e

    def view_exists(self, domain: str) -> bool:
        return self.view_path(domain).is_file()

    def write_index(self, html: str) -> None:
        try:
            atomic_write_text(self.index_path, html)
        except OSError as e:
            raise StoreIOError(f"failed to write landing page: {e}") from e

    # ---- manifest ----

    def list_known_domains(self) -> list[str]:
        with self._manifest_lock:
            return sorted(self._read_manifest())

    def reconcile_manifest(self) -> list[str]:
        """Add ledgers found on disk but missing from the manifest. Returns the added domains."""
        with self._manifest_lock:
            domains = self._read_manifest()
            missing = self._scan_disk() - domains
            if missing:
                self._write_manifest(domains | missing)
                logger.warning(f"Domain manifest reconciled: added {sorted(missing)}")
        return sorted(missing)

    def _read_manifest(self) -> set[str]:
        try:
            raw = self.manifest_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            domains = self._scan_disk()
            if domains:
                logger.info(f"Domain manifest rebuilt from disk ({len(domains)} domains)")
                self._write_manifest(domains)
            return domains
        except OSError as e:
            raise StoreIOError(f"failed to read domain manifest: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CorruptLedger(f"domain manifest is not valid JSON: {e}") from e
        if not isinstance(data, list) or not all(isinstance(d, str) for d in data):
            raise CorruptLedger("domain manifest is not a JSON array of strings")
        return set(data)

    def _write_manifest(self, domains: set[str]) -> None:
        try:
            atomic_write_text(self.manifest_path, json.dumps(sorted(domains), ensure_ascii=False) + "\n")
        except OSError as e:
            raise StoreIOError(f"failed to write domain manifest: {e}") from e

    def _scan_disk(self) -> set[str]:
        # Ledgers are the source of truth; views cover directories written
        # before the manifest existed.
        domains: set[str] = set()
        if self.data_dir.is_dir():
            for p in self.data_dir.iterdir():
                if p.is_file() and p.name != MANIFEST_NAME and p.name.endswith(LEDGER_SUFFIX):
                    domains.add(p.name[: -len(LEDGER_SUFFIX)])
        if self.static_dir.is_dir():
            for p in self.static_dir.iterdir():
                if p.is_file() and p.name.endswith(VIEW_SUFFIX):
                    domains.add(p.name[: -len(VIEW_SUFFIX)])
        return domains

    def _register(self, domain: str) -> None:
        with self._manifest_lock:
            domains = self._read_manifest()
            if domain not in domains:
                domains.add(domain)
                self._write_manifest(domains)

    def _unregister(self, domain: str) -> bool:
        with self._manifest_lock:
            domains = self._read_manifest()
            if domain not in domains:
                return False
            domains.discard(domain)
            self._write_manifest(domains)
            return True
