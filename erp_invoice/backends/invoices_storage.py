"""Filesystem persistence for invoices and their numbering sequences."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import date
from pathlib import Path
from typing import Iterator, Optional

import portalocker

from ..utils.config import get_lock_timeout
from .invoices_models import Invoice

INVOICE_ROOT_NAME = ".erp_invoice"
INVOICES_DIRNAME = "invoices"
INDEX_FILENAME = "index.json"
SEQUENCE_FILENAME = "sequence.json"
SEQUENCE_LOCK_FILENAME = ".sequence.lock"
INDEX_LOCK_FILENAME = ".index.lock"

_LOGGER = logging.getLogger("erp_invoice.backends.storage")


def get_invoice_root(base_path: Optional[Path] = None) -> Path:
    """
    Resolve the invoice storage root.

    Priority:
    1) ERP_INVOICE_ROOT env var (absolute or relative to cwd)
    2) explicit base_path (caller-provided)
    3) repository root (parent of erp_invoice/) to avoid dropping data in random cwd
    """

    env_root = os.getenv("ERP_INVOICE_ROOT", "").strip()
    if env_root:
        return Path(env_root).expanduser().resolve()

    if base_path is not None:
        return (base_path / INVOICE_ROOT_NAME).resolve()

    repo_root = Path(__file__).resolve().parents[2]
    return (repo_root / INVOICE_ROOT_NAME).resolve()


def _ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def ensure_structure(root: Optional[Path] = None) -> None:
    """Create required directories if they do not exist."""

    invoice_root = get_invoice_root(root)
    _ensure_directory(invoice_root)
    _ensure_directory(invoice_root / INVOICES_DIRNAME)


def _read_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _write_json(path: Path, payload: dict) -> None:
    """Write ``payload`` next to ``path`` and move it into place in one step."""

    _ensure_directory(path.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True)
            handle.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _exclusive_lock(lock_file: Path) -> portalocker.Lock:
    lock_file.touch(exist_ok=True)
    # Non-blocking attempts, retried every check_interval until the timeout.
    return portalocker.Lock(
        lock_file,
        mode="a",
        timeout=get_lock_timeout(),
        check_interval=0.05,
        flags=portalocker.LOCK_EX | portalocker.LOCK_NB,
    )


class FileSequenceProvider:
    """Per-series counters stored in ``sequence.json``.

    ``next_value`` holds an exclusive file lock across read, increment and
    write, so concurrent processes never receive the same value for a key.
    """

    def __init__(self, root: Optional[Path] = None):
        self.root = root

    @property
    def path(self) -> Path:
        return get_invoice_root(self.root) / SEQUENCE_FILENAME

    def _load_counters(self) -> dict:
        try:
            data = _read_json(self.path)
        except FileNotFoundError:
            data = {}
        data.setdefault("counters", {})
        return data

    def current_value(self, key: str) -> int:
        return int(self._load_counters()["counters"].get(key, 0))

    def next_value(self, key: str) -> int:
        ensure_structure(self.root)
        lock_file = get_invoice_root(self.root) / SEQUENCE_LOCK_FILENAME
        with _exclusive_lock(lock_file):
            data = self._load_counters()
            counters: dict[str, int] = data["counters"]
            next_value = int(counters.get(key, 0)) + 1
            counters[key] = next_value
            _write_json(self.path, data)

        _LOGGER.debug("sequence.next key=%s value=%s", key, next_value)
        return next_value


class FileInvoiceStore:
    """One JSON document per invoice under ``<root>/invoices``."""

    def __init__(self, root: Optional[Path] = None):
        self.root = root

    @property
    def invoices_dir(self) -> Path:
        return get_invoice_root(self.root) / INVOICES_DIRNAME

    def path_for(self, invoice_id: str) -> Path:
        return self.invoices_dir / f"{invoice_id}.json"

    def exists(self, invoice_id: str) -> bool:
        return self.path_for(invoice_id).is_file()

    def load(self, invoice_id: str) -> Invoice:
        return load_invoice_by_path(self.path_for(invoice_id))

    def save(self, invoice: Invoice) -> Path:
        if not invoice.id:
            raise ValueError("cannot save an invoice without an id")
        path = self.path_for(invoice.id)
        _write_json(path, invoice.model_dump(mode="json"))
        return path

    def iter_paths(self) -> Iterator[Path]:
        if not self.invoices_dir.exists():
            return iter(())

        paths = [
            p for p in self.invoices_dir.iterdir() if p.is_file() and p.suffix == ".json"
        ]
        paths.sort()
        return iter(paths)

    def iter_invoices(self) -> Iterator[Invoice]:
        for path in self.iter_paths():
            yield load_invoice_by_path(path)

    def query(
        self,
        *,
        account_id: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> Iterator[Invoice]:
        """Lazily yield invoices matching the account and inclusive issue-date range."""

        for invoice in self.iter_invoices():
            if account_id is not None and invoice.account_id != account_id:
                continue
            if date_from is not None and invoice.issue_date < date_from:
                continue
            if date_to is not None and invoice.issue_date > date_to:
                continue
            yield invoice


def load_invoice_by_path(path: Path) -> Invoice:
    payload = _read_json(path)
    return Invoice.model_validate(payload)


def build_index(root: Optional[Path] = None) -> dict[str, object]:
    ensure_structure(root)
    entries = [invoice.to_index_entry() for invoice in FileInvoiceStore(root).iter_invoices()]
    entries.sort(key=lambda entry: str(entry["id"]))
    return {"count": len(entries), "invoices": entries}


def save_index(index: dict[str, object], root: Optional[Path] = None) -> None:
    _write_json(get_invoice_root(root) / INDEX_FILENAME, index)


def load_index(root: Optional[Path] = None) -> dict[str, object]:
    try:
        return _read_json(get_invoice_root(root) / INDEX_FILENAME)
    except FileNotFoundError:
        return {"count": 0, "invoices": []}


def with_index_lock(root: Optional[Path] = None):
    """Context manager to lock index rebuilds."""

    class _IndexLock:
        def __init__(self, base: Optional[Path]):
            self.base = base
            self._handle = None

        def __enter__(self):
            ensure_structure(self.base)
            lock_file = get_invoice_root(self.base) / INDEX_LOCK_FILENAME
            self._handle = _exclusive_lock(lock_file)
            self._handle.acquire()
            return lock_file

        def __exit__(self, exc_type, exc, tb):
            if self._handle:
                self._handle.release()

    return _IndexLock(root)


__all__ = [
    "FileInvoiceStore",
    "FileSequenceProvider",
    "build_index",
    "ensure_structure",
    "get_invoice_root",
    "load_index",
    "load_invoice_by_path",
    "save_index",
    "with_index_lock",
]
