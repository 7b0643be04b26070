"""
ExecutionJournal - Durable per-action execution state.

The journal is the single source of truth for what has happened on-chain.
It stores one ExecutionRecord per (network, module, action identity) and
guarantees:

- Atomic compare-and-set writes: `upsert(record)` succeeds only if the stored
  version equals `record.version`, and stores the record at version + 1.
- Durability before progress: `upsert` returns only after the write is on
  disk, so a SUBMITTED transaction reference survives a crash.
- Exclusive runs: `lock()` holds a per-(module, network) run lock; a held lock
  raises LockHeldError and is never bypassed.

Storage backends:
- InMemoryJournal (for testing)
- FileJournal (one JSON document per network/module, atomic rename)
- SqliteJournal (one row per record, CAS on the version column)
"""

import json
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from ignitor.errors import (
    CorruptJournalError,
    JournalConflictError,
    LockHeldError,
)
from ignitor.schemas import ExecutionRecord

JOURNAL_FORMAT = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_component(value: str, what: str) -> str:
    if not value or "/" in value or "\\" in value or value in (".", ".."):
        raise ValueError(f"Invalid {what} for journal path: {value!r}")
    return value


def records_by_name(records: Iterable[ExecutionRecord]) -> dict[str, ExecutionRecord]:
    """
    Map declared name -> live record.

    Superseded records are skipped. If several live records share a name
    (which only a drift override resolves), the most recently updated wins.
    """
    by_name: dict[str, ExecutionRecord] = {}
    for record in records:
        if not record.is_live:
            continue
        current = by_name.get(record.name)
        if current is None or record.updated_at > current.updated_at:
            by_name[record.name] = record
    return by_name


class ExecutionJournal(ABC):
    """
    Abstract base class for journal storage.

    Subclasses implement raw reads/writes and lock primitives; the base class
    implements compare-and-set on top of them under an in-process lock.
    """

    def __init__(self):
        self._cas_lock = threading.RLock()

    # -- backend primitives --------------------------------------------------

    @abstractmethod
    def load(self, module: str, network: str) -> dict[str, ExecutionRecord]:
        """
        Load all records for a module on a network.

        Returns:
            Mapping of action identity -> ExecutionRecord
        """
        pass

    @abstractmethod
    def _read(self, network: str, module: str, identity: str) -> Optional[ExecutionRecord]:
        pass

    @abstractmethod
    def _write(self, record: ExecutionRecord, expected_version: int) -> None:
        """Durably store `record`; must detect a lost CAS race where it can."""
        pass

    @abstractmethod
    def acquire(self, module: str, network: str, owner: str) -> None:
        """
        Acquire the run lock for (module, network).

        Raises:
            LockHeldError: If another owner holds the lock
        """
        pass

    @abstractmethod
    def release(self, module: str, network: str, owner: str) -> None:
        """Release the run lock if held by `owner`."""
        pass

    # -- shared behavior -----------------------------------------------------

    def get(self, network: str, module: str, identity: str) -> Optional[ExecutionRecord]:
        with self._cas_lock:
            return self._read(network, module, identity)

    def upsert(self, record: ExecutionRecord) -> ExecutionRecord:
        """
        Compare-and-set a record.

        Args:
            record: The record to store; `record.version` must equal the
                    stored version (0 when no record exists yet)

        Returns:
            The stored record, with version incremented

        Raises:
            JournalConflictError: If the stored version differs
        """
        with self._cas_lock:
            current = self._read(record.network, record.module, record.identity)
            actual = current.version if current is not None else 0
            if actual != record.version:
                raise JournalConflictError(record.identity, record.version, actual)
            stored = replace(record, version=record.version + 1)
            self._write(stored, expected_version=record.version)
            return stored

    @contextmanager
    def lock(self, module: str, network: str, owner: Optional[str] = None) -> Iterator[str]:
        """Hold the run lock for the duration of the block."""
        owner = owner or f"pid-{os.getpid()}"
        self.acquire(module, network, owner)
        try:
            yield owner
        finally:
            self.release(module, network, owner)


class InMemoryJournal(ExecutionJournal):
    """
    In-memory implementation of ExecutionJournal for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self):
        super().__init__()
        self._records: dict[tuple[str, str, str], ExecutionRecord] = {}
        self._locks: dict[tuple[str, str], str] = {}

    def load(self, module: str, network: str) -> dict[str, ExecutionRecord]:
        with self._cas_lock:
            return {
                identity: r for (net, mod, identity), r in self._records.items()
                if net == network and mod == module
            }

    def _read(self, network: str, module: str, identity: str) -> Optional[ExecutionRecord]:
        return self._records.get((network, module, identity))

    def _write(self, record: ExecutionRecord, expected_version: int) -> None:
        self._records[record.key] = record

    def acquire(self, module: str, network: str, owner: str) -> None:
        with self._cas_lock:
            holder = self._locks.get((network, module))
            if holder is not None:
                raise LockHeldError(module, network, holder)
            self._locks[(network, module)] = owner

    def release(self, module: str, network: str, owner: str) -> None:
        with self._cas_lock:
            if self._locks.get((network, module)) == owner:
                del self._locks[(network, module)]

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        self._records.clear()
        self._locks.clear()


class FileJournal(ExecutionJournal):
    """
    File-based implementation of ExecutionJournal.

    Stores one JSON document per (network, module):
        journal_dir/
            {network}/
                {module}.json
                {module}.lock

    Every write replaces the document through a temp file, fsync and atomic
    rename, so readers see either the previous or the new journal, never a
    partial one.
    """

    def __init__(self, journal_dir: Path | str):
        super().__init__()
        self._journal_dir = Path(journal_dir)
        self._journal_dir.mkdir(parents=True, exist_ok=True)

    @property
    def journal_dir(self) -> Path:
        return self._journal_dir

    def _doc_path(self, network: str, module: str) -> Path:
        return (
            self._journal_dir
            / _check_component(network, "network")
            / f"{_check_component(module, 'module')}.json"
        )

    def _lock_path(self, network: str, module: str) -> Path:
        return self._doc_path(network, module).with_suffix(".lock")

    def _read_doc(self, network: str, module: str) -> dict[str, Any]:
        path = self._doc_path(network, module)
        if not path.exists():
            return {"format": JOURNAL_FORMAT, "network": network, "module": module, "records": {}}
        try:
            with open(path) as f:
                doc = json.load(f)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptJournalError(f"Cannot read journal {path}: {e}") from e
        if not isinstance(doc, dict) or not isinstance(doc.get("records"), dict):
            raise CorruptJournalError(f"Journal {path} has no 'records' mapping")
        if doc.get("format") != JOURNAL_FORMAT:
            raise CorruptJournalError(
                f"Journal {path} has unsupported format {doc.get('format')!r}"
            )
        return doc

    def _parse(self, path_hint: str, data: dict[str, Any]) -> ExecutionRecord:
        try:
            return ExecutionRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptJournalError(f"Invalid record in {path_hint}: {e}") from e

    def load(self, module: str, network: str) -> dict[str, ExecutionRecord]:
        with self._cas_lock:
            doc = self._read_doc(network, module)
        path_hint = str(self._doc_path(network, module))
        return {
            identity: self._parse(path_hint, data)
            for identity, data in doc["records"].items()
        }

    def _read(self, network: str, module: str, identity: str) -> Optional[ExecutionRecord]:
        doc = self._read_doc(network, module)
        data = doc["records"].get(identity)
        if data is None:
            return None
        return self._parse(str(self._doc_path(network, module)), data)

    def _write(self, record: ExecutionRecord, expected_version: int) -> None:
        doc = self._read_doc(record.network, record.module)
        doc["records"][record.identity] = record.to_dict()
        doc["updated_at"] = _utcnow().isoformat()
        self._atomic_write(self._doc_path(record.network, record.module), doc)

    def _atomic_write(self, path: Path, doc: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        with open(tmp_path, "w") as f:
            json.dump(doc, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        # Make the rename itself durable
        dir_fd = os.open(path.parent, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    def acquire(self, module: str, network: str, owner: str) -> None:
        path = self._lock_path(network, module)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            raise LockHeldError(module, network, self._lock_owner(path)) from None
        with os.fdopen(fd, "w") as f:
            json.dump({"owner": owner, "pid": os.getpid(), "acquired_at": _utcnow().isoformat()}, f)
            f.flush()
            os.fsync(f.fileno())

    def release(self, module: str, network: str, owner: str) -> None:
        path = self._lock_path(network, module)
        if self._lock_owner(path) == owner:
            path.unlink(missing_ok=True)

    @staticmethod
    def _lock_owner(path: Path) -> Optional[str]:
        try:
            with open(path) as f:
                return json.load(f).get("owner")
        except (OSError, ValueError, AttributeError):
            return None


class SqliteJournal(ExecutionJournal):
    """
    SQLite implementation of ExecutionJournal.

    One row per record keyed by (network, module, identity). Writes are
    committed with synchronous=FULL before upsert returns; the version column
    enforces compare-and-set even against writers in other processes.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS records (
            network TEXT NOT NULL,
            module TEXT NOT NULL,
            identity TEXT NOT NULL,
            name TEXT NOT NULL,
            status TEXT NOT NULL,
            version INTEGER NOT NULL,
            data TEXT NOT NULL,
            PRIMARY KEY (network, module, identity)
        );
        CREATE TABLE IF NOT EXISTS locks (
            network TEXT NOT NULL,
            module TEXT NOT NULL,
            owner TEXT NOT NULL,
            acquired_at TEXT NOT NULL,
            PRIMARY KEY (network, module)
        );
    """

    def __init__(self, db_path: Path | str):
        super().__init__()
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False, isolation_level=None)
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=FULL")
            self._conn.executescript(self.SCHEMA)
        except sqlite3.DatabaseError as e:
            raise CorruptJournalError(f"Cannot open journal database {self._db_path}: {e}") from e

    def close(self) -> None:
        self._conn.close()

    def _row_to_record(self, data: str) -> ExecutionRecord:
        try:
            return ExecutionRecord.from_dict(json.loads(data))
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptJournalError(f"Invalid record in {self._db_path}: {e}") from e

    def load(self, module: str, network: str) -> dict[str, ExecutionRecord]:
        with self._cas_lock:
            rows = self._conn.execute(
                "SELECT identity, data FROM records WHERE network = ? AND module = ?",
                (network, module),
            ).fetchall()
        return {identity: self._row_to_record(data) for identity, data in rows}

    def _read(self, network: str, module: str, identity: str) -> Optional[ExecutionRecord]:
        row = self._conn.execute(
            "SELECT data FROM records WHERE network = ? AND module = ? AND identity = ?",
            (network, module, identity),
        ).fetchone()
        return self._row_to_record(row[0]) if row else None

    def _write(self, record: ExecutionRecord, expected_version: int) -> None:
        data = json.dumps(record.to_dict(), sort_keys=True)
        if expected_version == 0:
            try:
                self._conn.execute(
                    "INSERT INTO records (network, module, identity, name, status, version, data) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (record.network, record.module, record.identity, record.name,
                     record.status.value, record.version, data),
                )
            except sqlite3.IntegrityError:
                current = self._read(record.network, record.module, record.identity)
                raise JournalConflictError(
                    record.identity, expected_version, current.version if current else -1
                ) from None
            return
        cursor = self._conn.execute(
            "UPDATE records SET name = ?, status = ?, version = ?, data = ? "
            "WHERE network = ? AND module = ? AND identity = ? AND version = ?",
            (record.name, record.status.value, record.version, data,
             record.network, record.module, record.identity, expected_version),
        )
        if cursor.rowcount != 1:
            current = self._read(record.network, record.module, record.identity)
            raise JournalConflictError(
                record.identity, expected_version, current.version if current else 0
            )

    def acquire(self, module: str, network: str, owner: str) -> None:
        with self._cas_lock:
            try:
                self._conn.execute(
                    "INSERT INTO locks (network, module, owner, acquired_at) VALUES (?, ?, ?, ?)",
                    (network, module, owner, _utcnow().isoformat()),
                )
            except sqlite3.IntegrityError:
                row = self._conn.execute(
                    "SELECT owner FROM locks WHERE network = ? AND module = ?",
                    (network, module),
                ).fetchone()
                raise LockHeldError(module, network, row[0] if row else None) from None

    def release(self, module: str, network: str, owner: str) -> None:
        with self._cas_lock:
            self._conn.execute(
                "DELETE FROM locks WHERE network = ? AND module = ? AND owner = ?",
                (network, module, owner),
            )


def create_journal(backend: str, path: Optional[Path | str] = None) -> ExecutionJournal:
    """
    Create a journal for the configured backend.

    Args:
        backend: "file", "sqlite" or "memory"
        path: Journal directory (file) or database path (sqlite)
    """
    if backend == "memory":
        return InMemoryJournal()
    if path is None:
        raise ValueError(f"Journal backend '{backend}' requires a path")
    if backend == "file":
        return FileJournal(path)
    if backend == "sqlite":
        path = Path(path)
        if path.is_dir() or not path.suffix:
            path = path / "journal.sqlite3"
        return SqliteJournal(path)
    raise ValueError(f"Unknown journal backend: {backend}")
