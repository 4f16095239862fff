"""Append-only storage backends for the audit trail.

Stores deal in already-signed, serialized entries (one JSON document per
line); hashing and chaining live in the logger so every backend gets the
same tamper evidence.
"""

from __future__ import annotations

import os
import re
import sqlite3
import threading
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Iterator, Protocol

# Errors a backend may raise while opening or appending.
STORE_ERRORS: tuple[type[Exception], ...] = (OSError, sqlite3.Error)

_FILE_PATTERN = re.compile(r"^audit-(\d{4}-\d{2}-\d{2})(?:\.(\d{3,}))?\.log$")


class LogStore(Protocol):
    def open(self) -> None: ...

    def append(self, entry_id: str, timestamp: datetime, line: str) -> None: ...

    def iter_lines(self, start: date | None = None, end: date | None = None) -> Iterator[str]: ...

    def last_line(self) -> str | None: ...

    def rotate(self, now: datetime) -> None: ...

    def apply_retention(self, cutoff: date) -> list[str]: ...

    def close(self) -> None: ...


@dataclass(frozen=True, order=True)
class _LogFile:
    day: date
    seq: int
    path: Path


class JsonlFileLogStore:
    """Newline-delimited JSON files named ``audit-YYYY-MM-DD[.NNN].log``.

    A new file starts when the UTC date of the entry changes or when the
    active file has reached ``rotation_size_bytes``. Files are read back in
    (date, sequence) order, which is write order.
    """

    def __init__(self, directory: str, rotation_size_bytes: int = 100 * 1024 * 1024) -> None:
        if rotation_size_bytes < 1:
            raise ValueError("rotation_size_bytes must be positive")
        self._dir = Path(directory)
        self._rotation_size = rotation_size_bytes
        self._active: _LogFile | None = None

    @property
    def directory(self) -> Path:
        return self._dir

    def open(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        if not os.access(self._dir, os.W_OK):
            raise PermissionError(f"Audit log directory is not writable: {self._dir}")
        self._active = None

    def close(self) -> None:
        self._active = None

    def append(self, entry_id: str, timestamp: datetime, line: str) -> None:
        data = (line + "\n").encode("utf-8")
        current = self._active_file(timestamp.date())
        if current.path.exists() and current.path.stat().st_size >= self._rotation_size:
            current = self._next_file(current)
        with current.path.open("ab") as handle:
            handle.write(data)
            handle.flush()
        self._active = current

    def rotate(self, now: datetime) -> None:
        current = self._active_file(now.date())
        if current.path.exists() and current.path.stat().st_size > 0:
            self._active = self._next_file(current)

    def iter_lines(self, start: date | None = None, end: date | None = None) -> Iterator[str]:
        for log_file in self._files():
            if start is not None and log_file.day < start:
                continue
            if end is not None and log_file.day > end:
                continue
            with log_file.path.open("r", encoding="utf-8") as handle:
                for raw in handle:
                    line = raw.rstrip("\n")
                    if line.strip():
                        yield line

    def last_line(self) -> str | None:
        for log_file in reversed(self._files()):
            lines = [
                line
                for line in log_file.path.read_text(encoding="utf-8").splitlines()
                if line.strip()
            ]
            if lines:
                return lines[-1]
        return None

    def apply_retention(self, cutoff: date) -> list[str]:
        removed: list[str] = []
        active_path = self._active.path if self._active else None
        for log_file in self._files():
            if log_file.day >= cutoff or log_file.path == active_path:
                continue
            log_file.path.unlink(missing_ok=True)
            removed.append(log_file.path.name)
        return removed

    def list_files(self) -> list[Path]:
        return [log_file.path for log_file in self._files()]

    def _files(self) -> list[_LogFile]:
        if not self._dir.exists():
            return []
        files: list[_LogFile] = []
        for path in self._dir.iterdir():
            match = _FILE_PATTERN.match(path.name)
            if not match or not path.is_file():
                continue
            day = date.fromisoformat(match.group(1))
            seq = int(match.group(2)) if match.group(2) else 0
            files.append(_LogFile(day=day, seq=seq, path=path))
        return sorted(files)

    def _active_file(self, day: date) -> _LogFile:
        if self._active is not None and self._active.day == day:
            return self._active
        same_day = [log_file for log_file in self._files() if log_file.day == day]
        if same_day:
            return same_day[-1]
        return _LogFile(day=day, seq=0, path=self._path_for(day, 0))

    def _next_file(self, current: _LogFile) -> _LogFile:
        seq = current.seq + 1
        return _LogFile(day=current.day, seq=seq, path=self._path_for(current.day, seq))

    def _path_for(self, day: date, seq: int) -> Path:
        if seq == 0:
            return self._dir / f"audit-{day.isoformat()}.log"
        return self._dir / f"audit-{day.isoformat()}.{seq:03d}.log"


class SqliteLogStore:
    """Embedded-database backend; rows are kept in insertion order."""

    def __init__(self, path: str, wal: bool = True) -> None:
        self._path = path
        self._wal = wal
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def open(self) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self._path, check_same_thread=False)
        if self._wal:
            conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS audit_log (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                entry_id TEXT NOT NULL UNIQUE,
                log_date TEXT NOT NULL,
                line TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_audit_log_date ON audit_log(log_date);
            """
        )
        conn.commit()
        self._conn = conn

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None

    def append(self, entry_id: str, timestamp: datetime, line: str) -> None:
        with self._lock:
            conn = self._require_conn()
            conn.execute(
                "INSERT INTO audit_log (entry_id, log_date, line) VALUES (?, ?, ?)",
                (entry_id, timestamp.date().isoformat(), line),
            )
            conn.commit()

    def rotate(self, now: datetime) -> None:
        # Rows are partitioned by log_date; nothing to roll over.
        return None

    def iter_lines(self, start: date | None = None, end: date | None = None) -> Iterator[str]:
        query = "SELECT line FROM audit_log"
        clauses: list[str] = []
        params: list[str] = []
        if start is not None:
            clauses.append("log_date >= ?")
            params.append(start.isoformat())
        if end is not None:
            clauses.append("log_date <= ?")
            params.append(end.isoformat())
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY seq"
        with self._lock:
            rows = self._require_conn().execute(query, params).fetchall()
        for (line,) in rows:
            yield line

    def last_line(self) -> str | None:
        with self._lock:
            row = self._require_conn().execute(
                "SELECT line FROM audit_log ORDER BY seq DESC LIMIT 1"
            ).fetchone()
        return row[0] if row else None

    def apply_retention(self, cutoff: date) -> list[str]:
        with self._lock:
            conn = self._require_conn()
            rows = conn.execute(
                "SELECT DISTINCT log_date FROM audit_log WHERE log_date < ? ORDER BY log_date",
                (cutoff.isoformat(),),
            ).fetchall()
            conn.execute("DELETE FROM audit_log WHERE log_date < ?", (cutoff.isoformat(),))
            conn.commit()
        return [row[0] for row in rows]

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("Audit store is not open")
        return self._conn
