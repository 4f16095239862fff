"""Per-user JSON file storage for bulk operation records."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from collections.abc import Iterator
from pathlib import Path

from pydantic import ValidationError

from b2b_bulk.history.models import BulkOperationRecord

logger = logging.getLogger(__name__)

_SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._@-]{0,127}$")


def _check_segment(value: str, label: str) -> str:
    if not _SAFE_SEGMENT.match(value) or ".." in value:
        raise ValueError(f"Unsafe {label} for storage path: {value!r}")
    return value


def _user_dir_name(user_id: str) -> str:
    """Directory name for a user id.

    Identity providers issue ids such as ``auth0|64f1c2`` or ``a+b@x.com``,
    so the id is hashed rather than used as a path segment.
    """
    return _check_segment(hashlib.sha256(user_id.encode("utf-8")).hexdigest(), "user id")


class OperationRecordStore:
    """Stores one JSON document per operation under ``<base>/<sha256(user_id)>/``."""

    def __init__(self, base_path: str | Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    def user_dir(self, user_id: str) -> Path:
        return self._base / _user_dir_name(user_id)

    def save(self, record: BulkOperationRecord) -> Path:
        user_dir = self.user_dir(record.user_id)
        user_dir.mkdir(parents=True, exist_ok=True)
        path = user_dir / f"{_check_segment(record.id, 'operation id')}.json"
        data = json.dumps(record.model_dump(mode="json"), ensure_ascii=True, indent=2)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(data, encoding="utf-8")
        os.replace(tmp, path)
        return path

    def load(self, user_id: str, operation_id: str) -> BulkOperationRecord | None:
        path = self.user_dir(user_id) / f"{_check_segment(operation_id, 'operation id')}.json"
        return self._read(path)

    def find(self, operation_id: str) -> BulkOperationRecord | None:
        """Locate a record when the owning user is unknown."""
        name = f"{_check_segment(operation_id, 'operation id')}.json"
        for path in sorted(self._base.glob(f"*/{name}")):
            record = self._read(path)
            if record is not None:
                return record
        return None

    def list_for_user(self, user_id: str) -> list[BulkOperationRecord]:
        user_dir = self.user_dir(user_id)
        if not user_dir.is_dir():
            return []
        records = []
        for path in sorted(user_dir.glob("*.json")):
            record = self._read(path)
            if record is not None and record.user_id == user_id:
                records.append(record)
        return records

    def delete(self, record: BulkOperationRecord) -> bool:
        path = self.user_dir(record.user_id) / f"{record.id}.json"
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def iter_all(self) -> Iterator[BulkOperationRecord]:
        for user_dir in sorted(p for p in self._base.iterdir() if p.is_dir()):
            for path in sorted(user_dir.glob("*.json")):
                record = self._read(path)
                if record is not None:
                    yield record

    def _read(self, path: Path) -> BulkOperationRecord | None:
        try:
            with path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable operation record %s: %s", path, exc)
            return None
        try:
            return BulkOperationRecord.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Invalid operation record %s: %s", path, exc)
            return None
