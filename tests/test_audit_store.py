from __future__ import annotations

import sqlite3
from datetime import date, datetime, timezone

import pytest

from b2b_bulk.audit.store import JsonlFileLogStore, SqliteLogStore

DAY_ONE = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
DAY_TWO = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def test_jsonl_store_partitions_by_day_and_reads_in_write_order(tmp_path):
    store = JsonlFileLogStore(str(tmp_path))
    store.open()
    store.append("a", DAY_ONE, '{"id":"a"}')
    store.append("b", DAY_ONE, '{"id":"b"}')
    store.append("c", DAY_TWO, '{"id":"c"}')

    assert [p.name for p in store.list_files()] == ["audit-2026-03-01.log", "audit-2026-03-02.log"]
    assert list(store.iter_lines()) == ['{"id":"a"}', '{"id":"b"}', '{"id":"c"}']
    assert list(store.iter_lines(start=date(2026, 3, 2))) == ['{"id":"c"}']
    assert store.last_line() == '{"id":"c"}'


def test_jsonl_store_rolls_over_when_size_reached(tmp_path):
    store = JsonlFileLogStore(str(tmp_path), rotation_size_bytes=10)
    store.open()
    for entry_id in ("a", "b", "c"):
        store.append(entry_id, DAY_ONE, f'{{"id":"{entry_id}"}}')

    names = [p.name for p in store.list_files()]

    assert names == ["audit-2026-03-01.log", "audit-2026-03-01.001.log", "audit-2026-03-01.002.log"]
    assert [line for line in store.iter_lines()] == ['{"id":"a"}', '{"id":"b"}', '{"id":"c"}']


def test_jsonl_store_explicit_rotate_starts_new_file(tmp_path):
    store = JsonlFileLogStore(str(tmp_path))
    store.open()
    store.append("a", DAY_ONE, '{"id":"a"}')
    store.rotate(DAY_ONE)
    store.append("b", DAY_ONE, '{"id":"b"}')

    assert len(store.list_files()) == 2
    assert store.last_line() == '{"id":"b"}'


def test_jsonl_store_retention_keeps_active_file(tmp_path):
    store = JsonlFileLogStore(str(tmp_path))
    store.open()
    store.append("a", DAY_ONE, '{"id":"a"}')

    assert store.apply_retention(date(2026, 4, 1)) == []

    store.append("b", DAY_TWO, '{"id":"b"}')
    assert store.apply_retention(date(2026, 3, 2)) == ["audit-2026-03-01.log"]


def test_jsonl_store_rejects_invalid_rotation_size(tmp_path):
    with pytest.raises(ValueError):
        JsonlFileLogStore(str(tmp_path), rotation_size_bytes=0)


def test_sqlite_store_filters_by_date_and_applies_retention(tmp_path):
    store = SqliteLogStore(str(tmp_path / "nested" / "audit.db"))
    store.open()
    store.append("a", DAY_ONE, '{"id":"a"}')
    store.append("b", DAY_TWO, '{"id":"b"}')

    assert list(store.iter_lines(end=date(2026, 3, 1))) == ['{"id":"a"}']
    assert store.last_line() == '{"id":"b"}'
    assert store.apply_retention(date(2026, 3, 2)) == ["2026-03-01"]
    assert list(store.iter_lines()) == ['{"id":"b"}']
    store.close()


def test_sqlite_store_requires_open_connection(tmp_path):
    store = SqliteLogStore(str(tmp_path / "audit.db"))

    with pytest.raises(sqlite3.ProgrammingError):
        store.append("a", DAY_ONE, "{}")


def test_sqlite_store_rejects_duplicate_entry_ids(tmp_path):
    store = SqliteLogStore(str(tmp_path / "audit.db"))
    store.open()
    store.append("a", DAY_ONE, "{}")

    with pytest.raises(sqlite3.IntegrityError):
        store.append("a", DAY_ONE, "{}")
    store.close()
