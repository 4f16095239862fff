from __future__ import annotations

import asyncio
import json

import pytest

from b2b_bulk import cli
from b2b_bulk.app import build_app_context
from b2b_bulk.audit.models import AuditEventType
from b2b_bulk.config import AuditSettings, HistorySettings, Settings


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "configure_logging", lambda: None)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        audit=AuditSettings(log_dir=str(tmp_path / "audit"), secret="cli-secret"),
        history=HistorySettings(storage_dir=str(tmp_path / "history")),
    )


def _write_events(settings: Settings, count: int) -> None:
    async def write() -> None:
        async with build_app_context(settings) as context:
            for n in range(count):
                await context.audit.log_event(
                    AuditEventType.BULK_UPLOAD_SUCCESS, action=f"bulk.cli-{n}"
                )

    asyncio.run(write())


def test_verify_reports_valid_chain(settings, capsys):
    _write_events(settings, 3)

    code = cli.main(["verify"], context=build_app_context(settings))

    payload = json.loads(capsys.readouterr().out)
    assert code == 0
    assert payload == {"valid": True, "entries_checked": 3, "errors": []}


def test_verify_exits_non_zero_after_tampering(settings, tmp_path, capsys):
    _write_events(settings, 2)
    [log_file] = (tmp_path / "audit").glob("audit-*.log")
    log_file.write_text(
        log_file.read_text(encoding="utf-8").replace("bulk.cli-1", "bulk.cli-9"),
        encoding="utf-8",
    )

    code = cli.main(["verify"], context=build_app_context(settings))

    payload = json.loads(capsys.readouterr().out)
    assert code == 1
    assert payload["valid"] is False
    assert {error["kind"] for error in payload["errors"]} >= {"checksum"}


def test_report_prints_summary(settings, capsys):
    _write_events(settings, 2)

    code = cli.main(["report"], context=build_app_context(settings))

    payload = json.loads(capsys.readouterr().out)
    assert code == 0
    assert payload["summary"]["total_events"] == 2
    assert payload["summary"]["bulk_operations"]["successful"] == 2


def test_report_with_empty_period(settings, capsys):
    _write_events(settings, 1)

    cli.main(
        ["report", "--start", "2001-01-01", "--end", "2001-01-31"],
        context=build_app_context(settings),
    )

    payload = json.loads(capsys.readouterr().out)
    assert payload["summary"]["total_events"] == 0
    assert payload["period"]["start"].startswith("2001-01-01")


def test_retention_removes_expired_partitions(settings, tmp_path, capsys):
    audit_dir = tmp_path / "audit"
    audit_dir.mkdir()
    (audit_dir / "audit-2001-01-01.log").write_text("", encoding="utf-8")

    code = cli.main(["retention"], context=build_app_context(settings))

    payload = json.loads(capsys.readouterr().out)
    assert code == 0
    assert payload == {
        "audit_partitions_removed": ["audit-2001-01-01.log"],
        "history_records_removed": 0,
    }
    assert not (audit_dir / "audit-2001-01-01.log").exists()


def test_invalid_date_is_rejected(settings, capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["verify", "--start", "March"], context=build_app_context(settings))

    assert excinfo.value.code == 2
    assert "expected YYYY-MM-DD" in capsys.readouterr().err


def test_command_is_required():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])
