"""Hash-chained, signed audit logger."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import secrets
import time
from datetime import date, datetime, timedelta
from typing import Any, Callable, Iterable, Literal
from uuid import uuid4

from b2b_bulk.audit.models import (
    SIGNATURE_ALGORITHM,
    AuditEventType,
    AuditLogEntry,
    AuditResult,
    AuditSeverity,
    ComplianceReport,
    ComplianceSummary,
    DataIntegrity,
    IntegrityError,
    IntegrityErrorKind,
    IntegrityReport,
    severity_for,
)
from b2b_bulk.audit.store import STORE_ERRORS, JsonlFileLogStore, LogStore, SqliteLogStore
from b2b_bulk.config import AuditSettings
from b2b_bulk.errors import AuditLogInitError
from b2b_bulk.utils.hashing import (
    canonical_json,
    digests_match,
    hmac_sha256_hex,
    normalize_json,
    sha256_hex,
)
from b2b_bulk.utils.masking import redact_sensitive_fields
from b2b_bulk.utils.time import utc_now

logger = logging.getLogger(__name__)

_CONSOLE_LEVELS = {
    AuditSeverity.INFO: logging.INFO,
    AuditSeverity.WARNING: logging.WARNING,
    AuditSeverity.ERROR: logging.ERROR,
    AuditSeverity.CRITICAL: logging.CRITICAL,
}

_FAILED_AUTH_EVENTS = frozenset({AuditEventType.AUTH_FAILURE, AuditEventType.AUTH_B2B_REQUIRED})
# Recovers the id from an entry too damaged to parse.
_ENTRY_ID_PATTERN = re.compile(r'"id"\s*:\s*"(audit-[^"\\]+)"')


def _checksum_payload(entry_dict: dict[str, Any]) -> dict[str, Any]:
    payload = dict(entry_dict)
    payload.pop("signature", None)
    payload.pop("signature_algorithm", None)
    payload["data_integrity"] = {**payload.get("data_integrity", {}), "checksum": ""}
    return payload


def _signature_payload(entry_dict: dict[str, Any]) -> dict[str, Any]:
    payload = dict(entry_dict)
    payload.pop("signature", None)
    payload.pop("signature_algorithm", None)
    return payload


def _coerce_result(result: AuditResult | str | bool) -> AuditResult:
    if isinstance(result, AuditResult):
        return result
    if isinstance(result, bool):
        return AuditResult.SUCCESS if result else AuditResult.FAILURE
    return AuditResult(result.lower())


def _recover_entry_id(line: str) -> str | None:
    match = _ENTRY_ID_PATTERN.search(line)
    return match.group(1) if match else None


class AuditLogger:
    """Single-writer, tamper-evident audit trail.

    Every entry carries a sha256 checksum of its own content and the id of
    the entry written before it, and is signed with HMAC-SHA256. Chain
    assignment and the append share one critical section so concurrent
    callers can never interleave.
    """

    def __init__(
        self,
        store: LogStore,
        secret: str | bytes | None = None,
        *,
        retention_days: int = 365,
        console_output: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if secret is None:
            logger.warning(
                "AUDIT_SECRET not configured; generated an ephemeral signing secret. "
                "Entries written by this process will not verify after restart."
            )
            secret = secrets.token_hex(32)
        self._secret = secret.encode("utf-8") if isinstance(secret, str) else secret
        self._store = store
        self._retention_days = retention_days
        self._console_output = console_output
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_entry_id: str | None = None
        self._opened = False

    @classmethod
    def from_settings(cls, settings: AuditSettings) -> "AuditLogger":
        store: LogStore
        if settings.store == "sqlite":
            store = SqliteLogStore(settings.sqlite_path)
        else:
            store = JsonlFileLogStore(
                settings.log_dir,
                rotation_size_bytes=settings.rotation_size_mb * 1024 * 1024,
            )
        return cls(
            store,
            settings.secret,
            retention_days=settings.retention_days,
            console_output=settings.console_output,
        )

    @property
    def last_entry_id(self) -> str | None:
        return self._last_entry_id

    @property
    def is_open(self) -> bool:
        return self._opened

    def open(self) -> None:
        """Open the store and resume the chain from the last persisted entry."""
        if self._opened:
            return
        try:
            self._store.open()
            last_line = self._store.last_line()
        except STORE_ERRORS as exc:
            raise AuditLogInitError(f"Failed to open audit log store: {exc}") from exc

        self._last_entry_id = None
        if last_line:
            try:
                self._last_entry_id = json.loads(last_line).get("id")
            except (json.JSONDecodeError, AttributeError):
                logger.warning("Last audit entry is unreadable; chain restarts at next entry")
        self._opened = True
        logger.info("Audit log opened last_entry_id=%s", self._last_entry_id)

    def close(self) -> None:
        if not self._opened:
            return
        self._store.close()
        self._opened = False

    def rotate(self) -> None:
        self._require_open()
        self._store.rotate(self._clock())

    def apply_retention(self) -> list[str]:
        self._require_open()
        cutoff = (self._clock() - timedelta(days=self._retention_days)).date()
        removed = self._store.apply_retention(cutoff)
        if removed:
            logger.info(
                "Audit retention removed %d partition(s) older than %s", len(removed), cutoff
            )
        return removed

    async def log_event(
        self,
        event_type: AuditEventType,
        *,
        action: str,
        result: AuditResult | str | bool = AuditResult.SUCCESS,
        user_id: str | None = None,
        account_id: str | None = None,
        session_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
        affected_records: Iterable[str] | None = None,
    ) -> AuditLogEntry:
        self._require_open()
        outcome = _coerce_result(result)
        safe_details = normalize_json(redact_sensitive_fields(details or {}))

        async with self._lock:
            now = self._clock()
            entry = AuditLogEntry(
                id=f"audit-{int(now.timestamp() * 1000)}-{uuid4().hex[:12]}",
                timestamp=now.isoformat(),
                event_type=event_type,
                severity=severity_for(event_type, outcome),
                action=action,
                result=outcome,
                user_id=user_id,
                account_id=account_id,
                session_id=session_id,
                ip_address=ip_address,
                user_agent=user_agent,
                details=safe_details,
                affected_records=list(affected_records or []),
                data_integrity=DataIntegrity(checksum="", previous_entry_id=self._last_entry_id),
            )
            entry.data_integrity.checksum = self._checksum(entry.to_dict())
            entry.signature_algorithm = SIGNATURE_ALGORITHM
            entry.signature = self._sign(entry.to_dict())

            self._store.append(entry.id, now, canonical_json(entry.to_dict()))
            self._last_entry_id = entry.id

        if self._console_output:
            logger.log(
                _CONSOLE_LEVELS[entry.severity],
                "AUDIT event_type=%s severity=%s action=%s result=%s user_id=%s account_id=%s",
                entry.event_type.value,
                entry.severity.value,
                entry.action,
                entry.result.value,
                entry.user_id,
                entry.account_id,
            )
        return entry

    async def log_security_event(
        self,
        event_type: AuditEventType,
        *,
        action: str,
        threat_details: dict[str, Any],
        security_action: Literal["BLOCKED", "ALLOWED"] = "BLOCKED",
        user_id: str | None = None,
        account_id: str | None = None,
        session_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditLogEntry:
        return await self.log_event(
            event_type,
            action=action,
            result=AuditResult.FAILURE if security_action == "BLOCKED" else AuditResult.SUCCESS,
            user_id=user_id,
            account_id=account_id,
            session_id=session_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={
                "threat": threat_details,
                "security_action": security_action,
                "detected_at": self._clock().isoformat(),
            },
        )

    async def verify_integrity(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> IntegrityReport:
        """Replay entries in write order and report every mismatch found.

        The chain link of the first entry in the range is not checked since
        its predecessor may lie outside the range.
        """
        errors: list[IntegrityError] = []
        checked = 0
        previous_id: str | None = None
        first = True

        async with self._lock:
            lines = list(self._store.iter_lines(*self._date_bounds(start, end)))

        for line_number, line in enumerate(lines, start=1):
            try:
                raw = json.loads(line)
                entry = AuditLogEntry.from_dict(raw)
            except (json.JSONDecodeError, KeyError, ValueError, TypeError, AttributeError) as exc:
                errors.append(
                    IntegrityError(
                        kind=IntegrityErrorKind.PARSE,
                        entry_id=_recover_entry_id(line),
                        message=f"Unreadable audit entry at position {line_number}: {exc}",
                    )
                )
                first = False
                previous_id = None
                continue

            if not self._in_range(entry, start, end):
                continue
            checked += 1

            expected_checksum = self._checksum(raw)
            if not digests_match(expected_checksum, entry.data_integrity.checksum):
                errors.append(
                    IntegrityError(
                        kind=IntegrityErrorKind.CHECKSUM,
                        entry_id=entry.id,
                        message=f"Checksum mismatch for entry {entry.id}",
                    )
                )

            if entry.signature_algorithm != SIGNATURE_ALGORITHM or not digests_match(
                self._sign(raw), entry.signature
            ):
                errors.append(
                    IntegrityError(
                        kind=IntegrityErrorKind.SIGNATURE,
                        entry_id=entry.id,
                        message=f"Invalid signature for entry {entry.id}",
                    )
                )

            if not first and entry.data_integrity.previous_entry_id != previous_id:
                errors.append(
                    IntegrityError(
                        kind=IntegrityErrorKind.CHAIN,
                        entry_id=entry.id,
                        message=(
                            f"Chain broken at entry {entry.id}: expected previous "
                            f"{previous_id}, found {entry.data_integrity.previous_entry_id}"
                        ),
                    )
                )
            previous_id = entry.id
            first = False

        if errors:
            logger.warning("Audit integrity check found %d problem(s)", len(errors))
        return IntegrityReport(valid=not errors, entries_checked=checked, errors=errors)

    async def query_logs(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        user_id: str | None = None,
        account_id: str | None = None,
        event_types: Iterable[AuditEventType] | None = None,
        severities: Iterable[AuditSeverity] | None = None,
        result: AuditResult | None = None,
        limit: int | None = None,
    ) -> list[AuditLogEntry]:
        wanted_types = frozenset(event_types) if event_types else None
        wanted_severities = frozenset(severities) if severities else None

        async with self._lock:
            lines = list(self._store.iter_lines(*self._date_bounds(start, end)))

        matches: list[AuditLogEntry] = []
        for line in lines:
            try:
                entry = AuditLogEntry.from_dict(json.loads(line))
            except (json.JSONDecodeError, KeyError, ValueError, TypeError, AttributeError):
                logger.warning("Skipping unreadable audit entry during query")
                continue
            if not self._in_range(entry, start, end):
                continue
            if user_id is not None and entry.user_id != user_id:
                continue
            if account_id is not None and entry.account_id != account_id:
                continue
            if wanted_types is not None and entry.event_type not in wanted_types:
                continue
            if wanted_severities is not None and entry.severity not in wanted_severities:
                continue
            if result is not None and entry.result is not result:
                continue
            matches.append(entry)
            if limit is not None and len(matches) >= limit:
                break
        return matches

    async def generate_compliance_report(
        self,
        start: datetime,
        end: datetime,
    ) -> ComplianceReport:
        started = time.perf_counter()
        entries = await self.query_logs(start=start, end=end)
        summary = ComplianceSummary(total_events=len(entries))
        security_events: list[AuditLogEntry] = []

        for entry in entries:
            if entry.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
                summary.security_events += 1
                security_events.append(entry)
            if entry.event_type in _FAILED_AUTH_EVENTS:
                summary.failed_authentications += 1
            elif entry.event_type is AuditEventType.RATE_LIMIT_EXCEEDED:
                summary.rate_limit_violations += 1
            elif entry.event_type is AuditEventType.MALICIOUS_PAYLOAD_DETECTED:
                summary.malicious_payloads += 1
            if entry.event_type.value.startswith("BULK_"):
                summary.bulk_operations.total += 1
                if entry.result is AuditResult.SUCCESS:
                    summary.bulk_operations.successful += 1
                else:
                    summary.bulk_operations.failed += 1

        integrity = await self.verify_integrity(start, end)
        logger.info(
            "Compliance report generated events=%d security_events=%d valid=%s duration_ms=%d",
            summary.total_events,
            summary.security_events,
            integrity.valid,
            int((time.perf_counter() - started) * 1000),
        )
        return ComplianceReport(
            period_start=start,
            period_end=end,
            generated_at=self._clock(),
            summary=summary,
            security_events=security_events,
            integrity_check=integrity,
        )

    def _checksum(self, entry_dict: dict[str, Any]) -> str:
        return sha256_hex(canonical_json(_checksum_payload(entry_dict)))

    def _sign(self, entry_dict: dict[str, Any]) -> str:
        return hmac_sha256_hex(self._secret, canonical_json(_signature_payload(entry_dict)))

    def _require_open(self) -> None:
        if not self._opened:
            raise RuntimeError("Audit logger is not open")

    @staticmethod
    def _date_bounds(
        start: datetime | None, end: datetime | None
    ) -> tuple[date | None, date | None]:
        return (start.date() if start else None, end.date() if end else None)

    @staticmethod
    def _in_range(entry: AuditLogEntry, start: datetime | None, end: datetime | None) -> bool:
        if start is None and end is None:
            return True
        try:
            stamp = datetime.fromisoformat(entry.timestamp)
        except ValueError:
            # Malformed timestamps stay in scope so integrity checks flag them.
            return True
        if start is not None and stamp < start:
            return False
        if end is not None and stamp > end:
            return False
        return True
