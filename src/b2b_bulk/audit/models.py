"""Audit trail records and reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

SIGNATURE_ALGORITHM = "HMAC-SHA256"


class AuditEventType(str, Enum):
    AUTH_SUCCESS = "AUTH_SUCCESS"
    AUTH_FAILURE = "AUTH_FAILURE"
    AUTH_B2B_REQUIRED = "AUTH_B2B_REQUIRED"
    BULK_UPLOAD_START = "BULK_UPLOAD_START"
    BULK_UPLOAD_SUCCESS = "BULK_UPLOAD_SUCCESS"
    BULK_UPLOAD_FAILURE = "BULK_UPLOAD_FAILURE"
    BULK_OPERATION_ROLLBACK = "BULK_OPERATION_ROLLBACK"
    VALIDATION_FAILURE = "VALIDATION_FAILURE"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    MALICIOUS_PAYLOAD_DETECTED = "MALICIOUS_PAYLOAD_DETECTED"
    FILE_SIZE_EXCEEDED = "FILE_SIZE_EXCEEDED"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    ORDER_LIMIT_EXCEEDED = "ORDER_LIMIT_EXCEEDED"
    CREDIT_LIMIT_EXCEEDED = "CREDIT_LIMIT_EXCEEDED"
    INVALID_SKU_PATTERN = "INVALID_SKU_PATTERN"


class AuditSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


_CRITICAL_EVENTS = frozenset(
    {AuditEventType.MALICIOUS_PAYLOAD_DETECTED, AuditEventType.UNAUTHORIZED_ACCESS}
)
_ERROR_EVENTS = frozenset(
    {
        AuditEventType.AUTH_FAILURE,
        AuditEventType.RATE_LIMIT_EXCEEDED,
        AuditEventType.CREDIT_LIMIT_EXCEEDED,
    }
)
_WARNING_EVENTS = frozenset(
    {
        AuditEventType.FILE_SIZE_EXCEEDED,
        AuditEventType.ORDER_LIMIT_EXCEEDED,
        AuditEventType.INVALID_SKU_PATTERN,
    }
)


def severity_for(event_type: AuditEventType, result: AuditResult) -> AuditSeverity:
    """Severity is derived, never supplied by the caller.

    Critical event types win over a failed result; a failed result wins over
    the warning-level event types.
    """
    if event_type in _CRITICAL_EVENTS:
        return AuditSeverity.CRITICAL
    if result is AuditResult.FAILURE or event_type in _ERROR_EVENTS:
        return AuditSeverity.ERROR
    if event_type in _WARNING_EVENTS:
        return AuditSeverity.WARNING
    return AuditSeverity.INFO


@dataclass
class DataIntegrity:
    checksum: str
    previous_entry_id: str | None


@dataclass
class AuditLogEntry:
    id: str
    timestamp: str
    event_type: AuditEventType
    severity: AuditSeverity
    action: str
    result: AuditResult
    user_id: str | None = None
    account_id: str | None = None
    session_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    affected_records: list[str] = field(default_factory=list)
    data_integrity: DataIntegrity = field(
        default_factory=lambda: DataIntegrity(checksum="", previous_entry_id=None)
    )
    signature: str | None = None
    signature_algorithm: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "action": self.action,
            "result": self.result.value,
            "user_id": self.user_id,
            "account_id": self.account_id,
            "session_id": self.session_id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "details": self.details,
            "affected_records": list(self.affected_records),
            "data_integrity": {
                "checksum": self.data_integrity.checksum,
                "previous_entry_id": self.data_integrity.previous_entry_id,
            },
            "signature": self.signature,
            "signature_algorithm": self.signature_algorithm,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditLogEntry":
        integrity = data.get("data_integrity") or {}
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            event_type=AuditEventType(data["event_type"]),
            severity=AuditSeverity(data["severity"]),
            action=data["action"],
            result=AuditResult(data["result"]),
            user_id=data.get("user_id"),
            account_id=data.get("account_id"),
            session_id=data.get("session_id"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            details=dict(data.get("details") or {}),
            affected_records=list(data.get("affected_records") or []),
            data_integrity=DataIntegrity(
                checksum=integrity.get("checksum", ""),
                previous_entry_id=integrity.get("previous_entry_id"),
            ),
            signature=data.get("signature"),
            signature_algorithm=data.get("signature_algorithm"),
        )


class IntegrityErrorKind(str, Enum):
    CHECKSUM = "checksum"
    SIGNATURE = "signature"
    CHAIN = "chain"
    PARSE = "parse"


@dataclass(frozen=True)
class IntegrityError:
    kind: IntegrityErrorKind
    entry_id: str | None
    message: str


@dataclass
class IntegrityReport:
    valid: bool
    entries_checked: int
    errors: list[IntegrityError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "entries_checked": self.entries_checked,
            "errors": [
                {"kind": e.kind.value, "entry_id": e.entry_id, "message": e.message}
                for e in self.errors
            ],
        }


@dataclass
class BulkOperationCounts:
    total: int = 0
    successful: int = 0
    failed: int = 0


@dataclass
class ComplianceSummary:
    total_events: int = 0
    security_events: int = 0
    failed_authentications: int = 0
    rate_limit_violations: int = 0
    malicious_payloads: int = 0
    bulk_operations: BulkOperationCounts = field(default_factory=BulkOperationCounts)


@dataclass
class ComplianceReport:
    period_start: datetime
    period_end: datetime
    generated_at: datetime
    summary: ComplianceSummary
    security_events: list[AuditLogEntry]
    integrity_check: IntegrityReport

    def to_dict(self) -> dict[str, Any]:
        bulk = self.summary.bulk_operations
        return {
            "period": {
                "start": self.period_start.isoformat(),
                "end": self.period_end.isoformat(),
            },
            "generated_at": self.generated_at.isoformat(),
            "summary": {
                "total_events": self.summary.total_events,
                "security_events": self.summary.security_events,
                "failed_authentications": self.summary.failed_authentications,
                "rate_limit_violations": self.summary.rate_limit_violations,
                "malicious_payloads": self.summary.malicious_payloads,
                "bulk_operations": {
                    "total": bulk.total,
                    "successful": bulk.successful,
                    "failed": bulk.failed,
                },
            },
            "security_events": [entry.to_dict() for entry in self.security_events],
            "integrity_check": self.integrity_check.to_dict(),
        }
