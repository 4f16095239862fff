"""Bulk-order orchestration: ingestion to fulfillment to history, audited."""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator

from b2b_bulk.audit.logger import AuditLogger
from b2b_bulk.audit.models import AuditEventType, AuditResult, ComplianceReport
from b2b_bulk.auth.context import B2BUserContext
from b2b_bulk.fulfillment.capabilities import AlternativeSuggestion, OrderCanceller
from b2b_bulk.fulfillment.engine import BatchFulfillmentEngine, BulkProcessingResult
from b2b_bulk.fulfillment.progress import CancellationToken, ProgressChannel
from b2b_bulk.history.models import RollbackResult
from b2b_bulk.history.service import HistoryProgressRecorder, OperationHistory
from b2b_bulk.ingestion.file_scanner import FileScanner, VirusScanner
from b2b_bulk.ingestion.models import ParseErrorKind, ParseResult, Priority
from b2b_bulk.ingestion.parser import SecureBulkParser
from b2b_bulk.policy.engine import AuthorizationPolicy
from b2b_bulk.policy.models import (
    AuthorizationResult,
    OperationType,
    Permission,
    ProposedOperation,
)

logger = logging.getLogger(__name__)


class BulkOrderRequest(BaseModel):
    """Either structured ``items`` or ``raw_input`` text, never both."""

    items: list[dict[str, Any]] | None = None
    raw_input: str | None = None
    enable_alternatives: bool = True
    priority: Priority = Priority.NORMAL
    # Expected order value for the preflight limit check.
    declared_value: float | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _exactly_one_source(self) -> BulkOrderRequest:
        if (self.items is None) == (self.raw_input is None):
            raise ValueError("Provide exactly one of 'items' or 'raw_input'")
        return self


class ErrorDetail(BaseModel):
    kind: str
    message: str
    row: int | None = None
    sku: str | None = None


class SuggestionDetail(BaseModel):
    sku: str
    name: str
    similarity: float
    available: bool
    price: float | None = None
    reason: str

    @classmethod
    def from_suggestion(cls, suggestion: AlternativeSuggestion) -> SuggestionDetail:
        return cls(
            sku=suggestion.sku,
            name=suggestion.name,
            similarity=suggestion.similarity,
            available=suggestion.available,
            price=suggestion.price,
            reason=suggestion.reason,
        )


class AuthorizationDetail(BaseModel):
    reason: str | None = None
    missing_permission: str | None = None
    limit_type: str | None = None
    current_limit: float | None = None
    requested_amount: float | None = None

    @classmethod
    def from_result(cls, result: AuthorizationResult) -> AuthorizationDetail:
        return cls(
            reason=result.reason,
            missing_permission=result.missing_permission,
            limit_type=result.limit_type.value if result.limit_type else None,
            current_limit=result.current_limit,
            requested_amount=result.requested_amount,
        )


class BulkOrderResponse(BaseModel):
    success: bool
    operation_id: str | None = None
    items_processed: int = 0
    items_added: int = 0
    items_failed: int = 0
    total_quantity: int = 0
    total_value: float = 0.0
    errors: list[ErrorDetail] = Field(default_factory=list)
    suggestions: dict[str, list[SuggestionDetail]] = Field(default_factory=dict)
    error: str | None = None
    authorization: AuthorizationDetail | None = None
    cancelled: bool = False


class RollbackRequest(BaseModel):
    operation_id: str = Field(min_length=1, max_length=128)
    reason: str = Field(min_length=1, max_length=500)


def _parse_errors(parsed: ParseResult) -> list[ErrorDetail]:
    return [
        ErrorDetail(kind=e.kind.value, message=e.message, row=e.row or None)
        for e in parsed.errors
    ]


class _AccountSpendGuard:
    """Re-checks the account's limits against priced cart value during fulfillment."""

    def __init__(
        self, policy: AuthorizationPolicy, user: B2BUserContext, item_count: int
    ) -> None:
        self._policy = policy
        self._user = user
        self._item_count = item_count

    async def check_order_value(self, order_value: float) -> AuthorizationResult:
        return await self._policy.authorize_bulk_operation(
            self._user,
            ProposedOperation(
                type=OperationType.CREATE,
                total_value=order_value,
                item_count=self._item_count,
            ),
        )


class BulkOrderService:
    """Runs one bulk request end to end for an authenticated B2B user.

    Every rejection and every business outcome is written to the audit
    trail before the response is returned.
    """

    def __init__(
        self,
        *,
        parser: SecureBulkParser,
        policy: AuthorizationPolicy,
        engine: BatchFulfillmentEngine,
        history: OperationHistory,
        audit: AuditLogger,
        canceller: OrderCanceller,
        file_scanner: FileScanner | None = None,
        virus_scanner: VirusScanner | None = None,
    ) -> None:
        self._parser = parser
        self._policy = policy
        self._engine = engine
        self._history = history
        self._audit = audit
        self._canceller = canceller
        self._file_scanner = file_scanner
        self._virus_scanner = virus_scanner

    async def submit(
        self,
        request: BulkOrderRequest,
        user: B2BUserContext,
        *,
        metadata: dict[str, Any] | None = None,
        progress: ProgressChannel | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> BulkOrderResponse:
        try:
            return await self._submit(request, user, metadata, progress, cancel_token)
        finally:
            if progress is not None and not progress.closed:
                progress.close()

    async def _submit(
        self,
        request: BulkOrderRequest,
        user: B2BUserContext,
        metadata: dict[str, Any] | None,
        progress: ProgressChannel | None,
        cancel_token: CancellationToken | None,
    ) -> BulkOrderResponse:
        if request.raw_input is not None:
            parsed = await self._parser.parse_text(
                request.raw_input, default_priority=request.priority
            )
        else:
            parsed = await self._parser.parse_items(
                request.items or [], default_priority=request.priority
            )
        await self._audit_parse(parsed, user)

        if not parsed.items:
            return BulkOrderResponse(
                success=False,
                errors=_parse_errors(parsed),
                error="No valid line items in request",
            )

        skus = [item.sku for item in parsed.items]
        pattern_check = await self._policy.validate_sku_patterns(user, skus)
        if not pattern_check.valid:
            return BulkOrderResponse(
                success=False,
                errors=[
                    ErrorDetail(kind="validation", message="SKU does not match pattern", sku=sku)
                    for sku in pattern_check.invalid_skus
                ],
                error="Invalid SKU format",
            )

        authorization = await self._policy.authorize_bulk_operation(
            user,
            ProposedOperation(
                type=OperationType.CREATE,
                total_value=request.declared_value or 0.0,
                item_count=len(parsed.items),
            ),
        )
        if not authorization.allowed:
            return BulkOrderResponse(
                success=False,
                error=authorization.reason,
                authorization=AuthorizationDetail.from_result(authorization),
            )

        record = await self._history.create_operation(
            user_id=user.user_id,
            account_id=user.account_id,
            items=parsed.items,
            metadata={
                "request_id": user.request_id,
                "ip_address": user.ip_address,
                "user_agent": user.user_agent,
                "priority": request.priority.value,
                **(metadata or {}),
            },
        )
        await self._history.mark_processing(record.id)
        result = await self._engine.process(
            parsed.items,
            recorder=HistoryProgressRecorder(self._history, record.id),
            progress=progress,
            cancel_token=cancel_token,
            enable_alternatives=request.enable_alternatives,
            spend_guard=_AccountSpendGuard(self._policy, user, len(parsed.items)),
        )
        if result.total_value > 0:
            self._policy.record_order(user.account_id, result.total_value)

        return self._build_response(record.id, parsed, result)

    async def submit_file(
        self,
        data: bytes,
        filename: str,
        user: B2BUserContext,
        *,
        mime_type: str | None = None,
        enable_alternatives: bool = True,
        priority: Priority = Priority.NORMAL,
        declared_value: float | None = None,
        progress: ProgressChannel | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> BulkOrderResponse:
        safe_name, text, rejection = await self._screen_upload(data, filename, mime_type, user)
        if rejection is not None:
            if progress is not None:
                progress.close()
            return rejection

        request = BulkOrderRequest(
            raw_input=text,
            enable_alternatives=enable_alternatives,
            priority=priority,
            declared_value=declared_value,
        )
        return await self.submit(
            request,
            user,
            metadata={"filename": safe_name, "file_hash": hashlib.sha256(data).hexdigest()},
            progress=progress,
            cancel_token=cancel_token,
        )

    async def _screen_upload(
        self,
        data: bytes,
        filename: str,
        mime_type: str | None,
        user: B2BUserContext,
    ) -> tuple[str, str, BulkOrderResponse | None]:
        """Static scan, virus scan and decoding; returns (name, text, rejection)."""
        safe_name = filename
        if self._file_scanner is not None:
            scan = self._file_scanner.scan(data, filename, mime_type)
            safe_name = scan.sanitized_filename
            if scan.size_exceeded:
                await self._audit.log_event(
                    AuditEventType.FILE_SIZE_EXCEEDED,
                    action="bulk_upload.file_scan",
                    result=AuditResult.FAILURE,
                    details={"filename": safe_name, "size": scan.size},
                    **user.audit_fields(),
                )
                return safe_name, "", BulkOrderResponse(success=False, error=scan.threats[0])
            if not scan.safe:
                await self._audit.log_security_event(
                    AuditEventType.MALICIOUS_PAYLOAD_DETECTED,
                    action="bulk_upload.file_scan",
                    threat_details={
                        "filename": safe_name,
                        "threats": list(scan.threats),
                        "detected_type": scan.detected_type,
                    },
                    **user.audit_fields(),
                )
                return (
                    safe_name,
                    "",
                    BulkOrderResponse(
                        success=False,
                        error="File security check failed",
                        errors=[ErrorDetail(kind="security", message=t) for t in scan.threats],
                    ),
                )

        if self._virus_scanner is not None:
            verdict = await self._virus_scanner.scan(data, safe_name)
            if not verdict.clean:
                await self._audit.log_security_event(
                    AuditEventType.MALICIOUS_PAYLOAD_DETECTED,
                    action="bulk_upload.virus_scan",
                    threat_details={
                        "filename": safe_name,
                        "signature": verdict.signature,
                        "engine": verdict.engine,
                    },
                    **user.audit_fields(),
                )
                return (
                    safe_name,
                    "",
                    BulkOrderResponse(success=False, error="Virus detected in uploaded file"),
                )

        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError:
            await self._audit.log_event(
                AuditEventType.VALIDATION_FAILURE,
                action="bulk_upload.decode",
                result=AuditResult.FAILURE,
                details={"filename": safe_name, "reason": "not valid UTF-8"},
                **user.audit_fields(),
            )
            return (
                safe_name,
                "",
                BulkOrderResponse(success=False, error="File is not valid UTF-8 text"),
            )
        return safe_name, text, None

    async def rollback(self, request: RollbackRequest, user: B2BUserContext) -> RollbackResult:
        """Roll back an operation owned by the user, or any in the account for approvers.

        Raises RollbackIneligibleError when the operation cannot be rolled back.
        """
        record = await self._history.get_record(request.operation_id)
        if record is not None:
            owner = record.user_id == user.user_id
            approver = record.account_id == user.account_id and (
                self._policy.has_permission(user, Permission.BULK_ORDER_APPROVE)
            )
            if not (owner or approver):
                await self._audit.log_event(
                    AuditEventType.UNAUTHORIZED_ACCESS,
                    action="bulk_operation.rollback",
                    result=AuditResult.FAILURE,
                    details={"operation_id": request.operation_id},
                    **user.audit_fields(),
                )
                return RollbackResult(
                    success=False,
                    operation_id=request.operation_id,
                    errors=["Not authorized to roll back this operation"],
                )
        return await self._history.rollback_operation(
            request.operation_id,
            actor_id=user.user_id,
            reason=request.reason,
            canceller=self._canceller,
        )

    async def compliance_report(self, start: datetime, end: datetime) -> ComplianceReport:
        return await self._audit.generate_compliance_report(start, end)

    async def _audit_parse(self, parsed: ParseResult, user: B2BUserContext) -> None:
        if parsed.threats:
            await self._audit.log_security_event(
                AuditEventType.MALICIOUS_PAYLOAD_DETECTED,
                action="bulk_upload.parse",
                threat_details={
                    "rows": [threat.row for threat in parsed.threats],
                    "families": sorted(
                        {m.family.value for threat in parsed.threats for m in threat.matches}
                    ),
                },
                **user.audit_fields(),
            )

        if parsed.aborted:
            error = parsed.errors[0]
            event_type = {
                ParseErrorKind.LIMIT: AuditEventType.FILE_SIZE_EXCEEDED,
                ParseErrorKind.SECURITY: AuditEventType.MALICIOUS_PAYLOAD_DETECTED,
            }.get(error.kind, AuditEventType.VALIDATION_FAILURE)
            await self._audit.log_event(
                event_type,
                action="bulk_upload.parse",
                result=AuditResult.FAILURE,
                details={"kind": error.kind.value, "message": error.message},
                **user.audit_fields(),
            )
            return

        invalid = parsed.errors_of(ParseErrorKind.VALIDATION)
        if invalid:
            await self._audit.log_event(
                AuditEventType.VALIDATION_FAILURE,
                action="bulk_upload.parse",
                result=AuditResult.FAILURE,
                details={
                    "invalid_rows": len(invalid),
                    "first_errors": [f"row {e.row}: {e.message}" for e in invalid[:10]],
                },
                **user.audit_fields(),
            )

    @staticmethod
    def _build_response(
        operation_id: str,
        parsed: ParseResult,
        result: BulkProcessingResult,
    ) -> BulkOrderResponse:
        errors = _parse_errors(parsed)
        errors.extend(
            ErrorDetail(kind=e.kind, message=e.error, sku=e.sku) for e in result.errors
        )
        denial = result.limit_denial
        return BulkOrderResponse(
            # Rows dropped during parsing make the request a partial success at best.
            success=result.success and not parsed.errors,
            operation_id=operation_id,
            items_processed=result.items_processed,
            items_added=result.items_added,
            items_failed=result.items_failed,
            total_quantity=result.total_quantity,
            total_value=result.total_value,
            errors=errors,
            suggestions={
                sku: [SuggestionDetail.from_suggestion(s) for s in suggestions]
                for sku, suggestions in result.suggestions.items()
            },
            cancelled=result.cancelled,
            error=denial.reason if denial is not None else None,
            authorization=(
                AuthorizationDetail.from_result(denial) if denial is not None else None
            ),
        )
