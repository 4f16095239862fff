"""Secure parser for bulk-order uploads and structured item lists."""

from __future__ import annotations

import csv
import io
import logging
from collections.abc import Mapping, Sequence
from typing import Protocol

from pydantic import ValidationError

from b2b_bulk.ingestion.models import (
    LineItem,
    ParseError,
    ParseErrorKind,
    ParseResult,
    ParseSummary,
    Priority,
    RowThreat,
)
from b2b_bulk.ingestion.threats import (
    looks_binary,
    neutralize_formula,
    sanitize_identifier,
    sanitize_text,
    scan_value,
    strip_control_chars,
)
from b2b_bulk.utils.hashing import canonical_json

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROWS = 1000
DEFAULT_MAX_BYTES = 5 * 1024 * 1024

# Canonical field -> accepted header spellings (normalized).
COLUMN_SYNONYMS: dict[str, tuple[str, ...]] = {
    "sku": ("sku", "product_sku", "product", "item", "item_code", "code", "part_number"),
    "quantity": ("quantity", "qty", "amount", "count"),
    "notes": ("notes", "note", "comments", "comment"),
    "reference_id": ("reference_id", "reference", "ref", "po_number"),
    "priority": ("priority",),
}

FIELD_MAX_LENGTHS = {"sku": 100, "notes": 500, "reference_id": 100, "priority": 10}

_PRIORITIES = {p.value: p for p in Priority}


class SkuValidator(Protocol):
    async def sku_exists(self, sku: str) -> bool: ...


def _normalize_header(name: str) -> str:
    return strip_control_chars(name).strip().lower().replace(" ", "_").replace("-", "_")


def _resolve_columns(headers: Sequence[str]) -> dict[str, int]:
    normalized = [_normalize_header(h) for h in headers]
    columns: dict[str, int] = {}
    for field_name, synonyms in COLUMN_SYNONYMS.items():
        for synonym in synonyms:
            if synonym in normalized:
                columns[field_name] = normalized.index(synonym)
                break
    return columns


def _resolve_keys(row: Mapping[str, object]) -> dict[str, object]:
    by_normal = {_normalize_header(str(k)): v for k, v in row.items()}
    resolved: dict[str, object] = {}
    for field_name, synonyms in COLUMN_SYNONYMS.items():
        for synonym in synonyms:
            if synonym in by_normal:
                resolved[field_name] = by_normal[synonym]
                break
    return resolved


class SecureBulkParser:
    """Turns untrusted tabular text or item lists into validated line items.

    Size and row-count limits are fail-fast: exceeding either rejects the
    whole input. Everything else is decided per row, so one bad row never
    hides the good ones. The parser has no side effects beyond the optional
    SKU existence check.
    """

    def __init__(
        self,
        *,
        max_rows: int = DEFAULT_MAX_ROWS,
        max_bytes: int = DEFAULT_MAX_BYTES,
        sku_validator: SkuValidator | None = None,
        default_priority: Priority = Priority.NORMAL,
    ) -> None:
        self._max_rows = max_rows
        self._max_bytes = max_bytes
        self._sku_validator = sku_validator
        self._default_priority = default_priority

    async def parse_text(
        self,
        text: str,
        *,
        default_priority: Priority | None = None,
    ) -> ParseResult:
        size = len(text.encode("utf-8"))
        if size > self._max_bytes:
            return _abort(
                ParseErrorKind.LIMIT,
                f"Input size {size} bytes exceeds maximum of {self._max_bytes} bytes",
            )
        if looks_binary(text):
            return _abort(ParseErrorKind.SECURITY, "Input appears to contain binary content")

        try:
            rows = [
                row
                for row in csv.reader(io.StringIO(text.lstrip("\ufeff")), skipinitialspace=True)
                if any(cell.strip() for cell in row)
            ]
        except csv.Error as exc:
            return _abort(ParseErrorKind.STRUCTURAL, f"Malformed CSV input: {exc}")
        if not rows:
            return _abort(ParseErrorKind.STRUCTURAL, "Input is empty")

        header, data_rows = rows[0], rows[1:]
        columns = _resolve_columns(header)
        missing = [name for name in ("sku", "quantity") if name not in columns]
        if missing:
            return _abort(
                ParseErrorKind.STRUCTURAL,
                "Missing required column(s): " + ", ".join(m.upper() for m in missing),
            )
        if len(data_rows) > self._max_rows:
            return _abort(
                ParseErrorKind.LIMIT,
                f"Input has {len(data_rows)} rows; maximum is {self._max_rows}",
            )

        raw_rows: list[tuple[int, dict[str, object]]] = []
        for offset, cells in enumerate(data_rows):
            raw = {
                field_name: cells[index] if index < len(cells) else ""
                for field_name, index in columns.items()
            }
            # Header is row 1; data rows keep their line numbers.
            raw_rows.append((offset + 2, raw))
        return await self._build_result(raw_rows, default_priority or self._default_priority)

    async def parse_items(
        self,
        items: Sequence[Mapping[str, object]],
        *,
        default_priority: Priority | None = None,
    ) -> ParseResult:
        if len(items) > self._max_rows:
            return _abort(
                ParseErrorKind.LIMIT,
                f"Input has {len(items)} items; maximum is {self._max_rows}",
            )
        size = len(canonical_json(list(items)))
        if size > self._max_bytes:
            return _abort(
                ParseErrorKind.LIMIT,
                f"Input size {size} bytes exceeds maximum of {self._max_bytes} bytes",
            )
        raw_rows = [(index + 1, _resolve_keys(item)) for index, item in enumerate(items)]
        return await self._build_result(raw_rows, default_priority or self._default_priority)

    async def _build_result(
        self,
        raw_rows: list[tuple[int, dict[str, object]]],
        default_priority: Priority,
    ) -> ParseResult:
        accepted: list[tuple[int, LineItem]] = []
        errors: list[ParseError] = []
        threats: list[RowThreat] = []

        for row_number, raw in raw_rows:
            matches = []
            for column, value in raw.items():
                if value is None:
                    continue
                matches.extend(scan_value(str(value), column))
            if matches:
                threats.append(RowThreat(row=row_number, matches=tuple(matches)))
                families = sorted({m.family.value for m in matches})
                errors.append(
                    ParseError(
                        row=row_number,
                        message="Potential threat detected: " + ", ".join(families),
                        kind=ParseErrorKind.SECURITY,
                        column=matches[0].column,
                    )
                )
                continue

            item, error = self._build_item(row_number, raw, default_priority)
            if error is not None:
                errors.append(error)
                continue
            accepted.append((row_number, item))

        if self._sku_validator is not None and accepted:
            accepted, unknown = await _check_skus(self._sku_validator, accepted)
            errors.extend(unknown)

        errors.sort(key=lambda e: e.row)
        items = tuple(item for _, item in accepted)
        security_rows = len(threats)
        summary = ParseSummary(
            total_rows=len(raw_rows),
            valid_rows=len(items),
            error_rows=len({e.row for e in errors}),
            security_rows=security_rows,
            total_quantity=sum(item.quantity for item in items),
            unique_skus=len({item.sku for item in items}),
        )
        if threats:
            logger.warning(
                "Bulk input rejected %d row(s) for threat patterns", security_rows
            )
        return ParseResult(
            success=bool(items) and not errors,
            items=items,
            errors=tuple(errors),
            summary=summary,
            threats=tuple(threats),
        )

    def _build_item(
        self,
        row_number: int,
        raw: Mapping[str, object],
        default_priority: Priority,
    ) -> tuple[LineItem | None, ParseError | None]:
        sku = sanitize_identifier(str(raw.get("sku") or ""), FIELD_MAX_LENGTHS["sku"])
        if not sku:
            return None, ParseError(row_number, "SKU is required", ParseErrorKind.VALIDATION, "sku")

        quantity_raw = raw.get("quantity")
        quantity = _parse_quantity(quantity_raw)
        if quantity is None or quantity <= 0:
            return None, ParseError(
                row_number,
                f"Quantity must be a positive integer (got {str(quantity_raw)[:20]!r})",
                ParseErrorKind.VALIDATION,
                "quantity",
            )

        priority_raw = sanitize_identifier(
            str(raw.get("priority") or ""), FIELD_MAX_LENGTHS["priority"]
        ).lower()
        if priority_raw and priority_raw not in _PRIORITIES:
            return None, ParseError(
                row_number,
                f"Priority must be one of high, normal, low (got {priority_raw!r})",
                ParseErrorKind.VALIDATION,
                "priority",
            )

        notes = raw.get("notes")
        reference = raw.get("reference_id")
        try:
            item = LineItem(
                sku=sku,
                quantity=quantity,
                notes=sanitize_text(str(notes), FIELD_MAX_LENGTHS["notes"]) if notes else None,
                reference_id=(
                    sanitize_identifier(str(reference), FIELD_MAX_LENGTHS["reference_id"])
                    if reference
                    else None
                ),
                priority=_PRIORITIES.get(priority_raw, default_priority),
            )
        except ValidationError as exc:
            first = exc.errors()[0]
            column = str(first["loc"][0]) if first.get("loc") else None
            return None, ParseError(
                row_number, first.get("msg", "Invalid row"), ParseErrorKind.VALIDATION, column
            )
        return item, None

    @staticmethod
    def generate_template() -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(["sku", "quantity", "notes", "reference", "priority"])
        writer.writerow(["SKU-001", "10", "Deliver to dock 3", "PO-1001", "normal"])
        writer.writerow(["SKU-002", "250", "", "PO-1001", "high"])
        return buffer.getvalue()

    @staticmethod
    def export_items(items: Sequence[LineItem]) -> str:
        """CSV export with formula-leading cells neutralized."""
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(["sku", "quantity", "notes", "reference", "priority"])
        for item in items:
            writer.writerow(
                [
                    neutralize_formula(item.sku),
                    item.quantity,
                    neutralize_formula(item.notes or ""),
                    neutralize_formula(item.reference_id or ""),
                    item.priority.value,
                ]
            )
        return buffer.getvalue()


def _parse_quantity(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    text = str(value or "").strip().replace(",", "")
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        try:
            number = float(text)
        except ValueError:
            return None
        return int(number) if number.is_integer() else None


def _abort(kind: ParseErrorKind, message: str) -> ParseResult:
    logger.info("Bulk input rejected kind=%s reason=%s", kind.value, message)
    return ParseResult(
        success=False,
        errors=(ParseError(row=0, message=message, kind=kind),),
    )


async def _check_skus(
    validator: SkuValidator,
    accepted: list[tuple[int, LineItem]],
) -> tuple[list[tuple[int, LineItem]], list[ParseError]]:
    known: dict[str, bool] = {}
    for _, item in accepted:
        if item.sku not in known:
            known[item.sku] = await validator.sku_exists(item.sku)
    kept = [(row, item) for row, item in accepted if known[item.sku]]
    errors = [
        ParseError(row, f"Unknown SKU: {item.sku}", ParseErrorKind.VALIDATION, "sku")
        for row, item in accepted
        if not known[item.sku]
    ]
    return kept, errors
