"""Ingestion result models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator

from b2b_bulk.ingestion.threats import ThreatMatch


class Priority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


PRIORITY_RANK = {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}


class LineItem(BaseModel):
    """One validated (SKU, quantity) request. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    sku: str = Field(min_length=1, max_length=100)
    quantity: PositiveInt
    notes: str | None = Field(default=None, max_length=2000)
    reference_id: str | None = Field(default=None, max_length=100)
    priority: Priority = Priority.NORMAL

    @field_validator("notes", "reference_id", mode="before")
    @classmethod
    def _blank_to_none(cls, v: object) -> object:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class ParseErrorKind(str, Enum):
    STRUCTURAL = "structural"
    VALIDATION = "validation"
    SECURITY = "security"
    LIMIT = "limit"


@dataclass(frozen=True)
class ParseError:
    row: int
    message: str
    kind: ParseErrorKind
    column: str | None = None


@dataclass(frozen=True)
class ParseSummary:
    total_rows: int = 0
    valid_rows: int = 0
    error_rows: int = 0
    security_rows: int = 0
    total_quantity: int = 0
    unique_skus: int = 0


@dataclass(frozen=True)
class RowThreat:
    row: int
    matches: tuple[ThreatMatch, ...]


@dataclass(frozen=True)
class ParseResult:
    success: bool
    items: tuple[LineItem, ...] = ()
    errors: tuple[ParseError, ...] = ()
    summary: ParseSummary = field(default_factory=ParseSummary)
    threats: tuple[RowThreat, ...] = ()

    @property
    def aborted(self) -> bool:
        """True when the whole input was rejected; whole-input errors carry row 0."""
        return any(e.row == 0 for e in self.errors)

    def errors_of(self, kind: ParseErrorKind) -> list[ParseError]:
        return [e for e in self.errors if e.kind is kind]
