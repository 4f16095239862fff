"""Configuration management for the B2B bulk-order subsystem."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

_config_logger = logging.getLogger(__name__)

DEFAULT_SKU_PATTERN = r"^[A-Z0-9][A-Z0-9_-]*$"


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class AuditSettings(BaseModel):
    log_dir: str = Field(default="./data/audit-logs")
    store: Literal["file", "sqlite"] = Field(default="file")
    sqlite_path: str = Field(default="./data/audit.sqlite")
    rotation_size_mb: int = Field(default=100, ge=1, le=10_240)
    retention_days: int = Field(default=365, ge=1)
    secret: str | None = Field(default=None, repr=False)
    console_output: bool = Field(default=False)


class HistorySettings(BaseModel):
    storage_dir: str = Field(default="./data/bulk-operation-history")
    rollback_window_hours: int = Field(default=24, ge=1, le=24 * 30)
    retention_days: int = Field(default=90, ge=1)
    max_records_per_user: int = Field(default=1000, ge=1)


class PolicySettings(BaseModel):
    path: str | None = Field(
        default=None,
        description="Optional role policy YAML; built-in roles are used when unset.",
    )
    sku_pattern: str = Field(default=DEFAULT_SKU_PATTERN)


class IngestionSettings(BaseModel):
    max_upload_bytes: int = Field(default=5 * 1024 * 1024, ge=1)
    max_rows: int = Field(default=1000, ge=1, le=100_000)
    allowed_extensions: tuple[str, ...] = Field(default=(".csv", ".txt"))

    @field_validator("allowed_extensions")
    @classmethod
    def _normalize_extensions(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        normalized = []
        for ext in value:
            ext = ext.strip().lower()
            if not ext:
                continue
            normalized.append(ext if ext.startswith(".") else f".{ext}")
        return tuple(normalized)


class FulfillmentSettings(BaseModel):
    batch_size: int = Field(default=10, ge=1, le=500)
    max_concurrent: int = Field(default=5, ge=1, le=100)
    enable_alternatives: bool = Field(default=True)


class AlternativesSettings(BaseModel):
    max_suggestions: int = Field(default=3, ge=1, le=20)
    min_similarity: float = Field(default=0.3, ge=0.0, le=1.0)
    price_tolerance_percent: float = Field(default=20.0, gt=0.0, le=100.0)
    cross_brand: bool = Field(default=True)


class Settings(BaseModel):
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    history: HistorySettings = Field(default_factory=HistorySettings)
    policy: PolicySettings = Field(default_factory=PolicySettings)
    ingestion: IngestionSettings = Field(default_factory=IngestionSettings)
    fulfillment: FulfillmentSettings = Field(default_factory=FulfillmentSettings)
    alternatives: AlternativesSettings = Field(default_factory=AlternativesSettings)


ENV_KEYS = {
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "audit_dir": "AUDIT_LOG_DIR",
    "audit_store": "AUDIT_STORE",
    "audit_sqlite_path": "AUDIT_SQLITE_PATH",
    "audit_rotation_mb": "AUDIT_ROTATION_SIZE_MB",
    "audit_retention_days": "AUDIT_RETENTION_DAYS",
    "audit_secret": "AUDIT_SECRET",
    "audit_console": "AUDIT_CONSOLE_OUTPUT",
    "history_dir": "BULK_HISTORY_DIR",
    "rollback_window_hours": "BULK_ROLLBACK_WINDOW_HOURS",
    "history_retention_days": "BULK_HISTORY_RETENTION_DAYS",
    "history_max_per_user": "BULK_HISTORY_MAX_PER_USER",
    "role_policy_path": "ROLE_POLICY_PATH",
    "sku_pattern": "B2B_SKU_PATTERN",
    "max_upload_bytes": "BULK_MAX_UPLOAD_BYTES",
    "max_rows": "BULK_MAX_ROWS",
    "allowed_extensions": "BULK_ALLOWED_EXTENSIONS",
    "batch_size": "BULK_BATCH_SIZE",
    "max_concurrent": "BULK_MAX_CONCURRENT",
    "enable_alternatives": "BULK_ENABLE_ALTERNATIVES",
    "alternatives_max": "ALTERNATIVES_MAX",
    "alternatives_min_similarity": "ALTERNATIVES_MIN_SIMILARITY",
    "alternatives_price_tolerance": "ALTERNATIVES_PRICE_TOLERANCE_PERCENT",
    "alternatives_cross_brand": "ALTERNATIVES_CROSS_BRAND",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    """Resolve relative paths against the project root.

    Absolute paths are taken as given so deployments can put audit logs on a
    dedicated volume; relative paths must stay inside the project root.
    """
    candidate = Path(path)
    if candidate.is_absolute():
        return str(candidate.resolve())
    root = _project_root().resolve()
    resolved = (root / candidate).resolve()
    if not resolved.is_relative_to(root):
        raise ValueError(f"Path traversal detected: '{path}' resolves outside project root")
    return str(resolved)


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])
    policy_path_env = os.getenv(ENV_KEYS["role_policy_path"], "").strip()
    extensions = _split_csv(os.getenv(ENV_KEYS["allowed_extensions"]))

    settings_data: dict[str, object] = {
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "audit": {
            "log_dir": _resolve_path(os.getenv(ENV_KEYS["audit_dir"], AuditSettings().log_dir)),
            "store": os.getenv(ENV_KEYS["audit_store"], AuditSettings().store).strip().lower(),
            "sqlite_path": _resolve_path(
                os.getenv(ENV_KEYS["audit_sqlite_path"], AuditSettings().sqlite_path)
            ),
            "rotation_size_mb": _env_int(
                ENV_KEYS["audit_rotation_mb"], AuditSettings().rotation_size_mb
            ),
            "retention_days": _env_int(
                ENV_KEYS["audit_retention_days"], AuditSettings().retention_days
            ),
            "secret": os.getenv(ENV_KEYS["audit_secret"]) or None,
            "console_output": _env_bool(
                ENV_KEYS["audit_console"], AuditSettings().console_output
            ),
        },
        "history": {
            "storage_dir": _resolve_path(
                os.getenv(ENV_KEYS["history_dir"], HistorySettings().storage_dir)
            ),
            "rollback_window_hours": _env_int(
                ENV_KEYS["rollback_window_hours"], HistorySettings().rollback_window_hours
            ),
            "retention_days": _env_int(
                ENV_KEYS["history_retention_days"], HistorySettings().retention_days
            ),
            "max_records_per_user": _env_int(
                ENV_KEYS["history_max_per_user"], HistorySettings().max_records_per_user
            ),
        },
        "policy": {
            "path": _resolve_path(policy_path_env) if policy_path_env else None,
            "sku_pattern": os.getenv(ENV_KEYS["sku_pattern"], PolicySettings().sku_pattern),
        },
        "ingestion": {
            "max_upload_bytes": _env_int(
                ENV_KEYS["max_upload_bytes"], IngestionSettings().max_upload_bytes
            ),
            "max_rows": _env_int(ENV_KEYS["max_rows"], IngestionSettings().max_rows),
            "allowed_extensions": (
                tuple(extensions) if extensions else IngestionSettings().allowed_extensions
            ),
        },
        "fulfillment": {
            "batch_size": _env_int(ENV_KEYS["batch_size"], FulfillmentSettings().batch_size),
            "max_concurrent": _env_int(
                ENV_KEYS["max_concurrent"], FulfillmentSettings().max_concurrent
            ),
            "enable_alternatives": _env_bool(
                ENV_KEYS["enable_alternatives"], FulfillmentSettings().enable_alternatives
            ),
        },
        "alternatives": {
            "max_suggestions": _env_int(
                ENV_KEYS["alternatives_max"], AlternativesSettings().max_suggestions
            ),
            "min_similarity": _env_float(
                ENV_KEYS["alternatives_min_similarity"], AlternativesSettings().min_similarity
            ),
            "price_tolerance_percent": _env_float(
                ENV_KEYS["alternatives_price_tolerance"],
                AlternativesSettings().price_tolerance_percent,
            ),
            "cross_brand": _env_bool(
                ENV_KEYS["alternatives_cross_brand"], AlternativesSettings().cross_brand
            ),
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    return settings
