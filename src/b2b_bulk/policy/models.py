"""Role, permission and order-limit models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class Permission(str, Enum):
    BULK_ORDER_CREATE = "bulk_order.create"
    BULK_ORDER_VIEW = "bulk_order.view"
    BULK_ORDER_APPROVE = "bulk_order.approve"
    BULK_ORDER_UNLIMITED = "bulk_order.unlimited"
    PRICING_CONTRACT = "pricing.contract"
    PRICING_BULK_DISCOUNTS = "pricing.bulk_discounts"
    PRICING_CUSTOM_REQUEST = "pricing.custom_request"
    QUOTE_CREATE = "quote.create"
    QUOTE_APPROVE = "quote.approve"
    ACCOUNT_MANAGE_USERS = "account.manage_users"
    ACCOUNT_VIEW_CREDIT = "account.view_credit"
    ACCOUNT_ORDER_HISTORY = "account.order_history"
    ADVANCED_API_ACCESS = "advanced.api_access"
    ADVANCED_EXPORT_DATA = "advanced.export_data"
    ADVANCED_WORKFLOWS = "advanced.workflows"


class OperationType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    APPROVE = "approve"


REQUIRED_PERMISSIONS: dict[OperationType, Permission] = {
    OperationType.CREATE: Permission.BULK_ORDER_CREATE,
    OperationType.UPDATE: Permission.BULK_ORDER_CREATE,
    OperationType.APPROVE: Permission.BULK_ORDER_APPROVE,
}


class LimitType(str, Enum):
    SINGLE_ORDER_VALUE = "single_order_value"
    SINGLE_ORDER_ITEMS = "single_order_items"
    DAILY_VALUE = "daily_value"
    MONTHLY_VALUE = "monthly_value"
    CREDIT = "credit"


class OrderLimits(BaseModel):
    """Ceilings for one role. ``None`` means no ceiling for that dimension."""

    daily_value: float | None = Field(default=None, ge=0)
    monthly_value: float | None = Field(default=None, ge=0)
    single_order_value: float | None = Field(default=None, ge=0)
    single_order_items: int | None = Field(default=None, ge=0)


class RoleDefinition(BaseModel):
    name: str
    permissions: list[str] = Field(default_factory=list)
    order_limits: OrderLimits = Field(default_factory=OrderLimits)

    @field_validator("permissions", mode="before")
    @classmethod
    def _validate_permissions(cls, v: Any) -> list:
        if v is None:
            return []
        return v


class RolePolicyConfig(BaseModel):
    version: int = Field(default=1)
    roles: dict[str, RoleDefinition] = Field(default_factory=dict)

    @field_validator("roles", mode="before")
    @classmethod
    def _validate_roles(cls, v: Any) -> dict:
        if v is None:
            return {}
        return v

    @classmethod
    def from_yaml(cls, data: dict[str, object]) -> "RolePolicyConfig":
        return cls.model_validate(data)


def default_role_policy() -> RolePolicyConfig:
    """Built-in roles used when no role policy file is configured."""
    buyer = [
        Permission.BULK_ORDER_CREATE,
        Permission.BULK_ORDER_VIEW,
        Permission.PRICING_CONTRACT,
        Permission.QUOTE_CREATE,
    ]
    manager = buyer + [
        Permission.BULK_ORDER_APPROVE,
        Permission.PRICING_BULK_DISCOUNTS,
        Permission.ACCOUNT_VIEW_CREDIT,
        Permission.ACCOUNT_ORDER_HISTORY,
    ]
    admin = manager + [
        Permission.BULK_ORDER_UNLIMITED,
        Permission.PRICING_CUSTOM_REQUEST,
        Permission.QUOTE_APPROVE,
        Permission.ACCOUNT_MANAGE_USERS,
        Permission.ADVANCED_EXPORT_DATA,
    ]
    api_user = [
        Permission.BULK_ORDER_CREATE,
        Permission.BULK_ORDER_VIEW,
        Permission.PRICING_CONTRACT,
        Permission.ADVANCED_API_ACCESS,
        Permission.ADVANCED_EXPORT_DATA,
    ]
    return RolePolicyConfig(
        roles={
            "BUYER": RoleDefinition(
                name="Buyer",
                permissions=[p.value for p in buyer],
                order_limits=OrderLimits(
                    daily_value=10_000,
                    monthly_value=100_000,
                    single_order_value=5_000,
                    single_order_items=100,
                ),
            ),
            "PURCHASING_MANAGER": RoleDefinition(
                name="Purchasing Manager",
                permissions=[p.value for p in manager],
                order_limits=OrderLimits(
                    daily_value=50_000,
                    monthly_value=500_000,
                    single_order_value=25_000,
                    single_order_items=500,
                ),
            ),
            "ACCOUNT_ADMIN": RoleDefinition(
                name="Account Administrator",
                permissions=[p.value for p in admin],
                order_limits=OrderLimits(
                    daily_value=100_000,
                    monthly_value=1_000_000,
                    single_order_value=50_000,
                    single_order_items=1_000,
                ),
            ),
            "API_USER": RoleDefinition(
                name="API User",
                permissions=[p.value for p in api_user],
                order_limits=OrderLimits(
                    daily_value=200_000,
                    monthly_value=2_000_000,
                    single_order_value=100_000,
                    single_order_items=2_000,
                ),
            ),
        }
    )


@dataclass(frozen=True)
class ProposedOperation:
    type: OperationType
    total_value: float
    item_count: int


@dataclass(frozen=True)
class AuthorizationResult:
    allowed: bool
    reason: str | None = None
    missing_permission: str | None = None
    limit_type: LimitType | None = None
    # Remaining capacity for the violated dimension and what was asked for.
    current_limit: float | None = None
    requested_amount: float | None = None


@dataclass(frozen=True)
class SkuPatternResult:
    valid: bool
    invalid_skus: tuple[str, ...] = ()


@dataclass
class OrderStats:
    """Rolling per-account totals.

    ``daily_total`` resets when an order lands on a new date. ``monthly_total``
    only grows until ``reset_monthly_totals`` is called by an external job.
    """

    daily_total: float = 0.0
    monthly_total: float = 0.0
    order_count: int = 0
    last_order_date: date | None = None
