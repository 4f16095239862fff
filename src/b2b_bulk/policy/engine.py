"""Role-based permission and spend-limit evaluation."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Callable, Iterable

from b2b_bulk.audit.logger import AuditLogger
from b2b_bulk.audit.models import AuditEventType, AuditResult
from b2b_bulk.auth.context import B2BUserContext
from b2b_bulk.config import DEFAULT_SKU_PATTERN
from b2b_bulk.errors import PolicyConfigError
from b2b_bulk.policy.models import (
    REQUIRED_PERMISSIONS,
    AuthorizationResult,
    LimitType,
    OrderLimits,
    OrderStats,
    Permission,
    ProposedOperation,
    RolePolicyConfig,
    SkuPatternResult,
)
from b2b_bulk.utils.time import utc_now

logger = logging.getLogger(__name__)

_MAX_POLICY_REGEX_LENGTH = 256
_BACKREFERENCE_PATTERN = re.compile(r"\\[1-9]")
_NESTED_QUANTIFIER_PATTERN = re.compile(
    r"\((?:[^()\\]|\\.)*[+*](?:[^()\\]|\\.)*\)\s*(?:[+*]|\{\d+(?:,\d*)?\})"
)
_LOOKBEHIND_TOKENS = ("(?<=", "(?<!")
_MAX_SKU_LENGTH = 100


def validate_pattern_safety(pattern: str, label: str) -> None:
    """Reject regexes prone to catastrophic backtracking."""
    if len(pattern) > _MAX_POLICY_REGEX_LENGTH:
        raise PolicyConfigError(
            f"Unsafe regex in {label} pattern '{pattern}': exceeds "
            f"{_MAX_POLICY_REGEX_LENGTH} characters"
        )
    if any(token in pattern for token in _LOOKBEHIND_TOKENS):
        raise PolicyConfigError(
            f"Unsafe regex in {label} pattern '{pattern}': look-behind is not allowed"
        )
    if _BACKREFERENCE_PATTERN.search(pattern):
        raise PolicyConfigError(
            f"Unsafe regex in {label} pattern '{pattern}': backreferences are not allowed"
        )
    if _NESTED_QUANTIFIER_PATTERN.search(pattern):
        raise PolicyConfigError(
            f"Unsafe regex in {label} pattern '{pattern}': nested quantifiers are not allowed"
        )


class AuthorizationPolicy:
    """Evaluates permissions and rolling order limits per account.

    Rolling totals live in memory for the lifetime of the instance. Daily
    totals reset on the first order of a new date; monthly totals are
    cumulative until ``reset_monthly_totals`` is called.
    """

    def __init__(
        self,
        config: RolePolicyConfig,
        *,
        audit: AuditLogger | None = None,
        sku_pattern: str = DEFAULT_SKU_PATTERN,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._audit = audit
        self._clock = clock
        validate_pattern_safety(sku_pattern, "sku")
        try:
            self._sku_regex = re.compile(sku_pattern)
        except re.error as exc:
            raise PolicyConfigError(f"Invalid regex in sku pattern '{sku_pattern}': {exc}") from exc
        self._sku_pattern = sku_pattern
        self._stats: dict[str, OrderStats] = {}

    @property
    def sku_pattern(self) -> str:
        return self._sku_pattern

    def role_permissions(self, role: str) -> frozenset[str]:
        """Permissions granted by a configured role, for building user contexts."""
        definition = self._config.roles.get(role)
        return frozenset(definition.permissions) if definition is not None else frozenset()

    def has_permission(self, user: B2BUserContext, permission: Permission | str) -> bool:
        key = permission.value if isinstance(permission, Permission) else permission
        return user.has_permission(key)

    def effective_limits(self, user: B2BUserContext) -> OrderLimits | None:
        """Role defaults overlaid field by field with the user's custom limits."""
        role = self._config.roles.get(user.role)
        custom = user.custom_limits
        if role is None and custom is None:
            return None
        base = role.order_limits if role is not None else OrderLimits()
        if custom is None:
            return base
        return OrderLimits(
            daily_value=_pick(custom.daily_value, base.daily_value),
            monthly_value=_pick(custom.monthly_value, base.monthly_value),
            single_order_value=_pick(custom.single_order_value, base.single_order_value),
            single_order_items=_pick(custom.single_order_items, base.single_order_items),
        )

    def stats_for(self, account_id: str) -> OrderStats:
        stats = self._stats.get(account_id)
        if stats is None:
            return OrderStats()
        self._roll_daily(stats)
        return OrderStats(
            daily_total=stats.daily_total,
            monthly_total=stats.monthly_total,
            order_count=stats.order_count,
            last_order_date=stats.last_order_date,
        )

    def remaining_capacity(self, user: B2BUserContext) -> dict[str, float | None]:
        limits = self.effective_limits(user)
        stats = self.stats_for(user.account_id)
        if limits is None:
            return {"daily": 0.0, "monthly": 0.0}
        return {
            "daily": (
                None if limits.daily_value is None
                else max(limits.daily_value - stats.daily_total, 0.0)
            ),
            "monthly": (
                None if limits.monthly_value is None
                else max(limits.monthly_value - stats.monthly_total, 0.0)
            ),
        }

    async def authorize_bulk_operation(
        self,
        user: B2BUserContext,
        operation: ProposedOperation,
    ) -> AuthorizationResult:
        required = REQUIRED_PERMISSIONS[operation.type]
        unlimited = self.has_permission(user, Permission.BULK_ORDER_UNLIMITED)

        if not self.has_permission(user, required) and not unlimited:
            result = AuthorizationResult(
                allowed=False,
                reason=f"Missing required permission: {required.value}",
                missing_permission=required.value,
            )
            await self._audit_denial(
                AuditEventType.UNAUTHORIZED_ACCESS,
                user,
                f"bulk_order.{operation.type.value}",
                {"missing_permission": required.value},
            )
            return result

        if unlimited:
            return AuthorizationResult(allowed=True)

        limits = self.effective_limits(user)
        if limits is None:
            await self._audit_denial(
                AuditEventType.UNAUTHORIZED_ACCESS,
                user,
                f"bulk_order.{operation.type.value}",
                {"reason": "unknown_role", "role": user.role},
            )
            return AuthorizationResult(
                allowed=False,
                reason=f"No order limits configured for role {user.role}",
            )

        result = self._check_limits(user, limits, operation)
        if not result.allowed:
            await self._audit_denial(
                AuditEventType.ORDER_LIMIT_EXCEEDED,
                user,
                f"bulk_order.{operation.type.value}",
                {
                    "limit_type": result.limit_type.value if result.limit_type else None,
                    "current_limit": result.current_limit,
                    "requested_amount": result.requested_amount,
                    "item_count": operation.item_count,
                },
            )
        return result

    def _check_limits(
        self,
        user: B2BUserContext,
        limits: OrderLimits,
        operation: ProposedOperation,
    ) -> AuthorizationResult:
        value = operation.total_value
        if limits.single_order_value is not None and value > limits.single_order_value:
            return AuthorizationResult(
                allowed=False,
                reason="Order value exceeds single order limit",
                limit_type=LimitType.SINGLE_ORDER_VALUE,
                current_limit=limits.single_order_value,
                requested_amount=value,
            )
        if (
            limits.single_order_items is not None
            and operation.item_count > limits.single_order_items
        ):
            return AuthorizationResult(
                allowed=False,
                reason="Item count exceeds single order limit",
                limit_type=LimitType.SINGLE_ORDER_ITEMS,
                current_limit=limits.single_order_items,
                requested_amount=operation.item_count,
            )

        stats = self.stats_for(user.account_id)
        if limits.daily_value is not None:
            remaining = limits.daily_value - stats.daily_total
            if value > remaining:
                return AuthorizationResult(
                    allowed=False,
                    reason="Order would exceed daily spending limit",
                    limit_type=LimitType.DAILY_VALUE,
                    current_limit=max(remaining, 0.0),
                    requested_amount=value,
                )
        if limits.monthly_value is not None:
            remaining = limits.monthly_value - stats.monthly_total
            if value > remaining:
                return AuthorizationResult(
                    allowed=False,
                    reason="Order would exceed monthly spending limit",
                    limit_type=LimitType.MONTHLY_VALUE,
                    current_limit=max(remaining, 0.0),
                    requested_amount=value,
                )
        return AuthorizationResult(allowed=True)

    async def validate_sku_patterns(
        self,
        user: B2BUserContext,
        skus: Iterable[str],
    ) -> SkuPatternResult:
        invalid = [
            sku
            for sku in dict.fromkeys(skus)
            if len(sku) > _MAX_SKU_LENGTH or not self._sku_regex.fullmatch(sku)
        ]
        if not invalid:
            return SkuPatternResult(valid=True)
        await self._audit_denial(
            AuditEventType.INVALID_SKU_PATTERN,
            user,
            "sku.validate",
            {
                "invalid_skus": invalid[:50],
                "invalid_count": len(invalid),
                "pattern": self._sku_pattern,
            },
        )
        return SkuPatternResult(valid=False, invalid_skus=tuple(invalid))

    async def check_credit_limit(
        self,
        user: B2BUserContext,
        order_value: float,
        current_credit: float,
        credit_limit: float,
    ) -> AuthorizationResult:
        available = credit_limit - current_credit
        if order_value <= available:
            return AuthorizationResult(allowed=True)
        await self._audit_denial(
            AuditEventType.CREDIT_LIMIT_EXCEEDED,
            user,
            "order.credit_check",
            {
                "order_value": order_value,
                "current_credit": current_credit,
                "credit_limit": credit_limit,
                "available_credit": available,
            },
        )
        return AuthorizationResult(
            allowed=False,
            reason="Insufficient credit available",
            limit_type=LimitType.CREDIT,
            current_limit=max(available, 0.0),
            requested_amount=order_value,
        )

    async def authorize_data_export(
        self,
        user: B2BUserContext,
        export_type: str,
    ) -> AuthorizationResult:
        if not self.has_permission(user, Permission.ADVANCED_EXPORT_DATA):
            await self._audit_denial(
                AuditEventType.UNAUTHORIZED_ACCESS,
                user,
                f"export.{export_type}",
                {"missing_permission": Permission.ADVANCED_EXPORT_DATA.value},
            )
            return AuthorizationResult(
                allowed=False,
                reason="Export permission required",
                missing_permission=Permission.ADVANCED_EXPORT_DATA.value,
            )
        if export_type == "users" and not self.has_permission(
            user, Permission.ACCOUNT_MANAGE_USERS
        ):
            return AuthorizationResult(
                allowed=False,
                reason="User management permission required for user exports",
                missing_permission=Permission.ACCOUNT_MANAGE_USERS.value,
            )
        return AuthorizationResult(allowed=True)

    async def authorize_pricing_view(
        self,
        user: B2BUserContext,
        pricing_type: str,
        contract_id: str | None = None,
    ) -> AuthorizationResult:
        required = {
            "contract": Permission.PRICING_CONTRACT,
            "bulk": Permission.PRICING_BULK_DISCOUNTS,
            "custom": Permission.PRICING_CUSTOM_REQUEST,
        }.get(pricing_type)
        if required is None:
            return AuthorizationResult(
                allowed=False, reason=f"Unknown pricing type: {pricing_type}"
            )
        if not self.has_permission(user, required):
            return AuthorizationResult(
                allowed=False,
                reason=f"Missing required permission: {required.value}",
                missing_permission=required.value,
            )
        if pricing_type == "contract" and contract_id and contract_id not in user.contract_ids:
            await self._audit_denial(
                AuditEventType.UNAUTHORIZED_ACCESS,
                user,
                "pricing.view_contract",
                {"contract_id": contract_id},
            )
            return AuthorizationResult(allowed=False, reason="No access to this contract")
        return AuthorizationResult(allowed=True)

    def record_order(self, account_id: str, order_value: float) -> OrderStats:
        """Add a fulfilled order to the account's rolling totals."""
        stats = self._stats.setdefault(account_id, OrderStats())
        self._roll_daily(stats)
        stats.daily_total += order_value
        stats.monthly_total += order_value
        stats.order_count += 1
        stats.last_order_date = self._clock().date()
        return self.stats_for(account_id)

    def reset_monthly_totals(self, account_id: str | None = None) -> None:
        """Hook for the external month-boundary job."""
        targets = [account_id] if account_id is not None else list(self._stats)
        for key in targets:
            stats = self._stats.get(key)
            if stats is not None:
                stats.monthly_total = 0.0
        logger.info("Monthly order totals reset accounts=%d", len(targets))

    def _roll_daily(self, stats: OrderStats) -> None:
        today = self._clock().date()
        if stats.last_order_date is not None and stats.last_order_date != today:
            stats.daily_total = 0.0

    async def _audit_denial(
        self,
        event_type: AuditEventType,
        user: B2BUserContext,
        action: str,
        details: dict[str, object],
    ) -> None:
        logger.info(
            "Authorization denied event_type=%s user_id=%s account_id=%s action=%s",
            event_type.value,
            user.user_id,
            user.account_id,
            action,
        )
        if self._audit is None:
            return
        await self._audit.log_event(
            event_type,
            action=action,
            result=AuditResult.FAILURE,
            details={"role": user.role, **details},
            **user.audit_fields(),
        )


def _pick(override: float | None, default: float | None) -> float | None:
    return default if override is None else override
