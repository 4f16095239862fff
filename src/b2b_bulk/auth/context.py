"""Identity of the caller behind a bulk request."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field


@dataclass(frozen=True)
class CustomLimits:
    """Per-user overrides of role limits. ``None`` falls back to the role default."""

    daily_value: float | None = None
    monthly_value: float | None = None
    single_order_value: float | None = None
    single_order_items: int | None = None


@dataclass(frozen=True)
class B2BUserContext:
    """Immutable identity of the requester, supplied by the caller per request."""

    user_id: str
    account_id: str
    role: str
    permissions: frozenset[str] = field(default_factory=frozenset)
    custom_limits: CustomLimits | None = None
    contract_ids: tuple[str, ...] = ()
    session_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        object.__setattr__(self, "permissions", frozenset(self.permissions))
        object.__setattr__(self, "contract_ids", tuple(self.contract_ids))

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions

    def audit_fields(self) -> dict[str, str | None]:
        return {
            "user_id": self.user_id,
            "account_id": self.account_id,
            "session_id": self.session_id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }
