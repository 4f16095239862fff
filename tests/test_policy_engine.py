from __future__ import annotations

from pathlib import Path

import pytest

from b2b_bulk.audit.models import AuditEventType
from b2b_bulk.auth.context import CustomLimits
from b2b_bulk.errors import PolicyConfigError
from b2b_bulk.policy.engine import AuthorizationPolicy, validate_pattern_safety
from b2b_bulk.policy.loader import load_role_policy
from b2b_bulk.policy.models import (
    LimitType,
    OperationType,
    Permission,
    ProposedOperation,
    default_role_policy,
)

ROOT = Path(__file__).resolve().parents[1]


def _create(value: float, items: int = 1) -> ProposedOperation:
    return ProposedOperation(type=OperationType.CREATE, total_value=value, item_count=items)


@pytest.fixture
def policy(audit_logger, clock) -> AuthorizationPolicy:
    return AuthorizationPolicy(default_role_policy(), audit=audit_logger, clock=clock)


@pytest.mark.asyncio
async def test_buyer_within_limits_is_allowed(policy, make_user):
    result = await policy.authorize_bulk_operation(make_user(), _create(4_999.0, 99))

    assert result.allowed is True
    assert result.reason is None


@pytest.mark.asyncio
async def test_single_order_value_denial_reports_limit_and_request(
    policy, make_user, audit_logger
):
    result = await policy.authorize_bulk_operation(make_user(), _create(6_000.0))

    assert result.allowed is False
    assert result.limit_type is LimitType.SINGLE_ORDER_VALUE
    assert result.current_limit == 5_000
    assert result.requested_amount == 6_000.0

    [entry] = await audit_logger.query_logs(event_types=[AuditEventType.ORDER_LIMIT_EXCEEDED])
    assert entry.details["limit_type"] == "single_order_value"
    assert entry.details["role"] == "BUYER"
    assert entry.user_id == "user-1"


@pytest.mark.asyncio
async def test_item_count_limit(policy, make_user):
    result = await policy.authorize_bulk_operation(make_user(), _create(10.0, 101))

    assert result.allowed is False
    assert result.limit_type is LimitType.SINGLE_ORDER_ITEMS
    assert result.current_limit == 100
    assert result.requested_amount == 101


@pytest.mark.asyncio
async def test_daily_limit_uses_recorded_orders_and_resets_next_day(policy, make_user, clock):
    user = make_user()
    policy.record_order(user.account_id, 4_000.0)
    policy.record_order(user.account_id, 4_000.0)

    denied = await policy.authorize_bulk_operation(user, _create(3_000.0))

    assert denied.allowed is False
    assert denied.limit_type is LimitType.DAILY_VALUE
    assert denied.current_limit == 2_000.0

    clock.advance(days=1)
    allowed = await policy.authorize_bulk_operation(user, _create(3_000.0))
    assert allowed.allowed is True
    assert policy.stats_for(user.account_id).daily_total == 0.0
    assert policy.stats_for(user.account_id).monthly_total == 8_000.0


@pytest.mark.asyncio
async def test_monthly_limit_until_reset(policy, make_user, clock):
    user = make_user()
    for _ in range(20):
        policy.record_order(user.account_id, 4_900.0)
        clock.advance(days=1)
    policy.record_order(user.account_id, 2_000.0)
    clock.advance(days=1)

    denied = await policy.authorize_bulk_operation(user, _create(100.0))
    assert denied.limit_type is LimitType.MONTHLY_VALUE
    assert denied.current_limit == 0.0

    policy.reset_monthly_totals(user.account_id)
    assert (await policy.authorize_bulk_operation(user, _create(100.0))).allowed is True


@pytest.mark.asyncio
async def test_missing_permission_is_denied_and_audited(policy, make_user, audit_logger):
    viewer = make_user(permissions=[Permission.BULK_ORDER_VIEW.value])

    result = await policy.authorize_bulk_operation(viewer, _create(1.0))

    assert result.allowed is False
    assert result.missing_permission == "bulk_order.create"
    [entry] = await audit_logger.query_logs(event_types=[AuditEventType.UNAUTHORIZED_ACCESS])
    assert entry.details["missing_permission"] == "bulk_order.create"


@pytest.mark.asyncio
async def test_approve_requires_approve_permission(policy, make_user):
    approve = ProposedOperation(type=OperationType.APPROVE, total_value=0.0, item_count=0)

    buyer = await policy.authorize_bulk_operation(make_user("BUYER"), approve)
    manager = await policy.authorize_bulk_operation(make_user("PURCHASING_MANAGER"), approve)

    assert buyer.allowed is False
    assert manager.allowed is True


@pytest.mark.asyncio
async def test_unlimited_permission_bypasses_limits(policy, make_user):
    admin = make_user("ACCOUNT_ADMIN")

    result = await policy.authorize_bulk_operation(admin, _create(10_000_000.0, 50_000))

    assert result.allowed is True


@pytest.mark.asyncio
async def test_unknown_role_without_custom_limits_is_denied(policy, make_user):
    user = make_user("CONTRACTOR", permissions=[Permission.BULK_ORDER_CREATE.value])

    result = await policy.authorize_bulk_operation(user, _create(1.0))

    assert result.allowed is False
    assert "CONTRACTOR" in result.reason


@pytest.mark.asyncio
async def test_custom_limits_override_role_per_field(policy, make_user):
    user = make_user(custom_limits=CustomLimits(single_order_value=20_000))

    limits = policy.effective_limits(user)

    assert limits.single_order_value == 20_000
    assert limits.daily_value == 10_000
    assert (await policy.authorize_bulk_operation(user, _create(9_000.0))).allowed is True


@pytest.mark.asyncio
async def test_sku_pattern_validation_lists_offenders(policy, make_user, audit_logger):
    result = await policy.validate_sku_patterns(
        make_user(), ["SKU-001", "bad sku", "SKU-001", "lower-case", "X" * 101]
    )

    assert result.valid is False
    assert result.invalid_skus == ("bad sku", "lower-case", "X" * 101)
    [entry] = await audit_logger.query_logs(event_types=[AuditEventType.INVALID_SKU_PATTERN])
    assert entry.details["invalid_count"] == 3


@pytest.mark.asyncio
async def test_sku_pattern_validation_accepts_clean_list(policy, make_user):
    result = await policy.validate_sku_patterns(make_user(), ["A1", "SKU_2", "B-3"])

    assert result.valid is True
    assert result.invalid_skus == ()


@pytest.mark.parametrize(
    "pattern",
    ["(a+)+$", "(?<=x)y", r"(a)\1", "a" * 300],
)
def test_unsafe_sku_patterns_are_rejected(pattern):
    with pytest.raises(PolicyConfigError):
        validate_pattern_safety(pattern, "sku")


def test_invalid_regex_is_a_config_error():
    with pytest.raises(PolicyConfigError):
        AuthorizationPolicy(default_role_policy(), sku_pattern="[A-Z")


@pytest.mark.asyncio
async def test_credit_limit(policy, make_user, audit_logger):
    user = make_user()

    ok = await policy.check_credit_limit(user, 500.0, current_credit=1_000.0, credit_limit=2_000.0)
    denied = await policy.check_credit_limit(
        user, 1_500.0, current_credit=1_000.0, credit_limit=2_000.0
    )

    assert ok.allowed is True
    assert denied.allowed is False
    assert denied.limit_type is LimitType.CREDIT
    assert denied.current_limit == 1_000.0
    events = await audit_logger.query_logs(event_types=[AuditEventType.CREDIT_LIMIT_EXCEEDED])
    assert len(events) == 1


@pytest.mark.asyncio
async def test_data_export_requires_permissions(policy, make_user):
    buyer = make_user("BUYER")
    api_user = make_user("API_USER")
    admin = make_user("ACCOUNT_ADMIN")

    assert (await policy.authorize_data_export(buyer, "orders")).allowed is False
    assert (await policy.authorize_data_export(api_user, "orders")).allowed is True
    assert (await policy.authorize_data_export(api_user, "users")).allowed is False
    assert (await policy.authorize_data_export(admin, "users")).allowed is True


@pytest.mark.asyncio
async def test_pricing_view_checks_contract_membership(policy, make_user):
    user = make_user(contract_ids=["C-1"])

    assert (await policy.authorize_pricing_view(user, "contract", "C-1")).allowed is True
    assert (await policy.authorize_pricing_view(user, "contract", "C-2")).allowed is False
    assert (await policy.authorize_pricing_view(user, "bulk")).allowed is False
    unknown = await policy.authorize_pricing_view(user, "secret")
    assert unknown.reason == "Unknown pricing type: secret"


def test_remaining_capacity(policy, make_user):
    user = make_user()
    policy.record_order(user.account_id, 2_500.0)

    assert policy.remaining_capacity(user) == {"daily": 7_500.0, "monthly": 97_500.0}


def test_role_permissions_for_known_and_unknown_roles(policy):
    assert "bulk_order.approve" in policy.role_permissions("PURCHASING_MANAGER")
    assert policy.role_permissions("NOBODY") == frozenset()


def test_example_roles_file_matches_builtin_roles():
    loaded = load_role_policy(str(ROOT / "roles.example.yaml"))
    builtin = default_role_policy()

    assert set(loaded.roles) == set(builtin.roles)
    for name, role in builtin.roles.items():
        assert loaded.roles[name].order_limits == role.order_limits
        assert sorted(loaded.roles[name].permissions) == sorted(role.permissions)


def test_load_role_policy_defaults_and_missing_file(tmp_path):
    assert set(load_role_policy(None).roles) == {
        "BUYER",
        "PURCHASING_MANAGER",
        "ACCOUNT_ADMIN",
        "API_USER",
    }
    with pytest.raises(FileNotFoundError):
        load_role_policy(str(tmp_path / "missing.yaml"))
