from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from b2b_bulk.policy.loader import load_role_policy


def test_load_role_policy_file_not_found(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_role_policy(str(tmp_path / "missing-roles.yaml"))


def test_load_role_policy_success(tmp_path: Path) -> None:
    roles = {
        "version": 1,
        "roles": {
            "FIELD_TECH": {
                "name": "Field Technician",
                "permissions": ["bulk_order.create"],
                "order_limits": {"single_order_value": 750, "single_order_items": 20},
            }
        },
    }
    path = tmp_path / "roles.yaml"
    path.write_text(yaml.safe_dump(roles), encoding="utf-8")

    loaded = load_role_policy(str(path))

    role = loaded.roles["FIELD_TECH"]
    assert role.permissions == ["bulk_order.create"]
    assert role.order_limits.single_order_value == 750
    assert role.order_limits.daily_value is None


def test_load_role_policy_empty_file(tmp_path: Path) -> None:
    path = tmp_path / "roles.yaml"
    path.write_text("", encoding="utf-8")

    loaded = load_role_policy(str(path))

    assert loaded.roles == {}
    assert loaded.version == 1


def test_null_roles_and_permissions_are_tolerated(tmp_path: Path) -> None:
    path = tmp_path / "roles.yaml"
    path.write_text("roles:\n  VIEWER:\n    name: Viewer\n    permissions:\n", encoding="utf-8")

    loaded = load_role_policy(str(path))

    assert loaded.roles["VIEWER"].permissions == []


def test_negative_limit_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "roles.yaml"
    path.write_text(
        "roles:\n  BAD:\n    name: Bad\n    order_limits:\n      daily_value: -1\n",
        encoding="utf-8",
    )

    with pytest.raises(ValidationError):
        load_role_policy(str(path))
