"""Role policy loader for roles.yaml."""

from __future__ import annotations

from pathlib import Path

import yaml

from b2b_bulk.policy.models import RolePolicyConfig, default_role_policy


def load_role_policy(path: str | None) -> RolePolicyConfig:
    """Load roles from YAML, or the built-in roles when no path is configured."""
    if path is None:
        return default_role_policy()
    policy_path = Path(path)
    if not policy_path.exists():
        raise FileNotFoundError(f"Role policy file not found: {policy_path}")
    with policy_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return RolePolicyConfig.from_yaml(data)
