from __future__ import annotations

import os
from enum import StrEnum
from typing import TypedDict

from . import prompts


class Role(StrEnum):
    PLANNER = "planner"
    CODER = "coder"
    REVIEWER = "reviewer"
    TESTER = "tester"
    FIXER = "fixer"
    TRIAGER = "triager"


class RoleConfig(TypedDict, total=False):
    model: str | None
    temperature: float
    uses_tools: bool
    instructions: str
    description: str


DEFAULT_ROLE_CONFIG: dict[str, RoleConfig] = {
    "planner": {
        "temperature": 0.2,
        "uses_tools": False,
        "instructions": prompts.PLANNER,
        "description": "Breaks the request into an implementation plan",
    },
    "coder": {
        "temperature": 0.1,
        "uses_tools": True,
        "instructions": prompts.CODER,
        "description": "Writes files in the sandbox and summarises the change",
    },
    "reviewer": {
        "temperature": 0.0,
        "uses_tools": False,
        "instructions": prompts.REVIEWER,
        "description": "Approves the change or requests another coding pass",
    },
    "tester": {
        "temperature": 0.0,
        "uses_tools": False,
        "instructions": prompts.TESTER,
        "description": "Turns lint and build output into an issue list",
    },
    "fixer": {
        "temperature": 0.1,
        "uses_tools": True,
        "instructions": prompts.FIXER,
        "description": "Investigates failing checks and prepares fixes",
    },
    "triager": {
        "temperature": 0.0,
        "uses_tools": False,
        "instructions": prompts.TRIAGER,
        "description": "Classifies inbound issues and proposes work items",
    },
}


def get_env_keys(role: Role) -> dict[str, str]:
    role_upper = role.value.upper()
    return {
        "model": f"ROLE_{role_upper}_MODEL",
        "temperature": f"ROLE_{role_upper}_TEMPERATURE",
    }


def get_role_from_env(role: Role) -> dict[str, str]:
    result = {}
    for field, env_key in get_env_keys(role).items():
        value = os.getenv(env_key)
        if value:
            result[field] = value
    return result


def resolve_role(role: Role, *, default_model: str, model_override: str | None = None) -> RoleConfig:
    """Merge defaults, environment overrides and a per-job model override."""
    config = RoleConfig(**DEFAULT_ROLE_CONFIG[role.value])
    env_overrides = get_role_from_env(role)

    config["model"] = env_overrides.get("model") or default_model
    if "temperature" in env_overrides:
        config["temperature"] = float(env_overrides["temperature"])
    if model_override and role in (Role.CODER, Role.FIXER):
        config["model"] = model_override
    return config
