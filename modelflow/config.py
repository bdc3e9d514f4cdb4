"""Global configuration for ModelFlow."""

from __future__ import annotations

import copy
import json
import os
from dataclasses import dataclass
from typing import Dict, Any, Iterable, FrozenSet


DEFAULT_MODELS: Dict[str, str] = {
    "basic": "deepseek-ai/DeepSeek-R1-Distill-Qwen-7B:featherless-ai",
    "standard": "openai/gpt-oss-20b:novita",
    "advanced": "openai/gpt-oss-120b:novita",
}

DEFAULT_UPSTREAM_URL = "https://router.huggingface.co/v1"
DEFAULT_RELAY_TIMEOUT_SECONDS = 60.0

_models: Dict[str, str] = copy.deepcopy(DEFAULT_MODELS)
_owner_identities: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class RelaySettings:
    """Where and how the inference relay reaches the upstream API."""
    upstream_url: str
    api_key: str | None
    timeout_seconds: float
    relay_url: str | None


def _parse_json_env(var_name: str) -> Dict[str, Any] | None:
    value = os.getenv(var_name)
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def get_models() -> Dict[str, str]:
    """Return model configuration, with optional env override."""
    parsed = _parse_json_env("MODELFLOW_MODELS_JSON")
    if parsed:
        merged = copy.deepcopy(_models)
        merged.update({k: v for k, v in parsed.items() if isinstance(v, str) and v})
        return merged
    return _models


def set_models(
    *,
    basic: str | None = None,
    standard: str | None = None,
    advanced: str | None = None,
) -> None:
    """Set model defaults at runtime."""
    global _models
    updated = copy.deepcopy(_models)
    if basic:
        updated["basic"] = basic
    if standard:
        updated["standard"] = standard
    if advanced:
        updated["advanced"] = advanced
    _models = updated


def reset_models() -> None:
    global _models
    _models = copy.deepcopy(DEFAULT_MODELS)


def get_owner_identities() -> FrozenSet[str]:
    """Return the administrator identities, with optional env override.

    ``MODELFLOW_OWNER_EMAILS`` is a comma separated list of emails.
    """
    value = os.getenv("MODELFLOW_OWNER_EMAILS")
    if value:
        return frozenset(part.strip() for part in value.split(",") if part.strip())
    return _owner_identities


def set_owner_identities(identities: Iterable[str]) -> None:
    """Set administrator identities at runtime."""
    if isinstance(identities, str):
        raise ValueError("identities must be an iterable of emails, not a string")
    global _owner_identities
    _owner_identities = frozenset(i.strip() for i in identities if i and i.strip())


def get_relay_settings() -> RelaySettings:
    """Read relay settings from the environment."""
    timeout = DEFAULT_RELAY_TIMEOUT_SECONDS
    raw_timeout = os.getenv("MODELFLOW_RELAY_TIMEOUT")
    if raw_timeout:
        try:
            timeout = float(raw_timeout)
        except ValueError:
            timeout = DEFAULT_RELAY_TIMEOUT_SECONDS
        if timeout <= 0:
            timeout = DEFAULT_RELAY_TIMEOUT_SECONDS

    return RelaySettings(
        upstream_url=os.getenv("MODELFLOW_UPSTREAM_URL") or DEFAULT_UPSTREAM_URL,
        api_key=os.getenv("HF_TOKEN"),
        timeout_seconds=timeout,
        relay_url=os.getenv("MODELFLOW_RELAY_URL"),
    )
