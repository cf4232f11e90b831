"""
Shared config loading for the CTA membership bot.

- config.json           non-secret settings (committed)
- config.secrets.json   server-only secrets (never committed)
- .env                  optional environment overrides (loaded with python-dotenv)
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from dotenv import load_dotenv


def _deep_merge_dict(base: Dict[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    """Deep-merge overlay into base (in place) and return base.

    - Dict values are merged recursively
    - Other types overwrite
    """
    for k, v in overlay.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            _deep_merge_dict(base[k], v)  # type: ignore[index]
        else:
            base[k] = v
    return base


def _read_json_object(path: Path, what: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Invalid {what} file (expected JSON object): {path}")
    return data


def _set_dotted(config: Dict[str, Any], dotted: str, value: Any) -> None:
    node = config
    parts = dotted.split(".")
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def apply_env_overrides(config: Dict[str, Any], env_map: Mapping[str, str]) -> Dict[str, Any]:
    """Copy set environment variables onto dotted config keys (env var -> "section.key")."""
    for env_name, dotted in env_map.items():
        raw = os.getenv(env_name)
        if raw is None or not raw.strip():
            continue
        _set_dotted(config, dotted, raw.strip())
    return config


def load_config_with_secrets(
    base_dir: Path,
    config_name: str = "config.json",
    secrets_name: str = "config.secrets.json",
    env_map: Mapping[str, str] | None = None,
) -> Tuple[Dict[str, Any], Path, Path]:
    """Load config.json, merge config.secrets.json on top, then apply env overrides.

    Returns: (merged_config, config_path, secrets_path)
    """
    config_path = base_dir / config_name
    secrets_path = base_dir / secrets_name

    if not config_path.exists():
        raise FileNotFoundError(f"Missing config file: {config_path}")

    # .env in the bot dir; never overrides variables already exported by the service.
    load_dotenv(base_dir / ".env", override=False)

    config = _read_json_object(config_path, "config")
    if secrets_path.exists():
        _deep_merge_dict(config, _read_json_object(secrets_path, "secrets"))

    if env_map:
        apply_env_overrides(config, env_map)
    # Caller decides whether a missing secrets file is fatal.
    return config, config_path, secrets_path


def is_placeholder_secret(value: Any) -> bool:
    """Return True if the provided secret looks like a template/placeholder value."""
    if value is None:
        return True
    s = str(value).strip()
    if not s:
        return True
    upper = s.upper()
    if upper.startswith("PUT_") or upper.endswith("_HERE"):
        return True
    return upper in {"CHANGEME", "REPLACE_ME", "YOUR_TOKEN_HERE"}


def mask_secret(value: Any, show_last: int = 4) -> str:
    """Mask a secret for printing (never output full tokens)."""
    s = "" if value is None else str(value)
    if not s:
        return "<missing>"
    if len(s) <= show_last:
        return "*" * len(s)
    return ("*" * (len(s) - show_last)) + s[-show_last:]


def missing_secrets(config: Mapping[str, Any], dotted_keys: Iterable[str]) -> List[str]:
    """Return the dotted keys whose values are missing or placeholders."""
    missing: List[str] = []
    for dotted in dotted_keys:
        node: Any = config
        for part in dotted.split("."):
            node = node.get(part) if isinstance(node, Mapping) else None
        if is_placeholder_secret(node):
            missing.append(dotted)
    return missing
