from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CONFIG: dict[str, Any] = {
    "line_messaging": {
        "enabled": False,
        "channel_secret": None,
        "channel_access_token": None,
        "webhook_path": "/webhook/line",
        "api_base_url": "https://api.line.me",
        "timeout_sec": 10,
        "allowed_user_ids": [],
    },
    "survey": {
        "flow_path": None,
        "root_step_id": "welcome",
        "start_action": "start",
        "restart_action": "restart",
        "trigger_keywords": ["スタート", "開始", "はじめ", "診断", "無料", "最初から", "start"],
        "placeholder_name": "お客様",
    },
    "session": {
        "ttl_minutes": 30,
        "in_flight_lease_sec": 30,
    },
    "rate_limit": {
        "window_sec": 10,
        "max_events": 3,
    },
    "postback": {
        "ttl_minutes": 30,
        "max_records": 20,
    },
    "sweeper": {
        "enabled": True,
        "interval_sec": 300,
    },
    "store": {
        "backend": "memory",
        "dynamodb": {
            "region": None,
            "table_prefix": "line-survey",
            "tables": {
                "sessions": None,
                "rate_limits": None,
                "postbacks": None,
            },
        },
    },
    "logging": {
        "level": "INFO",
    },
}

ENV_OVERRIDES = {
    "LINE_CHANNEL_SECRET": ("line_messaging", "channel_secret"),
    "LINE_CHANNEL_ACCESS_TOKEN": ("line_messaging", "channel_access_token"),
}


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(config_path: str | None = None) -> dict[str, Any]:
    return apply_env_overrides(deep_merge(DEFAULT_CONFIG, _read_config_file(config_path)))


def apply_env_overrides(config: dict[str, Any], environ: dict[str, str] | None = None) -> dict[str, Any]:
    env = os.environ if environ is None else environ
    result = config
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = str(env.get(env_name, "") or "").strip()
        if not value:
            continue
        result = deep_merge(result, {section: {key: value}})
    return result


def _read_config_file(config_path: str | None) -> dict[str, Any]:
    if not config_path:
        return {}

    path = Path(config_path)
    if not path.exists():
        return {}

    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return {}

    if path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    return data if isinstance(data, dict) else {}
