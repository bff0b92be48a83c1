"""
Relay settings.

Precedence, lowest first: defaults, ~/.pulse/config.json, PULSE_* environment
variables, explicit overrides (CLI options).
"""

import json
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ValidationError

from pulse_relay.errors import RelayError

CONFIG_FILE = Path.home() / ".pulse" / "config.json"
ENV_PREFIX = "PULSE_"


class RelaySettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8081
    api_url: str = "http://localhost:8080/api"
    service_token: Optional[str] = None

    typing_timeout: float = 3.0
    sweep_interval: float = 1.0
    echo_to_sender: bool = False

    ping_interval: float = 54.0
    ping_timeout: float = 10.0
    max_message_size: int = 512 * 1024
    write_timeout: float = 10.0

    reconnect_floor: float = 1.0
    reconnect_ceiling: float = 30.0
    max_reconnect_attempts: int = 6


def _load_file(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as e:
        raise RelayError("config_error", f"Invalid config file {path}: {e}")
    if not isinstance(data, dict):
        raise RelayError("config_error", f"Config file {path} must hold a JSON object")
    return data


def _from_env(environ: Mapping[str, str]) -> dict[str, str]:
    values: dict[str, str] = {}
    for name in RelaySettings.model_fields:
        raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None:
            values[name] = raw
    return values


def load_settings(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> RelaySettings:
    merged: dict[str, Any] = {}
    merged.update(_load_file(path or CONFIG_FILE))
    merged.update(_from_env(os.environ if environ is None else environ))
    merged.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return RelaySettings.model_validate(merged)
    except ValidationError as e:
        raise RelayError("config_error", f"Invalid relay settings: {e}")
