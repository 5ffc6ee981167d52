"""Relay configuration: paths, agent identity and coordination tunables."""

from __future__ import annotations

import json
import os
import sys
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field

CONFIG_DIRNAME = "pr-review-relay"
DB_FILENAME = "pr-review-relay.sqlite3"
SIGNALS_DIRNAME = "signals"
CONFIG_FILENAME = "config.json"

CONFIG_DIR_ENV_VAR = "RELAY_CONFIG_DIR"
DB_PATH_ENV_VAR = "RELAY_DB_PATH"
WORKING_DIR_ENV_VAR = "RELAY_WORKING_DIR"
CLIENT_NAME_ENV_VAR = "RELAY_CLIENT_NAME"

# Environment variables set by known agents, checked in order.
CLIENT_ENV_VARS: tuple[tuple[str, str], ...] = (
    ("CLAUDECODE", "Claude Code"),
    ("CLAUDE_CODE", "Claude Code"),
    ("CURSOR_SESSION", "Cursor"),
    ("CLINE_SESSION", "Cline"),
    ("CONTINUE_SESSION", "Continue.dev"),
    ("ZED_SESSION", "Zed"),
)

# Tunables that may also come from config.json ("relay" section) or RELAY_* env vars.
_TUNABLE_ENV_VARS: dict[str, str] = {
    "stale_signal_days": "RELAY_STALE_SIGNAL_DAYS",
    "watch_recheck_seconds": "RELAY_WATCH_RECHECK_SECONDS",
    "wait_timeout_seconds": "RELAY_WAIT_TIMEOUT_SECONDS",
    "wait_poll_seconds": "RELAY_WAIT_POLL_SECONDS",
    "force_polling": "RELAY_FORCE_POLLING",
}


class RelaySettings(BaseModel):
    """Validated runtime settings shared by the web and agent processes."""

    config_dir: Path
    db_path: Path
    working_dir: str
    client_name: str = Field(default="Unknown Agent")
    stale_signal_days: float = Field(default=7.0, ge=1.0)
    watch_recheck_seconds: float = Field(default=5.0, ge=0.1)
    wait_timeout_seconds: float = Field(default=25.0, gt=0.0, le=300.0)
    wait_poll_seconds: float = Field(default=2.0, ge=0.05)
    force_polling: bool = False

    @property
    def signals_dir(self) -> Path:
        return self.config_dir / SIGNALS_DIRNAME

    @property
    def runtime_path(self) -> Path:
        return self.config_dir / "runtime.json"


def default_config_dir(environ: Mapping[str, str] | None = None) -> Path:
    """Resolve a cross-platform user config directory for relay state."""
    env = os.environ if environ is None else environ
    override = env.get(CONFIG_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()

    xdg_config_home = env.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        return Path(xdg_config_home).expanduser() / CONFIG_DIRNAME

    if os.name == "nt":
        appdata = env.get("APPDATA")
        if appdata:
            return Path(appdata).expanduser() / CONFIG_DIRNAME
        return Path.home() / "AppData" / "Roaming" / CONFIG_DIRNAME

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / CONFIG_DIRNAME

    return Path.home() / ".config" / CONFIG_DIRNAME


def detect_client_name(environ: Mapping[str, str] | None = None) -> str:
    env = os.environ if environ is None else environ
    override = env.get(CLIENT_NAME_ENV_VAR)
    if override:
        return override
    for key, name in CLIENT_ENV_VARS:
        if env.get(key):
            return name
    return "Unknown Agent"


def _read_relay_section(config_dir: Path) -> dict:
    """Read the optional "relay" section of config.json.

    Raises json.JSONDecodeError for malformed JSON and ValueError when the
    section is present but not an object.
    """
    path = config_dir / CONFIG_FILENAME
    if not path.exists():
        return {}
    payload = json.loads(path.read_text(encoding="utf-8"))
    section = payload.get("relay") if isinstance(payload, dict) else None
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ValueError("relay must be an object when provided")
    return {key: value for key, value in section.items() if key in _TUNABLE_ENV_VARS}


def load_settings(environ: Mapping[str, str] | None = None) -> RelaySettings:
    """Build settings from config.json defaults overlaid with environment variables.

    Raises pydantic ValidationError on out-of-range values.
    """
    env = os.environ if environ is None else environ
    config_dir = default_config_dir(env)

    values: dict[str, object] = _read_relay_section(config_dir)
    for field_name, env_var in _TUNABLE_ENV_VARS.items():
        raw = env.get(env_var)
        if raw is not None and raw.strip() != "":
            values[field_name] = raw.strip()

    db_override = env.get(DB_PATH_ENV_VAR)
    db_path = Path(db_override).expanduser() if db_override else config_dir / DB_FILENAME
    working_dir = env.get(WORKING_DIR_ENV_VAR) or env.get("PWD") or os.getcwd()

    return RelaySettings.model_validate(
        {
            **values,
            "config_dir": config_dir,
            "db_path": db_path,
            "working_dir": working_dir,
            "client_name": detect_client_name(env),
        }
    )
