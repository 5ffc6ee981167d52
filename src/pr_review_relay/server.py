"""FastMCP server entry point for the PR review relay."""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastmcp import FastMCP

from pr_review_relay.config import default_config_dir
from pr_review_relay.db import relay_lifespan
from pr_review_relay.runtime import delete_runtime, write_runtime

RELAY_LOG_DIR_ENV_VAR = "RELAY_LOG_DIR"
RELAY_LOG_MAX_BYTES_ENV_VAR = "RELAY_LOG_MAX_BYTES"
RELAY_LOG_BACKUPS_ENV_VAR = "RELAY_LOG_BACKUPS"
DEFAULT_RELAY_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_RELAY_LOG_BACKUPS = 5
DEFAULT_RELAY_PORT = 3847

mcp = FastMCP(
    "pr-review-relay",
    instructions=(
        "Relays inline PR review comments from the reviewer UI to coding agents. "
        "Fetch comments with check_pr_comments and resolve them once addressed."
    ),
    lifespan=relay_lifespan,
)

# ContextVar holding the client identity for log lines.
# Default "relay" is used for internal/system actions.
client_tag: contextvars.ContextVar[str] = contextvars.ContextVar("client_tag", default="relay")

# Import tools to register them with @mcp.tool.
# This import MUST come AFTER mcp is created to avoid circular imports.
from pr_review_relay import tools  # noqa: F401, E402
from pr_review_relay.api import register_api_routes  # noqa: E402

register_api_routes(mcp)


class _ClientFormatter(logging.Formatter):
    """Log formatter that injects the client_tag ContextVar into each record."""

    def format(self, record: logging.LogRecord) -> str:
        record.client_tag = client_tag.get("relay")  # type: ignore[attr-defined]
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    """Structured JSON formatter for relay logfile events."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "client_tag": getattr(record, "client_tag", client_tag.get("relay")),
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def _resolve_relay_log_dir() -> Path:
    override = os.environ.get(RELAY_LOG_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return default_config_dir() / "logs"


def _read_positive_int_env(name: str, default: int, minimum: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value < minimum:
        return default
    return value


def _configure_logging() -> None:
    """Configure concise stderr logs plus a structured rotating logfile."""
    logger = logging.getLogger("pr_review_relay")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    has_stream_handler = any(
        getattr(handler, "_relay_stream_handler", False) for handler in logger.handlers
    )
    if not has_stream_handler:
        # stderr: stdout carries the MCP stdio protocol.
        handler = logging.StreamHandler(sys.stderr)
        handler._relay_stream_handler = True  # type: ignore[attr-defined]
        handler.setLevel(logging.INFO)
        handler.setFormatter(
            _ClientFormatter(
                "%(asctime)s [%(client_tag)s] %(message)s",
                "%H:%M:%S",
            )
        )
        logger.addHandler(handler)

    if not any(getattr(handler, "_relay_file_handler", False) for handler in logger.handlers):
        log_dir = _resolve_relay_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        log_max_bytes = _read_positive_int_env(
            RELAY_LOG_MAX_BYTES_ENV_VAR,
            DEFAULT_RELAY_LOG_MAX_BYTES,
            1024,
        )
        log_backups = _read_positive_int_env(
            RELAY_LOG_BACKUPS_ENV_VAR,
            DEFAULT_RELAY_LOG_BACKUPS,
            1,
        )
        file_handler = RotatingFileHandler(
            log_dir / "relay.jsonl",
            maxBytes=log_max_bytes,
            backupCount=log_backups,
            encoding="utf-8",
        )
        file_handler._relay_file_handler = True  # type: ignore[attr-defined]
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(_JsonFormatter())
        logger.addHandler(file_handler)


# Ensure the relay logger is configured even when launched without calling main().
_configure_logging()


def main() -> None:
    """Run the relay.

    RELAY_TRANSPORT selects the transport:
    - stdio (default): one MCP server per agent process.
    - http: the reviewer HTTP API plus MCP over streamable-http on
      RELAY_HOST (default 127.0.0.1) and RELAY_PORT (default 3847).
      While it runs, runtime.json in the config dir records the port and pid.
      MCP sessions are stateful: each connected agent is its own client and
      receives every sent comment once.

    Storage:
    - Default DB path is the user-scoped config dir:
      Linux: ~/.config/pr-review-relay/pr-review-relay.sqlite3
      macOS: ~/Library/Application Support/pr-review-relay/pr-review-relay.sqlite3
      Windows: %APPDATA%/pr-review-relay/pr-review-relay.sqlite3
    - Set RELAY_DB_PATH to override with an explicit SQLite file path.
    """
    _configure_logging()
    transport = os.environ.get("RELAY_TRANSPORT", "stdio").strip().lower()
    if transport == "stdio":
        mcp.run(transport="stdio")
        return
    if transport != "http":
        raise SystemExit(f"Unknown RELAY_TRANSPORT: {transport!r} (expected stdio or http)")

    host = os.environ.get("RELAY_HOST", "127.0.0.1")
    port = _read_positive_int_env("RELAY_PORT", DEFAULT_RELAY_PORT, 1)
    uvicorn_log_level = os.environ.get("RELAY_UVICORN_LOG_LEVEL", "warning")
    runtime_path = default_config_dir() / "runtime.json"
    write_runtime(runtime_path, port)
    try:
        mcp.run(
            transport="streamable-http",
            host=host,
            port=port,
            log_level=uvicorn_log_level,
        )
    finally:
        delete_runtime(runtime_path)


if __name__ == "__main__":
    main()
