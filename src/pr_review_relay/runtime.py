"""runtime.json: where the reviewer web app is listening, if it is running."""

from __future__ import annotations

import contextlib
import logging
import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pr_review_relay.signals import write_atomic
from pr_review_relay.storage import utc_now

logger = logging.getLogger("pr_review_relay")


class RuntimeInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    port: int
    pid: int
    started_at: str = Field(alias="startedAt")


def read_runtime(path: Path) -> RuntimeInfo | None:
    try:
        return RuntimeInfo.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError):
        return None


def write_runtime(path: Path, port: int) -> RuntimeInfo:
    info = RuntimeInfo(port=port, pid=os.getpid(), started_at=utc_now())
    path.parent.mkdir(parents=True, exist_ok=True)
    write_atomic(path, info.model_dump_json(by_alias=True, indent=2))
    return info


def delete_runtime(path: Path) -> None:
    with contextlib.suppress(FileNotFoundError):
        path.unlink()


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    except OSError:
        return False
    return True


def webapp_url(path: Path) -> str | None:
    """http://localhost:<port> when runtime.json names a live process, else None."""
    info = read_runtime(path)
    if info is None or not pid_alive(info.pid):
        return None
    return f"http://localhost:{info.port}"
