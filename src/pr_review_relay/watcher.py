"""Watch one signal file and report each new non-empty record.

The writer lives in another process and replaces the file atomically, so
the underlying OS watch is placed on the parent directory and filtered to
the one file name (an inode-level watch would be lost on the first
replace). Read and parse failures are expected while the writer is busy
and are swallowed; the watch only ends when stopped or when the directory
itself disappears. With ``force_polling`` the file content is compared on a
fixed interval instead of waiting for OS events.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from collections.abc import Awaitable, Callable
from contextlib import suppress
from pathlib import Path

from watchfiles import Change, awatch

from pr_review_relay.models import SignalRecord
from pr_review_relay.signals import parse_signal

logger = logging.getLogger("pr_review_relay")

SignalCallback = Callable[[SignalRecord], Awaitable[None] | None]


class SignalWatcher:
    """Single long-lived subscription to one signal file path."""

    def __init__(
        self,
        path: Path | str,
        on_signal: SignalCallback,
        *,
        force_polling: bool = False,
        poll_delay_ms: int = 300,
        debounce_ms: int = 200,
    ) -> None:
        self.path = Path(path)
        self.on_signal = on_signal
        self.force_polling = force_polling
        self.poll_delay_ms = poll_delay_ms
        self.debounce_ms = debounce_ms
        self._last_content: str | None = None
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Begin watching. Returns False (no watch) when the file does not exist yet."""
        if self.active:
            return True
        if not self.path.exists():
            return False
        with suppress(OSError):
            self._last_content = self.path.read_text(encoding="utf-8")
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"signal-watch:{self.path.name}")
        logger.info("watching signal file %s", self.path)
        return True

    async def stop(self) -> None:
        """Tear the subscription down and release the OS watch handle."""
        task = self._task
        if task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        self._task = None
        logger.info("stopped watching %s", self.path)

    def _matches(self, change: Change, changed_path: str) -> bool:
        del change
        return os.path.basename(changed_path) == self.path.name

    async def _run(self) -> None:
        if self.force_polling:
            await self._poll_contents()
            return
        try:
            async for _changes in awatch(
                self.path.parent,
                watch_filter=self._matches,
                stop_event=self._stop_event,
                debounce=self.debounce_ms,
                recursive=False,
            ):
                await self.handle_change()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("signal watch on %s ended: %s", self.path, exc)

    async def _poll_contents(self) -> None:
        """Polling mode: re-read and compare the file every ``poll_delay_ms``.

        Replacements within one mtime tick are seen too.
        """
        stop_event = self._stop_event or asyncio.Event()
        while not stop_event.is_set():
            await self.handle_change()
            with suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_delay_ms / 1000)

    async def handle_change(self) -> SignalRecord | None:
        """Re-read the file after a change event; emit when it holds pending work.

        Returns the emitted record, or None when the event was suppressed.
        """
        try:
            content = self.path.read_text(encoding="utf-8")
        except OSError:
            return None
        if content == self._last_content:
            return None
        try:
            record = parse_signal(content)
        except ValueError:
            return None
        self._last_content = content
        if record.pending_count <= 0:
            return None

        try:
            result = self.on_signal(record)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("signal callback failed for %s", self.path)
        return record
