"""Identity of the MCP clients served by this process."""

from __future__ import annotations

import asyncio
import logging
import uuid

from pr_review_relay.models import McpClient
from pr_review_relay.storage import NOW_SQL, Storage

logger = logging.getLogger("pr_review_relay")


class ClientSession:
    """One client id per long-lived agent connection.

    The id is created lazily on first use and last_seen_at is refreshed on
    every later interaction. Client rows are never deleted.
    """

    def __init__(self, client_name: str | None = None, working_dir: str | None = None) -> None:
        self.client_name = client_name
        self.working_dir = working_dir
        self.client_id: str | None = None
        self._register_lock = asyncio.Lock()

    async def ensure(self, storage: Storage) -> str:
        """Return this connection's client id, registering it on first call."""
        async with self._register_lock:
            if self.client_id is None:
                client_id = str(uuid.uuid4())
                await storage.execute(
                    f"""INSERT INTO mcp_clients
                            (id, client_name, working_dir, connected_at, last_seen_at)
                        VALUES (?, ?, ?, {NOW_SQL}, {NOW_SQL})""",
                    (client_id, self.client_name, self.working_dir),
                )
                self.client_id = client_id
                logger.info(
                    "MCP client connected: %s (%s, cwd=%s)",
                    client_id[:8],
                    self.client_name,
                    self.working_dir,
                )
                return client_id

        await storage.execute(
            f"UPDATE mcp_clients SET last_seen_at = {NOW_SQL} WHERE id = ?",
            (self.client_id,),
        )
        return self.client_id


class ClientRegistry:
    """ClientSession per MCP session key.

    A stdio process serves exactly one agent, so every call shares the
    default session. Over streamable-http each MCP session is its own agent.
    """

    def __init__(self, client_name: str | None = None, working_dir: str | None = None) -> None:
        self.client_name = client_name
        self.working_dir = working_dir
        self.default = ClientSession(client_name, working_dir)
        self._sessions: dict[str, ClientSession] = {}

    def session_for(self, session_key: str | None) -> ClientSession:
        if session_key is None:
            return self.default
        session = self._sessions.get(session_key)
        if session is None:
            session = ClientSession(self.client_name, self.working_dir)
            self._sessions[session_key] = session
        return session

    async def ensure(self, storage: Storage, session_key: str | None = None) -> str:
        return await self.session_for(session_key).ensure(storage)


async def get_client(storage: Storage, client_id: str) -> McpClient | None:
    row = await storage.query_one("SELECT * FROM mcp_clients WHERE id = ?", (client_id,))
    return McpClient.model_validate(row) if row is not None else None
