"""Track persistent SSH sessions and their readiness."""

import asyncio
import logging
import uuid
from dataclasses import dataclass

from server import ssh_transport
from server.connection_policy import ConnectionParameters
from server.ssh_transport import SSHConnection

logger = logging.getLogger("mcp_ssh.registry")


@dataclass
class Session:
    """A registry entry binding an identifier to a live connection."""

    session_id: str
    connection: SSHConnection
    host: str
    port: int
    username: str

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "host": self.host,
            "port": self.port,
            "username": self.username,
        }


class SessionRegistry:
    """
    Registry of SSH sessions.

    Each session moves Connecting -> Ready -> Closed, or Connecting -> Closed
    when the handshake fails or times out. Only Ready sessions are visible
    through lookup() and list(). A session whose transport dies on its own is
    dropped the next time the registry is consulted (or by the session
    monitor), and exec calls addressed to it fall back to one-shot mode.
    """

    def __init__(self):
        self._connections: dict[str, SSHConnection] = {}
        self._ready: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = {}
        self._connecting: set[str] = set()

    async def connect(self, params: ConnectionParameters) -> Session:
        """
        Open a new session.

        The handshake deadline is ``params.connect_timeout_ms``.

        Returns:
            The Ready session

        Raises:
            ConnectTimeoutError: Handshake did not finish in time
            SSHTransportError: Handshake or authentication failed
        """
        session_id = str(uuid.uuid4())
        # Connecting: reserved, but invisible until ready
        self._connecting.add(session_id)

        try:
            connection = await ssh_transport.establish(params)
        finally:
            # establish() either returns a connected client or raises
            self._connecting.discard(session_id)

        self._connections[session_id] = connection
        self._ready.add(session_id)
        self._locks[session_id] = asyncio.Lock()

        logger.info(
            f"SSH session {session_id} opened to {params.username}@{params.host}:{params.port}"
        )
        return Session(
            session_id=session_id,
            connection=connection,
            host=params.host,
            port=params.port,
            username=params.username,
        )

    def prune(self) -> list[str]:
        """
        Drop sessions whose transport has closed or failed.

        Returns:
            The session IDs that were removed
        """
        dead = [sid for sid in self._ready if not self._connections[sid].is_active]
        for session_id in dead:
            logger.info(f"SSH session {session_id} closed by remote side")
            self._forget(session_id).close()
        return dead

    def _forget(self, session_id: str) -> SSHConnection | None:
        self._ready.discard(session_id)
        self._locks.pop(session_id, None)
        return self._connections.pop(session_id, None)

    def is_ready(self, session_id: str | None) -> bool:
        if not session_id or session_id not in self._ready:
            return False
        self.prune()
        return session_id in self._ready

    def lookup(self, session_id: str | None) -> SSHConnection | None:
        """Return the live connection for a Ready session, or None."""
        if not self.is_ready(session_id):
            return None
        return self._connections[session_id]

    def lock(self, session_id: str) -> asyncio.Lock:
        """Per-session mutex serializing commands on one connection."""
        return self._locks.setdefault(session_id, asyncio.Lock())

    async def disconnect(self, session_id: str | None) -> bool:
        """
        Close a session.

        Returns:
            True if a session was closed, False if none matched (idempotent)
        """
        if not session_id or session_id not in self._connections:
            return False

        connection = self._forget(session_id)
        await asyncio.to_thread(connection.close)
        logger.info(f"SSH session {session_id} closed")
        return True

    def list(self) -> list[str]:
        """IDs of all Ready sessions."""
        self.prune()
        return list(self._ready)

    async def close_all(self) -> None:
        """Close every session (called on server shutdown)."""
        for session_id in list(self._connections):
            try:
                await self.disconnect(session_id)
            except Exception as e:
                logger.warning(f"Error closing session {session_id}: {e}")
