"""Background monitor that drops sessions closed by the remote side."""

import asyncio
import logging

from server.session_registry import SessionRegistry

logger = logging.getLogger("mcp_ssh.monitor")


class SessionMonitor:
    """
    Periodically prunes dead sessions from the registry.

    The registry also prunes whenever it is consulted; the monitor keeps the
    ready set accurate while no tool calls arrive.
    """

    def __init__(self, registry: SessionRegistry, check_interval: float = 30.0):
        self.registry = registry
        self.check_interval = check_interval
        self._task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        """Start the background monitoring task."""
        if self._running:
            logger.warning("Session monitor already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info(f"Session monitor started (interval={self.check_interval}s)")

    async def stop(self) -> None:
        """Stop the monitoring task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Session monitor stopped")

    async def _monitor_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.check_interval)
            try:
                dropped = self.registry.prune()
                if dropped:
                    logger.info(f"Dropped {len(dropped)} closed session(s): {dropped}")
            except Exception as e:
                logger.error(f"Error in session monitor loop: {e}")
