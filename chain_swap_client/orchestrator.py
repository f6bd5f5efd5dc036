"""
Coordination of concurrent swap sessions.

One update stream carries status updates for every swap we are driving.
The orchestrator hands each update to the queue of the session owning
that swap, so sessions never see each other's events and a slow session
does not hold up the rest.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional

import structlog

from .config import config
from .exceptions import SwapError
from .health import HealthServer
from .messages import SwapUpdate
from .models import SwapStatus
from .session import SwapSession

logger = structlog.get_logger()


class SwapOrchestrator:
    """
    Routes updates to sessions by swap id and collects their outcomes.

    Each session gets its own queue and task. Updates for ids without a
    session are dropped.
    """

    def __init__(
        self,
        update_stream,
        enable_health_server: Optional[bool] = None,
        health_port: Optional[int] = None,
    ):
        self.update_stream = update_stream
        self.sessions: dict[str, SwapSession] = {}
        self.queues: dict[str, asyncio.Queue] = {}
        self.session_tasks: dict[str, asyncio.Task] = {}
        self.outcomes: dict[str, SwapStatus] = {}
        self.is_running = False
        self.background_tasks = []

        if enable_health_server is None:
            enable_health_server = config.enable_health_server
        self.health_server = (
            HealthServer(
                port=health_port or config.health_port,
                sessions_provider=self.session_statuses,
            )
            if enable_health_server
            else None
        )

        # Counters for /status
        self.updates_routed = 0
        self.updates_dropped = 0

    def session_statuses(self) -> dict[str, str]:
        return {swap_id: session.status.value for swap_id, session in self.sessions.items()}

    async def add_session(self, session: SwapSession):
        """Start driving `session` and subscribe to its updates."""
        swap_id = session.swap_id
        if swap_id in self.sessions:
            raise ValueError(f"swap {swap_id} already has a session")

        self.sessions[swap_id] = session
        queue = asyncio.Queue()
        self.queues[swap_id] = queue
        self.session_tasks[swap_id] = asyncio.create_task(
            self._run_session(session, queue), name=f"swap-{swap_id}"
        )
        await self.update_stream.subscribe([swap_id])
        logger.info("Added swap session", swap_id=swap_id, status=session.status.value)

    def route(self, update: SwapUpdate) -> bool:
        """Queue `update` for its session. Returns False if it was dropped."""
        queue = self.queues.get(update.id)
        if queue is None:
            self.updates_dropped += 1
            logger.debug("Dropping update for unknown swap", swap_id=update.id)
            return False
        queue.put_nowait(update)
        self.updates_routed += 1
        return True

    def cancel_session(self, swap_id: str):
        """Close a session's subscription; late results are discarded by the session."""
        session = self.sessions.get(swap_id)
        if session is None:
            return
        session.cancel()
        queue = self.queues.pop(swap_id, None)
        if queue is not None:
            # Wakes the session if it is waiting for an update
            queue.put_nowait(None)

    async def _run_session(
        self, session: SwapSession, queue: asyncio.Queue
    ) -> SwapStatus:
        swap_id = session.swap_id
        try:
            status = await session.run(queue)
        except SwapError as e:
            logger.error(
                "Swap session failed",
                swap_id=swap_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            status = session.status
        finally:
            self.queues.pop(swap_id, None)

        self.outcomes[swap_id] = status
        logger.info("Swap session finished", swap_id=swap_id, status=status.value)
        if self.health_server:
            self.health_server.update_status(
                finished_sessions=len(self.outcomes),
                last_finished_at=datetime.now(timezone.utc).isoformat(),
            )
        return status

    async def _route_updates(self):
        async for update in self.update_stream.updates():
            self.route(update)
            if self.health_server:
                self.health_server.update_status(
                    updates_routed=self.updates_routed,
                    updates_dropped=self.updates_dropped,
                )
            if not self.is_running:
                break

    async def run(self) -> dict[str, SwapStatus]:
        """Route updates until every added session has finished."""
        self.is_running = True
        logger.info("Starting swap orchestrator", sessions=len(self.sessions))

        if self.health_server:
            await self.health_server.start()
            self.health_server.update_status(
                started_at=datetime.now(timezone.utc).isoformat(),
            )

        router = asyncio.create_task(self._route_updates(), name="update-router")
        sessions_done = asyncio.gather(*self.session_tasks.values())
        self.background_tasks = [router]

        try:
            done, _ = await asyncio.wait(
                [router, sessions_done], return_when=asyncio.FIRST_COMPLETED
            )
            if sessions_done in done:
                sessions_done.result()
            elif router in done:
                # Surfaces a stream that gave up reconnecting
                router.result()
                logger.warning("Update stream ended before all sessions finished")
        finally:
            await self.stop()

        return dict(self.outcomes)

    async def stop(self):
        """Cancel remaining sessions and shut down the stream."""
        self.is_running = False
        logger.info("Shutting down swap orchestrator")

        for swap_id, task in self.session_tasks.items():
            if not task.done():
                self.cancel_session(swap_id)

        for task in self.background_tasks:
            if not task.done():
                task.cancel()

        try:
            await asyncio.wait_for(
                asyncio.gather(
                    *self.session_tasks.values(),
                    *self.background_tasks,
                    return_exceptions=True,
                ),
                timeout=30.0,
            )
        except asyncio.TimeoutError:
            logger.warning("Shutdown timeout - some sessions may still be running")

        await self.update_stream.stop()

        if self.health_server:
            await self.health_server.stop()

        logger.info("Swap orchestrator stopped")
