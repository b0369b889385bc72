"""
Background workers for FleetLink: command dispatch, timeout sweep and
presence sweep, each an asyncio task started with the application.
"""
import asyncio
from typing import Callable, Optional

from sqlalchemy.orm import Session

from config import config
from dispatcher import dispatch_due, sweep_timeouts
from models import SessionLocal
from observability import structured_logger, metrics
from pairing import expire_stale_registrations
from presence import sweep_presence
from rate_limiter import pairing_rate_limiter
from transport import NotificationTransport, build_transport


class BackgroundTaskManager:
    """Owns the worker tasks and the transport they share."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, transport: Optional[NotificationTransport] = None):
        self.session_factory = session_factory
        self.transport = transport
        self._running = False
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            return

        if self.transport is None:
            self.transport = build_transport(config)

        self._running = True
        self._tasks = [
            asyncio.create_task(self._run_worker("dispatch", self._dispatch_once, config.dispatch_interval_seconds)),
            asyncio.create_task(self._run_worker("timeout_sweep", self._sweep_timeouts_once, config.sweep_interval_seconds)),
            asyncio.create_task(self._run_worker("presence_sweep", self._sweep_presence_once, config.presence_sweep_interval_seconds)),
        ]
        structured_logger.log_event(
            "background_tasks.started",
            transport=type(self.transport).__name__,
            workers=len(self._tasks)
        )

    async def stop(self):
        if not self._running:
            return

        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        aclose = getattr(self.transport, "aclose", None)
        if aclose is not None:
            await aclose()

        structured_logger.log_event("background_tasks.stopped")

    async def _dispatch_once(self):
        dispatched = await dispatch_due(self.session_factory, self.transport)
        metrics.set_gauge("dispatch_last_batch_size", dispatched)
        if dispatched:
            metrics.inc_counter("dispatch_worker_commands_total", value=dispatched)

    async def _sweep_timeouts_once(self):
        await sweep_timeouts(self.session_factory, self.transport)

    async def _sweep_presence_once(self):
        db = self.session_factory()
        try:
            sweep_presence(db)
            expired = expire_stale_registrations(db)
            if expired:
                structured_logger.log_event("pairing.registrations.expired", count=expired)
        finally:
            db.close()
        pairing_rate_limiter.cleanup_old_entries()

    async def _run_worker(self, name: str, step, interval: float):
        """
        Run step every interval seconds until stopped. A failing step is logged
        and retried on the next tick.
        """
        while self._running:
            try:
                await step()
            except asyncio.CancelledError:
                break
            except Exception as e:
                metrics.inc_counter("background_worker_errors_total", {"worker": name})
                structured_logger.log_event(
                    f"{name}_worker.error",
                    level="ERROR",
                    error=str(e),
                    error_type=type(e).__name__
                )

            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break


# Global instance
background_tasks = BackgroundTaskManager()
