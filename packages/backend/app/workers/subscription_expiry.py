from __future__ import annotations

import asyncio
import contextlib
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.services.subscription import check_expired_subscriptions


logger = logging.getLogger(__name__)


async def run_expiry_sweep(session_factory: async_sessionmaker[AsyncSession]) -> int:
    async with session_factory() as session:
        expired = await check_expired_subscriptions(session)
    if expired:
        logger.info("subscription sweep expired %d subscription(s)", expired)
    else:
        logger.debug("subscription sweep found nothing to expire")
    return expired


class SubscriptionExpiryWorker:
    """Runs the expiry sweep on a fixed interval until stopped."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, interval_hours: float) -> None:
        self._session_factory = session_factory
        self._interval_seconds = max(interval_hours, 0.0) * 3600
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="subscription-expiry-worker")
        logger.info("subscription expiry worker started (every %.1fh)", self._interval_seconds / 3600)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("subscription expiry worker stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await run_expiry_sweep(self._session_factory)
            except SQLAlchemyError:
                # The next tick retries; one bad sweep must not end the loop.
                logger.exception("subscription expiry sweep failed")
            await asyncio.sleep(self._interval_seconds)
