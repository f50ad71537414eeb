"""Cleanup scheduler - periodic blacklist compaction and provider token sweep."""

import asyncio
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from authcore.core import async_session_maker
from authcore.core.config import Settings, settings
from authcore.core.logging import get_logger
from authcore.models.base import utcnow
from authcore.models.member import AuthProvider
from authcore.services.provider_token import ProviderTokenBridge, get_provider_bridge
from authcore.services.refresh_token import RefreshTokenService
from authcore.services.token_blacklist import TokenBlacklistService

logger = get_logger("cleanup")

# Consecutive loop failures before a critical log line
MAX_CONSECUTIVE_FAILURES = 5

# Provider rejected the refresh token itself
_DEAD_REFRESH_STATUSES = (400, 401)

BridgeFactory = Callable[[AuthProvider, AsyncSession], ProviderTokenBridge]


@dataclass
class ProviderSweepStats:
    refreshed: int = 0
    failed: int = 0
    deleted: int = 0
    refresh_tokens_deleted: int = 0


class CleanupScheduler:
    """Background tasks for blacklist compaction and the provider sweep.

    Each concern runs in its own asyncio task; ``stop()`` cancels both.
    The ``run_*_now`` methods do one pass on demand.
    """

    _instance: Optional["CleanupScheduler"] = None
    _instance_lock: threading.Lock = threading.Lock()

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        config: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
        bridge_factory: BridgeFactory | None = None,
    ) -> None:
        self.config = config or settings
        self._session_factory = session_factory or async_session_maker
        self._clock = clock or utcnow
        self._bridge_factory = bridge_factory or (
            lambda provider, db: get_provider_bridge(provider, db, self.config, clock=self._clock)
        )
        self._running = False
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def get_instance(cls) -> "CleanupScheduler":
        """Get singleton instance of the scheduler (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                # Double-check locking pattern
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start both background loops."""
        if self._running:
            logger.warning("Cleanup scheduler is already running")
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(
                self._loop(
                    "blacklist compaction",
                    self.run_blacklist_compaction_now,
                    self.config.blacklist_cleanup_interval_seconds,
                )
            ),
            asyncio.create_task(
                self._loop(
                    "provider token sweep",
                    self.run_provider_sweep_now,
                    self.config.provider_sweep_interval_seconds,
                )
            ),
        ]
        logger.info(
            f"Cleanup scheduler started (blacklist every {self.config.blacklist_cleanup_interval_seconds}s, "
            f"provider sweep every {self.config.provider_sweep_interval_seconds}s)"
        )

    async def stop(self) -> None:
        """Cancel the loops and wait for them to exit."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Cleanup scheduler stopped")

    async def _loop(
        self,
        name: str,
        job: Callable[[], Awaitable[object]],
        interval_seconds: int,
    ) -> None:
        consecutive_failures = 0

        while self._running:
            try:
                await job()
                consecutive_failures = 0
            except Exception as e:
                consecutive_failures += 1
                logger.error(
                    f"Error in {name} (failure {consecutive_failures}/{MAX_CONSECUTIVE_FAILURES}): {e}",
                    exc_info=True,
                )
                if consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                    logger.critical(
                        f"{name} has failed {consecutive_failures} times consecutively. "
                        "This may indicate a persistent database or configuration issue."
                    )
                    consecutive_failures = 0

            await asyncio.sleep(interval_seconds)

    # --- Jobs ---

    async def run_blacklist_compaction_now(self) -> int:
        """Compact the blacklist once. Returns the number of entries removed."""
        async with self._session_factory() as db:
            service = TokenBlacklistService(
                db,
                grace=timedelta(days=self.config.blacklist_grace_days),
                clock=self._clock,
            )
            return await service.compact()

    async def run_provider_sweep_now(self) -> ProviderSweepStats:
        """Refresh provider tokens about to expire and drop dead records.

        Also removes expired refresh token records. A failure on one record
        is logged and the sweep moves on.
        """
        stats = ProviderSweepStats()
        lookahead = timedelta(seconds=self.config.provider_refresh_lookahead_seconds)

        async with self._session_factory() as db:
            for provider in AuthProvider:
                bridge = self._bridge_factory(provider, db)
                await self._refresh_expiring(bridge, lookahead, stats)
                await self._delete_unrefreshable(bridge, stats)

            try:
                stats.refresh_tokens_deleted = await RefreshTokenService(
                    db, clock=self._clock
                ).delete_expired()
            except Exception as e:
                await db.rollback()
                logger.error(f"Failed to delete expired refresh tokens: {e}")

        if stats.refreshed or stats.failed or stats.deleted or stats.refresh_tokens_deleted:
            logger.info(
                f"Provider sweep complete: {stats.refreshed} refreshed, {stats.failed} failed, "
                f"{stats.deleted} provider records deleted, "
                f"{stats.refresh_tokens_deleted} refresh tokens deleted"
            )
        return stats

    async def _refresh_expiring(
        self,
        bridge: ProviderTokenBridge,
        lookahead: timedelta,
        stats: ProviderSweepStats,
    ) -> None:
        provider = bridge.provider.value
        try:
            expiring = await bridge.find_expiring(lookahead)
        except Exception as e:
            await bridge.db.rollback()
            logger.error(f"Error querying expiring {provider} tokens: {e}")
            return

        # Snapshot first: a rollback below expires every loaded record
        candidates = [
            (record.member_id, bridge.is_expired(record))
            for record in expiring
            if bridge.has_usable_refresh_token(record)
        ]

        for member_id, access_expired in candidates:
            try:
                result = await bridge.refresh_access_token(member_id)
            except Exception as e:
                await bridge.db.rollback()
                stats.failed += 1
                logger.error(f"Unexpected error refreshing {provider} token for member {member_id}: {e}")
                continue

            if result.ok:
                stats.refreshed += 1
                continue

            stats.failed += 1
            failure = result.failure
            if failure.status_code in _DEAD_REFRESH_STATUSES and access_expired:
                try:
                    stats.deleted += await bridge.delete_by_member_id(member_id)
                    logger.info(f"Dropped {provider} tokens for member {member_id}: refresh rejected")
                except Exception as e:
                    await bridge.db.rollback()
                    logger.error(f"Failed to delete {provider} tokens for member {member_id}: {e}")

    async def _delete_unrefreshable(self, bridge: ProviderTokenBridge, stats: ProviderSweepStats) -> None:
        provider = bridge.provider.value
        try:
            dead = await bridge.find_expired_unrefreshable()
        except Exception as e:
            await bridge.db.rollback()
            logger.error(f"Error querying expired {provider} tokens: {e}")
            return

        for member_id in [record.member_id for record in dead]:
            try:
                stats.deleted += await bridge.delete_by_member_id(member_id)
            except Exception as e:
                await bridge.db.rollback()
                logger.error(f"Failed to delete {provider} tokens for member {member_id}: {e}")
