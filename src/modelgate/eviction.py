"""Background eviction of idle model instances.

Runs a periodic tick that unloads every unreferenced instance whose
per-kind TTL has elapsed. TTL=0 instances are unloaded by the pool as soon
as their last reference is released; the tick only collects stragglers.
"""

import asyncio

import structlog

from modelgate.constants import DEFAULT_EVICTION_INTERVAL
from modelgate.pool import InstancePool, ModelInstance

logger = structlog.get_logger(__name__)


def is_expired(ttl: float, idle_seconds: float) -> bool:
    """Whether an unreferenced instance idle for ``idle_seconds`` should go.

    A negative TTL never expires, zero expires immediately, a positive TTL
    expires once the idle time reaches it.
    """
    if ttl < 0:
        return False
    return idle_seconds >= ttl


class EvictionScheduler:
    """Periodically unloads instances that have been idle past their TTL."""

    def __init__(self, pool: InstancePool, interval: float = DEFAULT_EVICTION_INTERVAL):
        """Initialize the scheduler.

        Args:
            pool: The instance pool to scan.
            interval: Seconds between ticks.
        """
        if interval <= 0:
            raise ValueError(f"Eviction interval must be positive, got {interval}")
        self._pool = pool
        self._interval = interval
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the background eviction loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._evict_loop())
        logger.info("Eviction scheduler started", interval_s=self._interval)

    async def stop(self) -> None:
        """Stop the background eviction loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def tick(self) -> list[str]:
        """Run one eviction pass.

        Returns:
            Identifiers of the models unloaded by this pass.
        """
        evicted = []
        for instance in self._pool.idle_instances():
            if not await self._pool.unload_instance(instance, condition=self._expired):
                continue
            logger.info(
                "Evicted idle model",
                model_id=instance.model_id,
                kind=instance.descriptor.kind.value,
                ttl=instance.descriptor.ttl,
            )
            evicted.append(instance.model_id)
        return evicted

    def _expired(self, instance: ModelInstance) -> bool:
        idle = instance.idle_seconds(self._pool.now())
        return is_expired(instance.descriptor.ttl, idle)

    async def _evict_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._interval)
            try:
                await self.tick()
            except Exception:
                logger.exception("Eviction tick failed")

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        """Whether the eviction loop is running."""
        return self._running
