"""Eager model loading at process start."""

from collections.abc import Iterable
from dataclasses import dataclass, field

import structlog

from modelgate.errors import GatewayError
from modelgate.pool import InstancePool

logger = structlog.get_logger(__name__)


@dataclass
class PreloadReport:
    loaded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class PreloadCoordinator:
    """Warms the pool so first requests skip the cold start.

    Models are loaded one at a time to avoid stacking several weight loads
    on the accelerator at once. A failure is logged and skipped; the model
    can still be loaded lazily by the first request that needs it.
    """

    def __init__(self, pool: InstancePool):
        self._pool = pool

    async def preload(self, model_ids: Iterable[str]) -> PreloadReport:
        report = PreloadReport()
        seen: set[str] = set()

        for model_id in model_ids:
            if model_id in seen:
                continue
            seen.add(model_id)
            try:
                handle = await self._pool.acquire(model_id)
            except GatewayError as exc:
                logger.warning("Preload failed", model_id=model_id, error=str(exc))
                report.failed[model_id] = str(exc)
                continue
            self._pool.release(handle)
            report.loaded.append(model_id)

        logger.info("Preload finished", loaded=report.loaded, failed=sorted(report.failed))
        return report
