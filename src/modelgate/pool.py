"""Instance pool owning every loaded model instance.

The pool is the single source of truth for what is resident. Each table
mutation (insert, state transition, reference count change, removal) happens
under one lock and never spans an ``await``; backend calls run in the default
executor outside the lock.

Concurrent ``acquire`` calls for a model that is not loaded share a single
load task. Waiters hold a pending reference while the load runs so the fresh
instance cannot be evicted before they resume.
"""

import asyncio
import threading
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from modelgate.engine.protocol import Backend
from modelgate.errors import (
    ModelInUseError,
    ModelLoadError,
    ModelNotLoadedError,
    ModelUnloadError,
    PoolClosedError,
    ReleaseUnderflowError,
)
from modelgate.registry import ModelDescriptor, ModelRegistry

logger = structlog.get_logger(__name__)


class InstanceState(str, Enum):
    LOADING = "loading"
    READY = "ready"
    DRAINING = "draining"
    UNLOADED = "unloaded"


@dataclass(eq=False)
class ModelInstance:
    """A loaded (or loading) model. Owned exclusively by the pool."""

    descriptor: ModelDescriptor
    state: InstanceState = InstanceState.LOADING
    model: Any = None
    loaded_at: float | None = None
    last_used: float | None = None
    ref_count: int = 0
    ready: asyncio.Future | None = None
    unloaded: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def model_id(self) -> str:
        return self.descriptor.model_id

    def idle_seconds(self, now: float) -> float:
        if self.last_used is None:
            return 0.0
        return max(0.0, now - self.last_used)


@dataclass(frozen=True)
class InstanceInfo:
    """Point-in-time view of a pool entry, safe to hand to callers."""

    model_id: str
    kind: str
    state: str
    ref_count: int
    ttl: float
    idle_seconds: float


class ModelHandle:
    """Lease on a ready instance, returned by ``InstancePool.acquire``."""

    def __init__(self, instance: ModelInstance):
        self._instance = instance
        self._released = False

    @property
    def model_id(self) -> str:
        return self._instance.model_id

    @property
    def descriptor(self) -> ModelDescriptor:
        return self._instance.descriptor

    @property
    def model(self) -> Any:
        return self._instance.model

    @property
    def released(self) -> bool:
        return self._released


class InstancePool:
    """Loads models on demand and tracks who is using them.

    Args:
        registry: Resolves identifiers to descriptors.
        backend: Loads, unloads and runs models.
        clock: Monotonic time source, injectable for tests.
        load_timeout: Upper bound in seconds for a single load; ``None`` or a
            non-positive value waits forever.
        unload_timeout: Upper bound in seconds for a single unload. A timed
            out unload is logged and abandoned; the slot is already free.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        backend: Backend,
        clock: Callable[[], float] = time.monotonic,
        load_timeout: float | None = None,
        unload_timeout: float | None = None,
    ):
        self._registry = registry
        self._backend = backend
        self._clock = clock
        self._load_timeout = load_timeout if load_timeout and load_timeout > 0 else None
        self._unload_timeout = unload_timeout if unload_timeout and unload_timeout > 0 else None
        self._instances: dict[str, ModelInstance] = {}
        # Draining instances leave the table so a reload never waits on them
        self._draining: set[ModelInstance] = set()
        self._lock = threading.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    def now(self) -> float:
        return self._clock()

    async def acquire(self, model_id: str) -> ModelHandle:
        """Return a handle to a ready instance, loading the model if needed.

        Raises:
            UnknownModelError: If the model is not registered.
            ModelLoadError: If the load this call waited on failed.
            PoolClosedError: If the pool has been closed.
        """
        descriptor = self._registry.resolve(model_id)

        with self._lock:
            if self._closed:
                raise PoolClosedError()
            # The table only holds loading and ready instances
            instance = self._instances.get(model_id)
            if instance is None:
                instance = self._start_load(descriptor)
            instance.ref_count += 1
            if instance.state is InstanceState.READY:
                return ModelHandle(instance)
            ready = instance.ready

        try:
            await asyncio.shield(ready)
        except asyncio.CancelledError:
            # The load keeps going for the other waiters
            with self._lock:
                if self._instances.get(model_id) is instance:
                    self._drop_reference(instance)
            raise
        return ModelHandle(instance)

    async def load(self, model_id: str) -> bool:
        """Load a model without holding on to it.

        Returns:
            False if the model was already loading or loaded, True if this
            call started the load. A TTL=0 model is unloaded again right away.
        """
        descriptor = self._registry.resolve(model_id)
        with self._lock:
            if self._closed:
                raise PoolClosedError()
            if model_id in self._instances:
                return False
            self._start_load(descriptor)
        self.release(await self.acquire(model_id))
        return True

    def release(self, handle: ModelHandle) -> None:
        """Return a handle to the pool. Never unloads synchronously.

        Raises:
            ReleaseUnderflowError: If the handle was already released.
        """
        with self._lock:
            if handle._released:
                raise ReleaseUnderflowError(handle.model_id)
            self._drop_reference(handle._instance)
            handle._released = True

    @asynccontextmanager
    async def lease(self, model_id: str) -> AsyncIterator[ModelHandle]:
        """Acquire a handle for the duration of a ``async with`` block."""
        handle = await self.acquire(model_id)
        try:
            yield handle
        finally:
            self.release(handle)

    async def unload(self, model_id: str) -> None:
        """Explicitly unload an idle model.

        Raises:
            ModelNotLoadedError: If no ready instance exists for the model.
            ModelInUseError: If the instance still has references.
        """
        with self._lock:
            instance = self._instances.get(model_id)
            if instance is None or instance.state is not InstanceState.READY:
                raise ModelNotLoadedError(model_id)
            if instance.ref_count > 0:
                raise ModelInUseError(model_id, instance.ref_count)

        if not await self.unload_instance(instance):
            # Lost a race with the eviction scheduler or a new acquirer
            if instance.state is InstanceState.DRAINING:
                await instance.unloaded.wait()
            elif instance.ref_count > 0:
                raise ModelInUseError(model_id, instance.ref_count)

    async def unload_instance(
        self,
        instance: ModelInstance,
        force: bool = False,
        condition: Callable[[ModelInstance], bool] | None = None,
    ) -> bool:
        """Drain and unload one instance.

        The instance is only drained if it is still the table entry for its
        model, is ready, has no references (unless ``force``) and satisfies
        ``condition``, all checked under the lock. Draining removes the
        entry at once, so the next acquire starts a fresh load instead of
        waiting on this one. Unload failures and timeouts are logged.

        Returns:
            True if this call unloaded the instance.
        """
        model_id = instance.model_id
        with self._lock:
            if self._instances.get(model_id) is not instance:
                return False
            if instance.state is not InstanceState.READY:
                return False
            if instance.ref_count > 0 and not force:
                return False
            if condition is not None and not condition(instance):
                return False
            instance.state = InstanceState.DRAINING
            del self._instances[model_id]
            self._draining.add(instance)
            idle = instance.idle_seconds(self._clock())

        logger.info("Unloading model", model_id=model_id, idle_s=round(idle, 1))
        loop = asyncio.get_running_loop()
        unload_future = loop.run_in_executor(None, self._backend.unload, instance.model)
        try:
            await asyncio.wait_for(asyncio.shield(unload_future), timeout=self._unload_timeout)
        except asyncio.TimeoutError:
            # The worker thread is left to finish on its own
            unload_future.add_done_callback(_consume_exception)
            error = ModelUnloadError(model_id, f"timed out after {self._unload_timeout:.1f}s")
            logger.error("Model unload abandoned", model_id=model_id, error=str(error))
        except asyncio.CancelledError:
            unload_future.add_done_callback(_consume_exception)
            raise
        except Exception as exc:
            error = ModelUnloadError(model_id, str(exc) or type(exc).__name__)
            logger.error("Model unload failed", model_id=model_id, error=str(error))
        finally:
            with self._lock:
                self._draining.discard(instance)
                instance.state = InstanceState.UNLOADED
                instance.model = None
            instance.unloaded.set()
        return True

    def idle_instances(self) -> list[ModelInstance]:
        """Ready instances with no references, candidates for eviction."""
        with self._lock:
            return [
                instance
                for instance in self._instances.values()
                if instance.state is InstanceState.READY and instance.ref_count == 0
            ]

    def snapshot(self) -> list[InstanceInfo]:
        now = self._clock()
        with self._lock:
            return [
                InstanceInfo(
                    model_id=instance.model_id,
                    kind=instance.descriptor.kind.value,
                    state=instance.state.value,
                    ref_count=instance.ref_count,
                    ttl=instance.descriptor.ttl,
                    idle_seconds=round(instance.idle_seconds(now), 3),
                )
                for instance in [*self._instances.values(), *self._draining]
            ]

    def get(self, model_id: str) -> ModelInstance | None:
        with self._lock:
            return self._instances.get(model_id)

    def is_loaded(self, model_id: str) -> bool:
        instance = self.get(model_id)
        return instance is not None and instance.state is InstanceState.READY

    def __len__(self) -> int:
        with self._lock:
            return len(self._instances)

    async def close(self) -> None:
        """Reject new acquisitions, finish pending work and unload everything."""
        with self._lock:
            self._closed = True
        await self._wait_for_tasks()

        with self._lock:
            resident = [
                instance
                for instance in self._instances.values()
                if instance.state is InstanceState.READY
            ]
        for instance in resident:
            if instance.ref_count:
                logger.warning(
                    "Unloading model with active references",
                    model_id=instance.model_id,
                    ref_count=instance.ref_count,
                )
            await self.unload_instance(instance, force=True)

        await self._wait_for_tasks()
        with self._lock:
            draining = list(self._draining)
        for instance in draining:
            await instance.unloaded.wait()
        logger.info("Instance pool closed", unloaded=len(resident))

    @property
    def closed(self) -> bool:
        return self._closed

    def _start_load(self, descriptor: ModelDescriptor) -> ModelInstance:
        """Insert a loading entry and spawn its load task. Lock must be held."""
        loop = asyncio.get_running_loop()
        instance = ModelInstance(descriptor)
        instance.ready = loop.create_future()
        instance.ready.add_done_callback(_consume_exception)
        self._instances[descriptor.model_id] = instance
        self._spawn(self._load(instance))
        return instance

    async def _load(self, instance: ModelInstance) -> None:
        model_id = instance.model_id
        loop = asyncio.get_running_loop()
        started = time.perf_counter()
        logger.info(
            "Loading model",
            model_id=model_id,
            kind=instance.descriptor.kind.value,
            source=instance.descriptor.source,
        )

        load_future = loop.run_in_executor(None, self._backend.load, instance.descriptor)
        try:
            model = await asyncio.wait_for(asyncio.shield(load_future), timeout=self._load_timeout)
        except asyncio.TimeoutError:
            load_future.add_done_callback(self._discard_late_load)
            self._fail_load(
                instance, ModelLoadError(model_id, f"timed out after {self._load_timeout:.1f}s")
            )
            return
        except asyncio.CancelledError:
            load_future.add_done_callback(self._discard_late_load)
            self._fail_load(instance, ModelLoadError(model_id, "load cancelled"))
            raise
        except Exception as exc:
            error = ModelLoadError(model_id, str(exc) or type(exc).__name__)
            error.__cause__ = exc
            self._fail_load(instance, error)
            return

        now = self._clock()
        with self._lock:
            instance.model = model
            instance.state = InstanceState.READY
            instance.loaded_at = now
            instance.last_used = now
            if instance.ref_count == 0 and instance.descriptor.expires_immediately:
                self._spawn(self.unload_instance(instance))
        instance.ready.set_result(None)
        logger.info(
            "Model loaded",
            model_id=model_id,
            duration_s=round(time.perf_counter() - started, 3),
            waiters=instance.ref_count,
        )

    def _fail_load(self, instance: ModelInstance, error: ModelLoadError) -> None:
        with self._lock:
            if self._instances.get(instance.model_id) is instance:
                del self._instances[instance.model_id]
            instance.state = InstanceState.UNLOADED
        instance.unloaded.set()
        if not instance.ready.done():
            instance.ready.set_exception(error)
        logger.error("Model load failed", model_id=instance.model_id, error=str(error))

    def _discard_late_load(self, future: asyncio.Future) -> None:
        """Unload weights from a load that finished after it was abandoned."""
        if future.cancelled() or future.exception() is not None:
            return
        model = future.result()
        loop = asyncio.get_running_loop()
        unload = loop.run_in_executor(None, self._backend.unload, model)
        unload.add_done_callback(_consume_exception)

    def _drop_reference(self, instance: ModelInstance) -> None:
        """Decrement a reference count. Lock must be held."""
        if instance.ref_count <= 0:
            raise ReleaseUnderflowError(instance.model_id)
        instance.ref_count -= 1
        if instance.state is not InstanceState.READY:
            return
        instance.last_used = self._clock()
        if instance.ref_count == 0 and instance.descriptor.expires_immediately:
            self._spawn(self.unload_instance(instance))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _wait_for_tasks(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def _consume_exception(future: asyncio.Future) -> None:
    # Marks the exception retrieved when every waiter has gone away
    if not future.cancelled():
        future.exception()
