"""Request dispatcher: typed inference requests in, results out.

Each request is checked against the language allow-list, resolved to a
model, served by an instance leased from the pool, and the lease is returned
on every exit path.
"""

import asyncio
import dataclasses
import time
from collections.abc import Iterable
from dataclasses import dataclass
from functools import partial
from typing import Any

import structlog

from modelgate.engine.protocol import Backend
from modelgate.errors import (
    DispatchTimeoutError,
    InferenceError,
    ModelKindMismatchError,
    UnsupportedLanguageError,
)
from modelgate.pool import InstancePool, ModelHandle
from modelgate.registry import CapabilityKind, ModelDescriptor, ModelRegistry

logger = structlog.get_logger(__name__)


@dataclass
class InferenceRequest:
    """A single inference call. ``model_id`` falls back to the kind default."""

    kind: CapabilityKind
    payload: Any
    language: str | None = None
    model_id: str | None = None


@dataclass
class InferenceResult:
    model_id: str
    kind: CapabilityKind
    output: Any
    language: str | None = None


def normalize_language(tag: str | None) -> str | None:
    """Reduce a language tag to its lowercase primary subtag ("en-US" -> "en")."""
    if tag is None:
        return None
    primary = tag.strip().replace("_", "-").split("-")[0].lower()
    return primary or None


class LanguagePolicy:
    """Allow-list of request languages. An empty allow-list accepts everything."""

    def __init__(self, allowed: Iterable[str] = ()):
        normalized = (normalize_language(tag) for tag in allowed)
        self._allowed = frozenset(tag for tag in normalized if tag)

    @property
    def allowed(self) -> frozenset[str]:
        return self._allowed

    def check(self, kind: CapabilityKind, language: str | None) -> str | None:
        """Validate a request language and return its normalized form.

        VAD is language agnostic. STT and TTS requests must name an allowed
        language whenever an allow-list is configured.

        Raises:
            UnsupportedLanguageError: If the language is not allowed.
        """
        tag = normalize_language(language)
        if kind is CapabilityKind.VAD or not self._allowed:
            return tag
        if tag not in self._allowed:
            logger.warning("Rejected request language", kind=kind.value, language=language)
            raise UnsupportedLanguageError(language, self._allowed)
        return tag


class Dispatcher:
    """Routes inference requests to leased model instances.

    Args:
        registry: Resolves explicit model ids and per-kind defaults.
        pool: Source of model handles.
        backend: Runs inference on loaded models.
        policy: Language allow-list; defaults to allowing everything.
        timeout: Default request timeout in seconds, ``None`` to disable.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        pool: InstancePool,
        backend: Backend,
        policy: LanguagePolicy | None = None,
        timeout: float | None = None,
    ):
        self._registry = registry
        self._pool = pool
        self._backend = backend
        self._policy = policy or LanguagePolicy()
        self._timeout = timeout

    @property
    def policy(self) -> LanguagePolicy:
        return self._policy

    async def handle(self, request: InferenceRequest, timeout: float | None = None) -> InferenceResult:
        """Serve one request.

        Args:
            request: The inference request.
            timeout: Overrides the dispatcher default for this request.

        Raises:
            UnsupportedLanguageError: Before any model work if the language is rejected.
            UnknownModelError, NoDefaultConfiguredError, ModelKindMismatchError:
                If the target model cannot be resolved.
            ModelLoadError: If the model could not be loaded.
            InferenceError: If the backend failed, chained to the cause.
            DispatchTimeoutError: If the request ran out of time.
        """
        language = self._policy.check(request.kind, request.language)
        descriptor = self._resolve(request)
        request = dataclasses.replace(request, language=language, model_id=descriptor.model_id)

        limit = self._timeout if timeout is None else timeout
        if limit is None or limit <= 0:
            return await self._execute(descriptor, request)
        try:
            return await asyncio.wait_for(self._execute(descriptor, request), timeout=limit)
        except asyncio.TimeoutError:
            logger.warning("Request timed out", model_id=descriptor.model_id, timeout_s=limit)
            raise DispatchTimeoutError(descriptor.model_id, limit) from None

    def _resolve(self, request: InferenceRequest) -> ModelDescriptor:
        if request.model_id is None:
            return self._registry.default_for(request.kind)
        descriptor = self._registry.resolve(request.model_id)
        if descriptor.kind is not request.kind:
            raise ModelKindMismatchError(descriptor.model_id, request.kind.value, descriptor.kind.value)
        return descriptor

    async def _execute(self, descriptor: ModelDescriptor, request: InferenceRequest) -> InferenceResult:
        handle = await self._pool.acquire(descriptor.model_id)
        loop = asyncio.get_running_loop()
        started = time.perf_counter()
        work = loop.run_in_executor(None, self._backend.infer, handle.model, request)

        deferred = False
        try:
            try:
                output = await asyncio.shield(work)
            except asyncio.CancelledError:
                # The worker thread still holds the model; release when it finishes
                deferred = True
                work.add_done_callback(partial(self._release_after, handle))
                raise
            except Exception as exc:
                raise InferenceError(descriptor.model_id, str(exc) or type(exc).__name__) from exc
        finally:
            if not deferred:
                self._pool.release(handle)

        logger.debug(
            "Inference complete",
            model_id=descriptor.model_id,
            kind=request.kind.value,
            duration_s=round(time.perf_counter() - started, 3),
        )
        return InferenceResult(
            model_id=descriptor.model_id,
            kind=request.kind,
            output=output,
            language=request.language,
        )

    def _release_after(self, handle: ModelHandle, future: asyncio.Future) -> None:
        if not future.cancelled():
            future.exception()
        self._pool.release(handle)
