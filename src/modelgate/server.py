"""FastAPI server exposing the gateway over HTTP.

Audio endpoints take raw 16kHz mono PCM16 request bodies. The server depends
only on the Backend protocol, allowing use with real or fake backends.
"""

import dataclasses
import secrets
import time
from collections.abc import Callable
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from modelgate.audio import float32_to_pcm16, pcm16_to_float32, validate_audio_format
from modelgate.config import Settings, get_settings
from modelgate.constants import SAMPLE_RATE
from modelgate.dispatcher import Dispatcher, InferenceRequest, LanguagePolicy
from modelgate.engine.protocol import Backend
from modelgate.errors import (
    DispatchTimeoutError,
    DuplicateModelError,
    GatewayError,
    InferenceError,
    ModelInUseError,
    ModelKindMismatchError,
    ModelLoadError,
    ModelNotLoadedError,
    NoDefaultConfiguredError,
    PoolClosedError,
    UnknownModelError,
    UnsupportedLanguageError,
)
from modelgate.eviction import EvictionScheduler
from modelgate.pool import InstancePool
from modelgate.preload import PreloadCoordinator
from modelgate.registry import CapabilityKind, ModelDescriptor, ModelRegistry

ERROR_STATUS: dict[type[GatewayError], int] = {
    UnknownModelError: 404,
    ModelNotLoadedError: 404,
    UnsupportedLanguageError: 400,
    ModelKindMismatchError: 400,
    NoDefaultConfiguredError: 400,
    ModelInUseError: 409,
    DuplicateModelError: 409,
    InferenceError: 500,
    ModelLoadError: 503,
    PoolClosedError: 503,
    DispatchTimeoutError: 504,
}


class SpeechRequest(BaseModel):
    input: str = Field(min_length=1)
    model: str | None = None
    language: str | None = None


def error_status(exc: GatewayError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


def create_app(
    backend: Backend,
    settings: Settings | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> FastAPI:
    """Create a FastAPI application with the given backend.

    Args:
        backend: Model backend implementation (real or fake).
        settings: Gateway settings; read from the environment when omitted.
        clock: Monotonic time source for TTL bookkeeping.

    Returns:
        Configured FastAPI application. The registry, pool, scheduler and
        dispatcher are available on ``app.state``.
    """
    settings = settings or get_settings()
    registry = ModelRegistry.from_settings(settings)
    pool = InstancePool(
        registry,
        backend,
        clock=clock,
        load_timeout=settings.positive_or_none(settings.load_timeout),
        unload_timeout=settings.positive_or_none(settings.unload_timeout),
    )
    scheduler = EvictionScheduler(pool, interval=settings.eviction_interval)
    dispatcher = Dispatcher(
        registry,
        pool,
        backend,
        policy=LanguagePolicy(settings.allowed_languages),
        timeout=settings.positive_or_none(settings.request_timeout),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await PreloadCoordinator(pool).preload(settings.preload_models)
        await scheduler.start()
        yield
        await scheduler.stop()
        await pool.close()

    app = FastAPI(title="Model Gateway", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.pool = pool
    app.state.scheduler = scheduler
    app.state.dispatcher = dispatcher

    bearer = HTTPBearer(auto_error=False)

    async def require_api_key(
        credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    ) -> None:
        if settings.api_key is None:
            return
        if credentials is None or not secrets.compare_digest(
            credentials.credentials.encode(), settings.api_key.encode()
        ):
            raise HTTPException(
                status_code=401,
                detail="Invalid or missing API key",
                headers={"WWW-Authenticate": "Bearer"},
            )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        return JSONResponse(
            status_code=error_status(exc),
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "loaded_models": sum(1 for info in pool.snapshot() if info.state == "ready"),
            "sample_rate": SAMPLE_RATE,
        }

    api = APIRouter(dependencies=[Depends(require_api_key)])

    def describe(descriptor: ModelDescriptor) -> dict:
        instance = pool.get(descriptor.model_id)
        return {
            "id": descriptor.model_id,
            "object": "model",
            "kind": descriptor.kind.value,
            "source": descriptor.source,
            "ttl": descriptor.ttl,
            "default": registry.is_default(descriptor),
            "state": instance.state.value if instance else "not_loaded",
        }

    @api.get("/v1/models")
    async def list_models():
        return {"object": "list", "data": [describe(d) for d in registry]}

    @api.get("/v1/models/{model_id:path}")
    async def get_model(model_id: str):
        return describe(registry.resolve(model_id))

    @api.get("/api/ps")
    async def list_loaded():
        return {"models": [dataclasses.asdict(info) for info in pool.snapshot()]}

    @api.post("/api/ps/{model_id:path}", status_code=201)
    async def load_model(model_id: str):
        """Load a model. TTL=0 models are unloaded right after, reported with 200."""
        if not await pool.load(model_id):
            return JSONResponse(
                status_code=409,
                content={"error": "ModelAlreadyLoaded", "detail": f"Model already loaded: {model_id}"},
            )
        if registry.resolve(model_id).expires_immediately:
            return JSONResponse(status_code=200, content={"model_id": model_id, "state": "unloaded"})
        return {"model_id": model_id, "state": "ready"}

    @api.delete("/api/ps/{model_id:path}")
    async def unload_model(model_id: str):
        await pool.unload(model_id)
        return {"model_id": model_id, "state": "unloaded"}

    @api.post("/v1/audio/transcriptions")
    async def transcribe(request: Request, model: str | None = None, language: str | None = None):
        """Transcribe a raw PCM16 body (16kHz mono)."""
        audio = await _read_audio(request)
        result = await dispatcher.handle(
            InferenceRequest(CapabilityKind.STT, audio, language=language, model_id=model)
        )
        return {"text": result.output, "model": result.model_id, "language": result.language}

    @api.post("/v1/audio/speech")
    async def synthesize(body: SpeechRequest):
        """Synthesize speech; responds with raw PCM16 audio."""
        result = await dispatcher.handle(
            InferenceRequest(CapabilityKind.TTS, body.input, language=body.language, model_id=body.model)
        )
        return Response(
            content=float32_to_pcm16(result.output),
            media_type="audio/pcm",
            headers={"X-Model": result.model_id, "X-Sample-Rate": str(SAMPLE_RATE)},
        )

    @api.post("/v1/audio/vad")
    async def detect_speech(request: Request, model: str | None = None):
        """Return speech segments (seconds) found in a raw PCM16 body."""
        audio = await _read_audio(request)
        result = await dispatcher.handle(InferenceRequest(CapabilityKind.VAD, audio, model_id=model))
        return {"segments": result.output, "model": result.model_id}

    app.include_router(api)
    return app


async def _read_audio(request: Request):
    data = await request.body()
    if not validate_audio_format(data):
        raise HTTPException(status_code=400, detail="Invalid audio format (must be PCM16)")
    return pcm16_to_float32(data)
