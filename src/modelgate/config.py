"""Environment driven configuration, validated once at startup.

Variable names match the production ``.env`` written by the deployment
script (``STT_MODEL_TTL``, ``PRELOAD_MODELS``, ...). List values are JSON,
e.g. ``PRELOAD_MODELS=["Systran/faster-whisper-medium"]``.
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from modelgate.constants import (
    DEFAULT_ALLOWED_LANGUAGES,
    DEFAULT_EVICTION_INTERVAL,
    DEFAULT_LOAD_TIMEOUT,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_STT_MODEL,
    DEFAULT_STT_TTL,
    DEFAULT_TTS_MODEL,
    DEFAULT_TTS_TTL,
    DEFAULT_UNLOAD_TIMEOUT,
    DEFAULT_VAD_MODEL,
    DEFAULT_VAD_TTL,
)
from modelgate.registry import CapabilityKind, ModelDescriptor

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


class CatalogEntry(BaseModel):
    """One model in the ``MODELS`` catalog. ``ttl`` overrides the per-kind TTL."""

    id: str = Field(min_length=1)
    kind: CapabilityKind
    location: str | None = None
    ttl: float | None = None


DEFAULT_CATALOG = [
    CatalogEntry(id=DEFAULT_STT_MODEL, kind=CapabilityKind.STT),
    CatalogEntry(id="Systran/faster-whisper-small", kind=CapabilityKind.STT),
    CatalogEntry(id="Systran/faster-whisper-large-v3", kind=CapabilityKind.STT),
    CatalogEntry(id=DEFAULT_TTS_MODEL, kind=CapabilityKind.TTS),
    CatalogEntry(id=DEFAULT_VAD_MODEL, kind=CapabilityKind.VAD),
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    api_key: str | None = None
    log_level: str = "info"
    log_json: bool = False

    stt_model_ttl: float = DEFAULT_STT_TTL
    tts_model_ttl: float = DEFAULT_TTS_TTL
    vad_model_ttl: float = DEFAULT_VAD_TTL

    models: list[CatalogEntry] = Field(default_factory=lambda: list(DEFAULT_CATALOG))
    # None picks the first catalog entry of that kind
    default_stt_model: str | None = None
    default_tts_model: str | None = None
    default_vad_model: str | None = None

    preload_models: list[str] = Field(default_factory=list)
    allowed_languages: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_LANGUAGES))

    eviction_interval: float = Field(DEFAULT_EVICTION_INTERVAL, gt=0)
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    load_timeout: float = DEFAULT_LOAD_TIMEOUT
    unload_timeout: float = DEFAULT_UNLOAD_TIMEOUT

    backend: str = "modelgate.engine.fake:FakeBackend"

    uvicorn_host: str = "0.0.0.0"
    uvicorn_port: int = Field(8000, ge=1, le=65535)

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.strip().lower()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("api_key", "default_stt_model", "default_tts_model", "default_vad_model")
    @classmethod
    def _blank_is_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _check_catalog(self) -> "Settings":
        ids = [entry.id for entry in self.models]
        duplicates = sorted({model_id for model_id in ids if ids.count(model_id) > 1})
        if duplicates:
            raise ValueError(f"Duplicate model ids in catalog: {', '.join(duplicates)}")

        kinds = {entry.id: entry.kind for entry in self.models}
        for kind, model_id in self._explicit_defaults().items():
            if model_id is None:
                continue
            if model_id not in kinds:
                raise ValueError(f"Default {kind.value} model {model_id!r} is not in the catalog")
            if kinds[model_id] is not kind:
                raise ValueError(
                    f"Default {kind.value} model {model_id!r} is a {kinds[model_id].value} model"
                )
        return self

    def ttl_policy(self) -> dict[CapabilityKind, float]:
        """Per-kind TTL in seconds (negative never expires, 0 immediate)."""
        return {
            CapabilityKind.STT: self.stt_model_ttl,
            CapabilityKind.TTS: self.tts_model_ttl,
            CapabilityKind.VAD: self.vad_model_ttl,
        }

    def descriptors(self) -> list[ModelDescriptor]:
        policy = self.ttl_policy()
        return [
            ModelDescriptor(
                model_id=entry.id,
                kind=entry.kind,
                location=entry.location,
                ttl=policy[entry.kind] if entry.ttl is None else entry.ttl,
            )
            for entry in self.models
        ]

    def default_models(self) -> dict[CapabilityKind, str]:
        defaults = {}
        for kind, model_id in self._explicit_defaults().items():
            if model_id is None:
                model_id = next((e.id for e in self.models if e.kind is kind), None)
            if model_id is not None:
                defaults[kind] = model_id
        return defaults

    def _explicit_defaults(self) -> dict[CapabilityKind, str | None]:
        return {
            CapabilityKind.STT: self.default_stt_model,
            CapabilityKind.TTS: self.default_tts_model,
            CapabilityKind.VAD: self.default_vad_model,
        }

    @staticmethod
    def positive_or_none(value: float) -> float | None:
        """Timeouts: a non-positive value disables the bound."""
        return value if value > 0 else None


def get_settings(**overrides) -> Settings:
    """Load settings from the environment and ``.env``."""
    return Settings(**overrides)
