"""Model registry: which models exist, what they do and where they live.

The registry is populated at startup and read on every request. Lookups are
plain dictionary reads, so concurrent tasks can resolve models freely.
"""

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import Enum

import structlog

from modelgate.constants import TTL_IMMEDIATE
from modelgate.errors import (
    DuplicateModelError,
    NoDefaultConfiguredError,
    UnknownModelError,
)

logger = structlog.get_logger(__name__)


class CapabilityKind(str, Enum):
    """Category of inference a model performs."""

    STT = "stt"
    TTS = "tts"
    VAD = "vad"


@dataclass(frozen=True)
class ModelDescriptor:
    """Immutable description of a registered model.

    TTL convention: negative never expires, zero expires as soon as the
    last reference is released, positive expires after that many idle seconds.
    """

    model_id: str
    kind: CapabilityKind
    location: str | None = None
    ttl: float = TTL_IMMEDIATE

    @property
    def source(self) -> str:
        """Where the backend should read weights from."""
        return self.location or self.model_id

    @property
    def never_expires(self) -> bool:
        return self.ttl < 0

    @property
    def expires_immediately(self) -> bool:
        return self.ttl == 0


class ModelRegistry:
    """Catalog of known models and the default model per capability kind."""

    def __init__(
        self,
        descriptors: Iterable[ModelDescriptor] = (),
        defaults: dict[CapabilityKind, str] | None = None,
    ):
        self._models: dict[str, ModelDescriptor] = {}
        self._defaults: dict[CapabilityKind, str] = {}

        for descriptor in descriptors:
            self.register(descriptor)
        for kind, model_id in (defaults or {}).items():
            self.set_default(kind, model_id)

    @classmethod
    def from_settings(cls, settings) -> "ModelRegistry":
        """Build the registry from validated settings."""
        registry = cls(settings.descriptors(), settings.default_models())
        logger.info(
            "Model registry initialized",
            models=len(registry),
            defaults={kind.value: mid for kind, mid in registry.defaults().items()},
        )
        return registry

    def register(self, descriptor: ModelDescriptor) -> None:
        """Add a model to the catalog.

        Raises:
            DuplicateModelError: If the identifier is already registered.
        """
        if descriptor.model_id in self._models:
            raise DuplicateModelError(descriptor.model_id)
        self._models[descriptor.model_id] = descriptor

    def resolve(self, model_id: str) -> ModelDescriptor:
        """Look up a model by identifier.

        Raises:
            UnknownModelError: If the identifier is not registered.
        """
        try:
            return self._models[model_id]
        except KeyError:
            raise UnknownModelError(model_id) from None

    def default_for(self, kind: CapabilityKind) -> ModelDescriptor:
        """Return the default model for a capability kind.

        Raises:
            NoDefaultConfiguredError: If no default is configured for the kind.
        """
        model_id = self._defaults.get(kind)
        if model_id is None:
            raise NoDefaultConfiguredError(kind.value)
        return self._models[model_id]

    def set_default(self, kind: CapabilityKind, model_id: str) -> None:
        descriptor = self.resolve(model_id)
        if descriptor.kind is not kind:
            raise ValueError(
                f"Cannot use {descriptor.kind.value} model {model_id} as the {kind.value} default"
            )
        self._defaults[kind] = model_id

    def models(self, kind: CapabilityKind | None = None) -> list[ModelDescriptor]:
        """Registered models in registration order, optionally filtered by kind."""
        return [d for d in self._models.values() if kind is None or d.kind is kind]

    def defaults(self) -> dict[CapabilityKind, str]:
        """Copy of the default model id per kind."""
        return dict(self._defaults)

    def is_default(self, descriptor: ModelDescriptor) -> bool:
        return self._defaults.get(descriptor.kind) == descriptor.model_id

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def __len__(self) -> int:
        return len(self._models)

    def __iter__(self) -> Iterator[ModelDescriptor]:
        return iter(list(self._models.values()))
