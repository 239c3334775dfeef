"""Model lifecycle inference gateway package."""

from modelgate.dispatcher import Dispatcher, InferenceRequest, InferenceResult, LanguagePolicy
from modelgate.eviction import EvictionScheduler
from modelgate.pool import InstancePool, InstanceState, ModelHandle
from modelgate.preload import PreloadCoordinator
from modelgate.registry import CapabilityKind, ModelDescriptor, ModelRegistry

__all__ = [
    "CapabilityKind",
    "ModelDescriptor",
    "ModelRegistry",
    "InstancePool",
    "InstanceState",
    "ModelHandle",
    "EvictionScheduler",
    "Dispatcher",
    "InferenceRequest",
    "InferenceResult",
    "LanguagePolicy",
    "PreloadCoordinator",
]
