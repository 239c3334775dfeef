"""Backend protocol defining the interface for model backends.

This is the "sealed boundary" that isolates weight loading and inference
(GPU-dependent code) from the rest of the system (pool, dispatcher, server,
tests).
"""

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from modelgate.dispatcher import InferenceRequest
    from modelgate.registry import ModelDescriptor


class Backend(Protocol):
    """Protocol for model loading, unloading and inference.

    All methods are synchronous and may block; callers run them in the
    default executor. This allows swapping between real GPU backends and the
    fake CPU backend for testing.
    """

    def load(self, descriptor: "ModelDescriptor") -> Any:
        """Load a model and return an opaque, ready-to-infer model object.

        May read or download weights. Raises on failure.
        """
        ...

    def unload(self, model: Any) -> None:
        """Release the resources held by a loaded model (e.g. GPU memory)."""
        ...

    def infer(self, model: Any, request: "InferenceRequest") -> Any:
        """Run inference for a request on a loaded model.

        The payload and result types depend on ``request.kind``:
        STT takes float32 audio and returns text, TTS takes text and returns
        float32 audio, VAD takes float32 audio and returns speech segments.
        """
        ...
