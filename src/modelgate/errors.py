"""Error taxonomy for the gateway.

Registry and pool errors propagate unchanged through the dispatcher; the
HTTP layer maps them to status codes. ``ModelUnloadError`` is never raised
to callers, it only describes a failed background unload in the logs.
"""


class GatewayError(Exception):
    """Base class for every error raised by the gateway."""


class DuplicateModelError(GatewayError):
    def __init__(self, model_id: str):
        super().__init__(f"Model already registered: {model_id}")
        self.model_id = model_id


class UnknownModelError(GatewayError):
    def __init__(self, model_id: str):
        super().__init__(f"Unknown model: {model_id}")
        self.model_id = model_id


class NoDefaultConfiguredError(GatewayError):
    def __init__(self, kind):
        super().__init__(f"No default model configured for {kind}")
        self.kind = kind


class ModelKindMismatchError(GatewayError):
    def __init__(self, model_id: str, expected, actual):
        super().__init__(f"Model {model_id} is a {actual} model, not {expected}")
        self.model_id = model_id
        self.expected = expected
        self.actual = actual


class ModelLoadError(GatewayError):
    def __init__(self, model_id: str, reason: str):
        super().__init__(f"Failed to load model {model_id}: {reason}")
        self.model_id = model_id
        self.reason = reason


class ModelUnloadError(GatewayError):
    def __init__(self, model_id: str, reason: str):
        super().__init__(f"Failed to unload model {model_id}: {reason}")
        self.model_id = model_id
        self.reason = reason


class ModelNotLoadedError(GatewayError):
    def __init__(self, model_id: str):
        super().__init__(f"Model is not loaded: {model_id}")
        self.model_id = model_id


class ModelInUseError(GatewayError):
    def __init__(self, model_id: str, ref_count: int):
        super().__init__(f"Model {model_id} has {ref_count} active reference(s)")
        self.model_id = model_id
        self.ref_count = ref_count


class InferenceError(GatewayError):
    def __init__(self, model_id: str, reason: str):
        super().__init__(f"Inference failed on model {model_id}: {reason}")
        self.model_id = model_id
        self.reason = reason


class UnsupportedLanguageError(GatewayError):
    def __init__(self, language: str | None, allowed):
        allowed_list = ", ".join(sorted(allowed))
        super().__init__(f"Language {language!r} is not allowed (allowed: {allowed_list})")
        self.language = language
        self.allowed = frozenset(allowed)


class ReleaseUnderflowError(GatewayError):
    def __init__(self, model_id: str):
        super().__init__(f"Handle for {model_id} released more times than acquired")
        self.model_id = model_id


class DispatchTimeoutError(GatewayError):
    def __init__(self, model_id: str | None, timeout: float):
        target = model_id or "request"
        super().__init__(f"Timed out after {timeout:.1f}s waiting on {target}")
        self.model_id = model_id
        self.timeout = timeout


class PoolClosedError(GatewayError):
    def __init__(self):
        super().__init__("Instance pool is closed")
