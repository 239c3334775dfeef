"""Core constants for the model gateway.

Audio payloads are 16kHz mono PCM16, the format faster-whisper style
STT models and Silero style VAD models expect.
"""

# Audio format requirements
SAMPLE_RATE: int = 16000  # Hz
BYTES_PER_SAMPLE: int = 2  # 16-bit PCM

# VAD analysis frame: 30ms at 16kHz
VAD_FRAME_MS: int = 30
VAD_FRAME_SAMPLES: int = 480  # 16000 * 0.030

# TTL sentinels (seconds)
TTL_NEVER: float = -1.0  # keep resident regardless of idle time
TTL_IMMEDIATE: float = 0.0  # unload as soon as the last reference is released

# Per-kind TTL defaults, mirroring the production .env
DEFAULT_STT_TTL: float = 300.0
DEFAULT_TTS_TTL: float = TTL_IMMEDIATE
DEFAULT_VAD_TTL: float = TTL_NEVER

# Scheduling
DEFAULT_EVICTION_INTERVAL: float = 5.0
DEFAULT_REQUEST_TIMEOUT: float = 120.0
DEFAULT_LOAD_TIMEOUT: float = 600.0
DEFAULT_UNLOAD_TIMEOUT: float = 60.0

DEFAULT_ALLOWED_LANGUAGES: tuple[str, ...] = ("tr", "en")

# Model identification
DEFAULT_STT_MODEL: str = "Systran/faster-whisper-medium"
DEFAULT_TTS_MODEL: str = "speaches-ai/Kokoro-82M-v1.0-ONNX"
DEFAULT_VAD_MODEL: str = "silero-vad-v5"
