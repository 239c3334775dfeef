"""Audio conversion helpers for request payloads.

All functions work with 16kHz mono PCM16 audio as bytes or float32 numpy arrays.
"""

import numpy as np

from modelgate.constants import BYTES_PER_SAMPLE, SAMPLE_RATE, VAD_FRAME_SAMPLES


def pcm16_to_float32(data: bytes) -> np.ndarray:
    """Convert PCM16 bytes to float32 array normalized to [-1, 1].

    Args:
        data: Raw PCM16 little-endian audio bytes.

    Returns:
        Float32 numpy array with values in [-1, 1].
    """
    audio = np.frombuffer(data, dtype="<i2").astype(np.float32)
    audio /= 32768.0
    return audio


def float32_to_pcm16(audio: np.ndarray) -> bytes:
    """Convert float32 array [-1, 1] to PCM16 bytes.

    Args:
        audio: Float32 numpy array with values in [-1, 1].

    Returns:
        Raw PCM16 little-endian audio bytes.
    """
    clipped = np.clip(audio, -1.0, 1.0)
    pcm = (clipped * 32767.0).astype("<i2")
    return pcm.tobytes()


def validate_audio_format(data: bytes) -> bool:
    """Check that a request body can hold PCM16 audio.

    Empty bodies are rejected as well as odd byte counts.
    """
    return len(data) > 0 and len(data) % BYTES_PER_SAMPLE == 0


def duration_seconds(audio: np.ndarray, sample_rate: int = SAMPLE_RATE) -> float:
    """Duration of a float32 audio array in seconds."""
    return len(audio) / sample_rate


def duration_samples(duration_ms: int, sample_rate: int = SAMPLE_RATE) -> int:
    """Calculate number of samples for a given duration in milliseconds."""
    return sample_rate * duration_ms // 1000


def frame_audio(audio: np.ndarray, frame_samples: int = VAD_FRAME_SAMPLES) -> np.ndarray:
    """Split audio into a (frames, frame_samples) matrix.

    The trailing partial frame is zero padded so no audio is dropped.
    """
    if len(audio) == 0:
        return np.zeros((0, frame_samples), dtype=np.float32)
    num_frames = -(-len(audio) // frame_samples)
    padded = np.zeros(num_frames * frame_samples, dtype=np.float32)
    padded[: len(audio)] = audio
    return padded.reshape(num_frames, frame_samples)


def frame_rms(audio: np.ndarray, frame_samples: int = VAD_FRAME_SAMPLES) -> np.ndarray:
    """Root-mean-square energy per analysis frame."""
    frames = frame_audio(audio, frame_samples)
    if frames.size == 0:
        return np.zeros(0, dtype=np.float32)
    return np.sqrt(np.mean(np.square(frames), axis=1))
