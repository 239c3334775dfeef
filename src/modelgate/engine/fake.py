"""Fake backend for CPU-based testing.

Returns deterministic output based on payload characteristics,
allowing reliable unit tests without GPU dependencies or model weights.
"""

import hashlib
import threading
import time
from collections import Counter
from dataclasses import dataclass

import numpy as np

from modelgate.audio import duration_seconds, frame_rms
from modelgate.constants import SAMPLE_RATE, VAD_FRAME_SAMPLES
from modelgate.registry import CapabilityKind, ModelDescriptor


@dataclass
class FakeModel:
    """Stand-in for loaded weights."""

    descriptor: ModelDescriptor
    serial: int
    unloaded: bool = False


class FakeBackend:
    """Deterministic CPU backend for testing.

    Counts every collaborator call so tests can assert how many loads,
    unloads and inferences happened. Latencies simulate slow disk or GPU
    work; the ``fail_*`` sets inject failures per model id.
    """

    def __init__(
        self,
        load_latency_ms: float = 0.0,
        infer_latency_ms: float = 0.0,
        unload_latency_ms: float = 0.0,
        fail_loads: set[str] | None = None,
        fail_unloads: set[str] | None = None,
        fail_infers: set[str] | None = None,
        vad_threshold: float = 0.02,
    ):
        self.load_latency_ms = load_latency_ms
        self.infer_latency_ms = infer_latency_ms
        self.unload_latency_ms = unload_latency_ms
        self.fail_loads = set(fail_loads or ())
        self.fail_unloads = set(fail_unloads or ())
        self.fail_infers = set(fail_infers or ())
        self.vad_threshold = vad_threshold

        self._lock = threading.Lock()
        self._loads: Counter[str] = Counter()
        self._unloads: Counter[str] = Counter()
        self._infer_count = 0
        self._serial = 0

    def load(self, descriptor: ModelDescriptor) -> FakeModel:
        _sleep_ms(self.load_latency_ms)
        model_id = descriptor.model_id
        with self._lock:
            self._loads[model_id] += 1
            self._serial += 1
            serial = self._serial
        if model_id in self.fail_loads:
            raise RuntimeError(f"simulated load failure for {model_id}")
        return FakeModel(descriptor, serial)

    def unload(self, model: FakeModel) -> None:
        _sleep_ms(self.unload_latency_ms)
        model_id = model.descriptor.model_id
        with self._lock:
            self._unloads[model_id] += 1
        model.unloaded = True
        if model_id in self.fail_unloads:
            raise RuntimeError(f"simulated unload failure for {model_id}")

    def infer(self, model: FakeModel, request):
        _sleep_ms(self.infer_latency_ms)
        with self._lock:
            self._infer_count += 1
        if model.unloaded:
            raise RuntimeError(f"{model.descriptor.model_id} used after unload")
        if model.descriptor.model_id in self.fail_infers:
            raise RuntimeError(f"simulated inference failure for {model.descriptor.model_id}")

        if request.kind is CapabilityKind.STT:
            return self._transcribe(request.payload)
        if request.kind is CapabilityKind.TTS:
            return self._synthesize(request.payload)
        if request.kind is CapabilityKind.VAD:
            return self._detect_speech(request.payload)
        raise ValueError(f"Unsupported capability kind: {request.kind}")

    def load_count_for(self, model_id: str) -> int:
        with self._lock:
            return self._loads[model_id]

    def unload_count_for(self, model_id: str) -> int:
        with self._lock:
            return self._unloads[model_id]

    @property
    def load_count(self) -> int:
        """Number of load calls made, across all models."""
        with self._lock:
            return sum(self._loads.values())

    @property
    def unload_count(self) -> int:
        with self._lock:
            return sum(self._unloads.values())

    @property
    def infer_count(self) -> int:
        with self._lock:
            return self._infer_count

    def _transcribe(self, audio: np.ndarray) -> str:
        audio_hash = _hash_audio(audio)
        return f"[fake:{audio_hash[:8]}|{duration_seconds(audio):.2f}s]"

    @staticmethod
    def _synthesize(text: str) -> np.ndarray:
        # 50ms of a 440Hz tone per character
        num_samples = int(SAMPLE_RATE * 0.05 * len(text))
        t = np.arange(num_samples, dtype=np.float32) / SAMPLE_RATE
        return (0.1 * np.sin(2 * np.pi * 440.0 * t)).astype(np.float32)

    def _detect_speech(self, audio: np.ndarray) -> list[dict[str, float]]:
        """Merge consecutive frames above the energy threshold into segments."""
        voiced = frame_rms(audio, VAD_FRAME_SAMPLES) > self.vad_threshold
        frame_s = VAD_FRAME_SAMPLES / SAMPLE_RATE
        total_s = duration_seconds(audio)

        segments = []
        start = None
        for index, is_voiced in enumerate(voiced):
            if is_voiced and start is None:
                start = index
            elif not is_voiced and start is not None:
                segments.append({"start": start * frame_s, "end": index * frame_s})
                start = None
        if start is not None:
            segments.append({"start": start * frame_s, "end": total_s})
        return [
            {"start": round(s["start"], 3), "end": round(min(s["end"], total_s), 3)}
            for s in segments
        ]


def _sleep_ms(latency_ms: float) -> None:
    if latency_ms > 0:
        time.sleep(latency_ms / 1000.0)


def _hash_audio(audio: np.ndarray) -> str:
    """Generate a short hash of audio content for deterministic output."""
    # Use first 100 samples (or all if shorter) for hash
    samples = np.asarray(audio[: min(100, len(audio))], dtype=np.float32)
    return hashlib.sha256(samples.tobytes()).hexdigest()
