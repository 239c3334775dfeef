"""Shared fixtures: a controllable clock, a small registry and a fake backend."""

import asyncio

import pytest
import pytest_asyncio

from modelgate.engine.fake import FakeBackend
from modelgate.pool import InstancePool
from modelgate.registry import CapabilityKind, ModelDescriptor, ModelRegistry

STT_MODEL = ModelDescriptor("stt-small", CapabilityKind.STT, ttl=300)
STT_LARGE_MODEL = ModelDescriptor("stt-large", CapabilityKind.STT, location="/models/stt-large", ttl=300)
TTS_MODEL = ModelDescriptor("tts-voice", CapabilityKind.TTS, ttl=0)
VAD_MODEL = ModelDescriptor("vad-silero", CapabilityKind.VAD, ttl=-1)


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def wait_until(predicate, timeout: float = 1.0, interval: float = 0.005) -> bool:
    """Poll ``predicate`` on the event loop until it holds or time runs out."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


def make_registry() -> ModelRegistry:
    return ModelRegistry(
        [STT_MODEL, STT_LARGE_MODEL, TTS_MODEL, VAD_MODEL],
        defaults={
            CapabilityKind.STT: STT_MODEL.model_id,
            CapabilityKind.TTS: TTS_MODEL.model_id,
            CapabilityKind.VAD: VAD_MODEL.model_id,
        },
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return make_registry()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest_asyncio.fixture
async def pool(registry, backend, clock):
    pool = InstancePool(registry, backend, clock=clock)
    yield pool
    await pool.close()
