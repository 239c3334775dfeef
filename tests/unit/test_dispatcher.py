"""Unit tests for the request dispatcher."""

import asyncio

import numpy as np
import pytest

from conftest import STT_LARGE_MODEL, STT_MODEL, TTS_MODEL, VAD_MODEL, wait_until
from modelgate.dispatcher import Dispatcher, InferenceRequest, LanguagePolicy, normalize_language
from modelgate.engine.fake import FakeBackend
from modelgate.errors import (
    DispatchTimeoutError,
    InferenceError,
    ModelKindMismatchError,
    ModelLoadError,
    NoDefaultConfiguredError,
    UnknownModelError,
    UnsupportedLanguageError,
)
from modelgate.pool import InstancePool
from modelgate.registry import CapabilityKind, ModelRegistry

STT = CapabilityKind.STT
TTS = CapabilityKind.TTS
VAD = CapabilityKind.VAD


def one_second(value: float = 0.0) -> np.ndarray:
    return np.full(16000, value, dtype=np.float32)


@pytest.fixture
def dispatcher(registry, pool, backend):
    return Dispatcher(registry, pool, backend, policy=LanguagePolicy(["tr", "en"]))


class TestLanguagePolicy:
    """Tests for allow-list normalization and checks."""

    @pytest.mark.parametrize(
        "tag, expected",
        [("en", "en"), ("EN-us", "en"), ("tr_TR", "tr"), (" tr ", "tr"), ("", None), (None, None)],
    )
    def test_normalize_language(self, tag, expected):
        assert normalize_language(tag) == expected

    def test_allowed_language_passes(self):
        policy = LanguagePolicy(["tr", "en"])
        assert policy.check(STT, "en-GB") == "en"

    def test_disallowed_language_rejected(self):
        policy = LanguagePolicy(["tr", "en"])
        with pytest.raises(UnsupportedLanguageError) as exc_info:
            policy.check(STT, "fr")
        assert exc_info.value.allowed == {"tr", "en"}

    def test_missing_language_rejected_with_allow_list(self):
        with pytest.raises(UnsupportedLanguageError):
            LanguagePolicy(["tr"]).check(TTS, None)

    def test_empty_allow_list_accepts_anything(self):
        policy = LanguagePolicy()
        assert policy.check(STT, "fr") == "fr"
        assert policy.check(STT, None) is None

    def test_vad_is_language_agnostic(self):
        assert LanguagePolicy(["tr"]).check(VAD, "fr") == "fr"


class TestDispatch:
    """Tests for request handling."""

    @pytest.mark.asyncio
    async def test_rejected_language_never_loads(self, dispatcher, backend):
        """A language outside the allow-list fails before any model work."""
        request = InferenceRequest(STT, one_second(), language="fr")

        with pytest.raises(UnsupportedLanguageError):
            await dispatcher.handle(request)
        assert backend.load_count == 0

    @pytest.mark.asyncio
    async def test_default_model_round_trip(self, dispatcher, pool, backend):
        """No model id resolves the STT default, loads it, and releases after."""
        result = await dispatcher.handle(InferenceRequest(STT, one_second(), language="tr"))

        assert result.model_id == STT_MODEL.model_id
        assert result.kind is STT
        assert result.language == "tr"
        assert "[fake:" in result.output
        assert "1.00s]" in result.output
        assert backend.load_count_for(STT_MODEL.model_id) == 1
        assert pool.get(STT_MODEL.model_id).ref_count == 0

    @pytest.mark.asyncio
    async def test_explicit_model(self, dispatcher, backend):
        request = InferenceRequest(STT, one_second(), language="en", model_id=STT_LARGE_MODEL.model_id)
        result = await dispatcher.handle(request)

        assert result.model_id == STT_LARGE_MODEL.model_id
        assert backend.load_count_for(STT_MODEL.model_id) == 0

    @pytest.mark.asyncio
    async def test_second_request_reuses_instance(self, dispatcher, backend):
        for _ in range(3):
            await dispatcher.handle(InferenceRequest(STT, one_second(), language="en"))
        assert backend.load_count == 1
        assert backend.infer_count == 3

    @pytest.mark.asyncio
    async def test_kind_mismatch(self, dispatcher, backend):
        """An explicit model of another kind is rejected before loading."""
        request = InferenceRequest(STT, one_second(), language="en", model_id=TTS_MODEL.model_id)

        with pytest.raises(ModelKindMismatchError):
            await dispatcher.handle(request)
        assert backend.load_count == 0

    @pytest.mark.asyncio
    async def test_unknown_model(self, dispatcher):
        with pytest.raises(UnknownModelError):
            await dispatcher.handle(InferenceRequest(STT, one_second(), language="en", model_id="nope"))

    @pytest.mark.asyncio
    async def test_no_default_configured(self, backend, clock):
        registry = ModelRegistry([STT_MODEL])
        pool = InstancePool(registry, backend, clock=clock)
        dispatcher = Dispatcher(registry, pool, backend)

        with pytest.raises(NoDefaultConfiguredError):
            await dispatcher.handle(InferenceRequest(STT, one_second()))
        await pool.close()

    @pytest.mark.asyncio
    async def test_inference_failure_releases_handle(self, dispatcher, pool, backend):
        backend.fail_infers.add(STT_MODEL.model_id)

        with pytest.raises(InferenceError) as exc_info:
            await dispatcher.handle(InferenceRequest(STT, one_second(), language="en"))

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert pool.get(STT_MODEL.model_id).ref_count == 0

    @pytest.mark.asyncio
    async def test_load_failure_propagates(self, dispatcher, pool, backend):
        backend.fail_loads.add(STT_MODEL.model_id)

        with pytest.raises(ModelLoadError):
            await dispatcher.handle(InferenceRequest(STT, one_second(), language="en"))
        assert pool.get(STT_MODEL.model_id) is None

    @pytest.mark.asyncio
    async def test_tts_returns_audio(self, dispatcher):
        result = await dispatcher.handle(InferenceRequest(TTS, "merhaba", language="tr"))

        assert result.model_id == TTS_MODEL.model_id
        assert isinstance(result.output, np.ndarray)
        assert len(result.output) == int(16000 * 0.05 * len("merhaba"))

    @pytest.mark.asyncio
    async def test_vad_returns_segments(self, dispatcher):
        audio = np.concatenate([one_second(0.0), one_second(0.5), one_second(0.0)])
        result = await dispatcher.handle(InferenceRequest(VAD, audio))

        assert result.model_id == VAD_MODEL.model_id
        assert len(result.output) == 1
        segment = result.output[0]
        assert segment["start"] == pytest.approx(1.0, abs=0.03)
        assert segment["end"] == pytest.approx(2.0, abs=0.03)


class TestDispatchTimeouts:
    """Tests for request-level timeouts and cancellation."""

    @pytest.mark.asyncio
    async def test_timeout_during_inference_still_releases(self, registry, clock):
        """A request timing out mid-inference releases once the worker finishes."""
        backend = FakeBackend(infer_latency_ms=150)
        pool = InstancePool(registry, backend, clock=clock)
        dispatcher = Dispatcher(registry, pool, backend)

        try:
            with pytest.raises(DispatchTimeoutError):
                await dispatcher.handle(InferenceRequest(STT, one_second()), timeout=0.03)

            instance = pool.get(STT_MODEL.model_id)
            assert instance.ref_count == 1  # worker thread still running
            assert await wait_until(lambda: instance.ref_count == 0)
        finally:
            await pool.close()

    @pytest.mark.asyncio
    async def test_timeout_waiting_on_load_leaves_load_running(self, registry, clock):
        """One caller timing out on a cold load does not hurt the others."""
        backend = FakeBackend(load_latency_ms=150)
        pool = InstancePool(registry, backend, clock=clock)
        dispatcher = Dispatcher(registry, pool, backend)

        try:
            patient = asyncio.create_task(dispatcher.handle(InferenceRequest(STT, one_second())))
            with pytest.raises(DispatchTimeoutError):
                await dispatcher.handle(InferenceRequest(STT, one_second()), timeout=0.03)

            result = await patient
            assert "[fake:" in result.output
            assert backend.load_count == 1
            assert pool.get(STT_MODEL.model_id).ref_count == 0
        finally:
            await pool.close()

    @pytest.mark.asyncio
    async def test_default_timeout_applies(self, registry, clock):
        backend = FakeBackend(infer_latency_ms=100)
        pool = InstancePool(registry, backend, clock=clock)
        dispatcher = Dispatcher(registry, pool, backend, timeout=0.02)

        try:
            with pytest.raises(DispatchTimeoutError):
                await dispatcher.handle(InferenceRequest(STT, one_second()))
        finally:
            await pool.close()
