"""Unit tests for the FastAPI server with FakeBackend."""

import numpy as np
import pytest
from fastapi.testclient import TestClient

from modelgate.audio import float32_to_pcm16
from modelgate.config import Settings
from modelgate.constants import DEFAULT_STT_MODEL, DEFAULT_TTS_MODEL, DEFAULT_VAD_MODEL
from modelgate.engine.fake import FakeBackend
from modelgate.errors import ModelInUseError, UnsupportedLanguageError
from modelgate.server import create_app, error_status


def pcm(audio: np.ndarray) -> bytes:
    return float32_to_pcm16(audio.astype(np.float32))


ONE_SECOND_SILENCE = pcm(np.zeros(16000))


@pytest.fixture
def backend():
    return FakeBackend()


def make_client(backend, **overrides) -> TestClient:
    settings = Settings(_env_file=None, eviction_interval=60, **overrides)
    return TestClient(create_app(backend, settings=settings))


@pytest.fixture
def client(backend):
    with make_client(backend) as tc:
        yield tc


class TestHealthEndpoint:
    """Tests for the /health endpoint."""

    def test_health_returns_ok(self, client):
        """Health endpoint should return status ok."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["loaded_models"] == 0
        assert data["sample_rate"] == 16000

    def test_health_skips_auth(self, backend):
        with make_client(backend, api_key="secret") as tc:
            assert tc.get("/health").status_code == 200


class TestAuth:
    """Tests for bearer token authentication."""

    def test_missing_token_rejected(self, backend):
        with make_client(backend, api_key="secret") as tc:
            response = tc.get("/v1/models")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"

    def test_wrong_token_rejected(self, backend):
        with make_client(backend, api_key="secret") as tc:
            response = tc.get("/v1/models", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_valid_token_accepted(self, backend):
        with make_client(backend, api_key="secret") as tc:
            response = tc.get("/v1/models", headers={"Authorization": "Bearer secret"})
        assert response.status_code == 200


class TestModelsEndpoint:
    """Tests for catalog listing."""

    def test_list_models(self, client):
        data = client.get("/v1/models").json()

        by_id = {m["id"]: m for m in data["data"]}
        assert by_id[DEFAULT_STT_MODEL]["kind"] == "stt"
        assert by_id[DEFAULT_STT_MODEL]["default"] is True
        assert by_id[DEFAULT_STT_MODEL]["state"] == "not_loaded"
        assert by_id[DEFAULT_VAD_MODEL]["ttl"] == -1
        assert by_id["Systran/faster-whisper-small"]["default"] is False

    def test_state_reflects_pool(self, client):
        client.post(f"/api/ps/{DEFAULT_STT_MODEL}")

        data = client.get(f"/v1/models/{DEFAULT_STT_MODEL}").json()
        assert data["state"] == "ready"

    def test_unknown_model(self, client):
        response = client.get("/v1/models/nope")

        assert response.status_code == 404
        assert response.json()["error"] == "UnknownModelError"


class TestTranscription:
    """Tests for /v1/audio/transcriptions."""

    def test_transcribe_default_model(self, client, backend):
        response = client.post(
            "/v1/audio/transcriptions", params={"language": "tr"}, content=ONE_SECOND_SILENCE
        )

        assert response.status_code == 200
        data = response.json()
        assert data["model"] == DEFAULT_STT_MODEL
        assert data["language"] == "tr"
        assert data["text"].startswith("[fake:")
        assert data["text"].endswith("1.00s]")
        assert backend.load_count_for(DEFAULT_STT_MODEL) == 1

    def test_disallowed_language_never_loads(self, client, backend):
        """A rejected language is a 400 with no model work done."""
        response = client.post(
            "/v1/audio/transcriptions", params={"language": "fr"}, content=ONE_SECOND_SILENCE
        )

        assert response.status_code == 400
        assert response.json()["error"] == "UnsupportedLanguageError"
        assert backend.load_count == 0

    def test_invalid_audio(self, client):
        """Odd byte counts are not PCM16."""
        response = client.post(
            "/v1/audio/transcriptions", params={"language": "en"}, content=bytes(101)
        )
        assert response.status_code == 400

    def test_wrong_kind_model(self, client):
        response = client.post(
            "/v1/audio/transcriptions",
            params={"language": "en", "model": DEFAULT_TTS_MODEL},
            content=ONE_SECOND_SILENCE,
        )
        assert response.status_code == 400
        assert response.json()["error"] == "ModelKindMismatchError"

    def test_inference_failure(self, client, backend):
        backend.fail_infers.add(DEFAULT_STT_MODEL)
        response = client.post(
            "/v1/audio/transcriptions", params={"language": "en"}, content=ONE_SECOND_SILENCE
        )
        assert response.status_code == 500
        assert response.json()["error"] == "InferenceError"

    def test_load_failure(self, client, backend):
        backend.fail_loads.add(DEFAULT_STT_MODEL)
        response = client.post(
            "/v1/audio/transcriptions", params={"language": "en"}, content=ONE_SECOND_SILENCE
        )
        assert response.status_code == 503
        assert response.json()["error"] == "ModelLoadError"


class TestSpeech:
    """Tests for /v1/audio/speech."""

    def test_synthesize(self, client):
        response = client.post("/v1/audio/speech", json={"input": "hello", "language": "en"})

        assert response.status_code == 200
        assert response.headers["content-type"] == "audio/pcm"
        assert response.headers["x-model"] == DEFAULT_TTS_MODEL
        assert response.headers["x-sample-rate"] == "16000"
        # 50ms per character of 16kHz PCM16
        assert len(response.content) == 5 * 800 * 2

    def test_empty_input_rejected(self, client):
        response = client.post("/v1/audio/speech", json={"input": "", "language": "en"})
        assert response.status_code == 422


class TestVad:
    """Tests for /v1/audio/vad."""

    def test_detect_speech(self, client):
        audio = np.concatenate([np.zeros(16000), np.full(16000, 0.5), np.zeros(16000)])
        response = client.post("/v1/audio/vad", content=pcm(audio))

        assert response.status_code == 200
        data = response.json()
        assert data["model"] == DEFAULT_VAD_MODEL
        (segment,) = data["segments"]
        assert segment["start"] == pytest.approx(1.0, abs=0.03)
        assert segment["end"] == pytest.approx(2.0, abs=0.03)


class TestLoadedModels:
    """Tests for the /api/ps load management endpoints."""

    def test_load_list_unload(self, client, backend):
        response = client.post(f"/api/ps/{DEFAULT_STT_MODEL}")
        assert response.status_code == 201
        assert response.json()["state"] == "ready"

        assert client.post(f"/api/ps/{DEFAULT_STT_MODEL}").status_code == 409
        assert backend.load_count_for(DEFAULT_STT_MODEL) == 1

        (row,) = client.get("/api/ps").json()["models"]
        assert row["model_id"] == DEFAULT_STT_MODEL
        assert row["state"] == "ready"
        assert row["ref_count"] == 0

        assert client.delete(f"/api/ps/{DEFAULT_STT_MODEL}").status_code == 200
        assert client.get("/api/ps").json()["models"] == []
        assert client.delete(f"/api/ps/{DEFAULT_STT_MODEL}").status_code == 404

    def test_load_immediate_expiry_model(self, client, backend):
        """A TTL=0 model is loaded then dropped again, reported with 200."""
        response = client.post(f"/api/ps/{DEFAULT_TTS_MODEL}")

        assert response.status_code == 200
        assert response.json() == {"model_id": DEFAULT_TTS_MODEL, "state": "unloaded"}
        assert backend.load_count_for(DEFAULT_TTS_MODEL) == 1

    def test_load_failure(self, client, backend):
        backend.fail_loads.add(DEFAULT_STT_MODEL)
        assert client.post(f"/api/ps/{DEFAULT_STT_MODEL}").status_code == 503

    def test_load_unknown_model(self, client):
        assert client.post("/api/ps/nope").status_code == 404


class TestLifespan:
    """Tests for startup and shutdown."""

    def test_preload_on_startup(self, backend):
        with make_client(backend, preload_models=[DEFAULT_STT_MODEL, DEFAULT_VAD_MODEL]) as tc:
            assert tc.get("/health").json()["loaded_models"] == 2
            assert backend.load_count == 2

    def test_preload_failure_does_not_block_startup(self, backend):
        backend.fail_loads.add(DEFAULT_STT_MODEL)
        with make_client(backend, preload_models=[DEFAULT_STT_MODEL, DEFAULT_VAD_MODEL]) as tc:
            assert tc.get("/health").status_code == 200
            assert tc.get("/health").json()["loaded_models"] == 1

    def test_shutdown_unloads_models(self, backend):
        with make_client(backend, preload_models=[DEFAULT_VAD_MODEL]):
            pass
        assert backend.unload_count_for(DEFAULT_VAD_MODEL) == 1


def test_error_status_mapping():
    assert error_status(UnsupportedLanguageError("fr", ["tr"])) == 400
    assert error_status(ModelInUseError("m", 2)) == 409
