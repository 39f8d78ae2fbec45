from __future__ import annotations

from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from fastapi.testclient import TestClient

from advisor.clock import FakeClock
from advisor.config import AdvisorConfig
from advisor.errors import TelephonyError
from advisor.llm_client import FakeLLMClient
from advisor.metrics import Metrics
from advisor.server import AdvisorServices, build_services, create_app
from advisor.telephony import FakeCallClient
from advisor.tts_client import FakeTTSClient


FIXTURES = Path(__file__).resolve().parent / "fixtures" / "knowledge_base"


def _services(tmp_path: Path, **kwargs: Any) -> AdvisorServices:
    cfg = AdvisorConfig(
        redis_url="",
        llm_provider="gemini",
        gemini_api_key="",
        knowledge_base_dir=str(FIXTURES),
        sessions_dir=str(tmp_path / "sessions"),
        audio_dir=str(tmp_path / "audio"),
        public_base_url="https://advisor.example",
    )
    return build_services(cfg, clock=FakeClock(), metrics=Metrics(), **kwargs)


def _fully_wired(tmp_path: Path, **kwargs: Any) -> AdvisorServices:
    kwargs.setdefault("llm", FakeLLMClient(tokens=["Happy to help!"]))
    kwargs.setdefault("tts", FakeTTSClient(audio=b"RIFF-test-audio"))
    kwargs.setdefault("call_client", FakeCallClient())
    return _services(tmp_path, **kwargs)


def test_health_reports_collaborators(tmp_path: Path) -> None:
    svc = _services(tmp_path)
    with TestClient(create_app(services=svc)) as client:
        r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["collaborators"] == {"generation": False, "synthesis": False, "telephony": False}
    assert body["cache"] == {"remote_healthy": False}
    assert body["knowledge_chunks"] == 2


def test_start_then_speech_plays_synthesized_audio(tmp_path: Path) -> None:
    svc = _fully_wired(tmp_path)
    with TestClient(create_app(services=svc)) as client:
        r = client.post("/start", data={"CallSid": "CA1", "From": "+14155550123", "CallerName": "Asha"})
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/xml")
        assert "<Say>" in r.text
        assert 'action="/process-speech"' in r.text

        r = client.post("/process-speech", data={"CallSid": "CA1", "SpeechResult": "Tell me about python analytics"})
        assert r.status_code == 200
        assert "<Play>https://advisor.example/audio/response-" in r.text
        assert 'bargeIn="true"' in r.text

        audio_url = r.text.split("<Play>", 1)[1].split("</Play>", 1)[0]
        audio = client.get(urlparse(audio_url).path)
        assert audio.status_code == 200
        assert audio.content == b"RIFF-test-audio"

    rec = svc.states.get("CA1")
    assert rec is not None
    assert rec.metadata["name"] == "Asha"
    assert rec.metadata["phoneNumber"] == "+14155550123"
    assert len(svc.sessions.read("CA1")) == 3


def test_empty_speech_reprompts(tmp_path: Path) -> None:
    svc = _fully_wired(tmp_path)
    with TestClient(create_app(services=svc)) as client:
        client.post("/start", data={"CallSid": "CA1"})
        r = client.post("/process-speech", data={"CallSid": "CA1"})
    assert r.status_code == 200
    assert "didn't hear anything" in r.text
    assert "<Gather" in r.text
    assert len(svc.sessions.read("CA1")) == 1


def test_degraded_mode_answers_unavailable(tmp_path: Path) -> None:
    svc = _services(tmp_path)
    with TestClient(create_app(services=svc)) as client:
        client.post("/start", data={"CallSid": "CA1"})
        r = client.post("/process-speech", data={"CallSid": "CA1", "SpeechResult": "hello there friend"})
    assert r.status_code == 200
    assert "currently unable to process your request" in r.text


def test_webhook_without_call_sid_still_answers_twiml(tmp_path: Path) -> None:
    svc = _fully_wired(tmp_path)
    with TestClient(create_app(services=svc)) as client:
        r = client.post("/process-speech", data={"SpeechResult": "hello"})
    assert r.status_code == 200
    assert "Sorry, an error occurred" in r.text


def test_terminal_call_status_tears_down_both_stores(tmp_path: Path) -> None:
    svc = _fully_wired(tmp_path)
    with TestClient(create_app(services=svc)) as client:
        client.post("/start", data={"CallSid": "CA1"})
        r = client.post("/call-status", data={"CallSid": "CA1", "CallStatus": "in-progress"})
        assert r.json() == {"ok": True, "ended": False}
        r = client.post("/call-status", data={"CallSid": "CA1", "CallStatus": "completed"})
        assert r.json() == {"ok": True, "ended": True}
    assert "CA1" not in svc.states
    assert svc.sessions.read("CA1") == []


def test_trigger_call_success(tmp_path: Path) -> None:
    calls = FakeCallClient()
    svc = _fully_wired(tmp_path, call_client=calls)
    with TestClient(create_app(services=svc)) as client:
        r = client.post("/trigger-call", json={"phoneNumber": "+14155550123"})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["callSid"].startswith("CA")
    assert calls.calls == [("+14155550123", "https://advisor.example/start")]


def test_trigger_call_error_statuses(tmp_path: Path) -> None:
    svc = _fully_wired(tmp_path)
    with TestClient(create_app(services=svc)) as client:
        assert client.post("/trigger-call", json={}).status_code == 400
        assert client.post("/trigger-call", json={"phoneNumber": "12345"}).status_code == 400

    unconfigured = _services(tmp_path)
    with TestClient(create_app(services=unconfigured)) as client:
        assert client.post("/trigger-call", json={"phoneNumber": "+14155550123"}).status_code == 503

    failing = _fully_wired(tmp_path, call_client=FakeCallClient(fail_with=TelephonyError("upstream 500")))
    with TestClient(create_app(services=failing)) as client:
        r = client.post("/trigger-call", json={"phoneNumber": "+14155550123"})
    assert r.status_code == 502
    assert r.json()["success"] is False


def test_metrics_endpoint_serves_prometheus_text(tmp_path: Path) -> None:
    svc = _services(tmp_path)
    with TestClient(create_app(services=svc)) as client:
        r = client.get("/metrics")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
