from __future__ import annotations

import asyncio

from advisor.config import AdvisorConfig
from advisor.llm_client import generate_text
from advisor.provider import build_call_client, build_llm_client, build_tts_client


def test_provider_selection_gemini() -> None:
    cfg = AdvisorConfig(llm_provider="gemini", gemini_api_key="k", gemini_model="gemini-2.0-flash")
    client = build_llm_client(cfg)
    assert client is not None
    assert client.__class__.__name__ == "GeminiLLMClient"


def test_provider_selection_gemini_without_key_returns_none() -> None:
    assert build_llm_client(AdvisorConfig(llm_provider="gemini", gemini_api_key="")) is None


def test_provider_selection_openai() -> None:
    cfg = AdvisorConfig(llm_provider="openai", openai_api_key="k", openai_model="gpt-5-mini")
    client = build_llm_client(cfg)
    assert client is not None
    assert client.__class__.__name__ == "OpenAILLMClient"


def test_provider_selection_fake_builds_deterministic_client() -> None:
    client = build_llm_client(AdvisorConfig(llm_provider="fake"))
    assert client is not None
    assert client.__class__.__name__ == "FakeLLMClient"
    assert asyncio.run(generate_text(client, prompt="hi")) == "Sounds great!"


def test_tts_requires_deepgram_key() -> None:
    assert build_tts_client(AdvisorConfig(deepgram_api_key="")) is None
    client = build_tts_client(AdvisorConfig(deepgram_api_key="dg"))
    assert client is not None
    assert client.__class__.__name__ == "DeepgramTTSClient"


def test_call_client_requires_all_twilio_settings() -> None:
    assert build_call_client(AdvisorConfig(twilio_account_sid="AC1", twilio_auth_token="t")) is None
    client = build_call_client(
        AdvisorConfig(twilio_account_sid="AC1", twilio_auth_token="t", twilio_number="+15550001111")
    )
    assert client is not None
    assert client.__class__.__name__ == "TwilioCallClient"
