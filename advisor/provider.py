from __future__ import annotations

import logging

from .config import AdvisorConfig
from .llm_client import FakeLLMClient, GeminiLLMClient, LLMClient, OpenAILLMClient
from .telephony import CallClient, TwilioCallClient
from .tts_client import DeepgramTTSClient, TTSClient


logger = logging.getLogger(__name__)


def build_llm_client(cfg: AdvisorConfig) -> LLMClient | None:
    if cfg.llm_provider == "gemini":
        if not cfg.gemini_api_key:
            logger.error("Gemini API key is not set; generation unavailable (GEMINI_API_KEY)")
            return None
        return GeminiLLMClient(api_key=cfg.gemini_api_key, model=cfg.gemini_model)
    if cfg.llm_provider == "openai":
        if not cfg.openai_api_key:
            logger.error("OpenAI API key is not set; generation unavailable (OPENAI_API_KEY)")
            return None
        return OpenAILLMClient(
            api_key=cfg.openai_api_key,
            model=cfg.openai_model,
            reasoning_effort=cfg.openai_reasoning_effort,
            timeout_ms=cfg.generation_timeout_ms,
        )
    if cfg.llm_provider == "fake":
        logger.warning("Using deterministic fake generation (LLM_PROVIDER=fake)")
        return FakeLLMClient()
    return None


def build_tts_client(cfg: AdvisorConfig) -> TTSClient | None:
    if not cfg.deepgram_api_key:
        logger.error("Deepgram API key is not set; synthesis unavailable (DEEPGRAM_API_KEY)")
        return None
    return DeepgramTTSClient(
        api_key=cfg.deepgram_api_key,
        model=cfg.deepgram_model,
        encoding=cfg.deepgram_encoding,
        container=cfg.deepgram_container,
        timeout_s=max(1.0, cfg.synthesis_timeout_ms / 1000.0),
    )


def build_call_client(cfg: AdvisorConfig) -> CallClient | None:
    if not (cfg.twilio_account_sid and cfg.twilio_auth_token and cfg.twilio_number):
        logger.error("Twilio credentials are incomplete; outbound calls unavailable")
        return None
    return TwilioCallClient(
        account_sid=cfg.twilio_account_sid,
        auth_token=cfg.twilio_auth_token,
        from_number=cfg.twilio_number,
    )
