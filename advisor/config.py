from __future__ import annotations

import os
from dataclasses import dataclass


def _getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _getenv_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw


@dataclass(frozen=True, slots=True)
class AdvisorConfig:
    # HTTP surface
    host: str = "0.0.0.0"
    port: int = 5000
    public_base_url: str = "http://localhost:5000"

    # Shared cache tier (empty URL means local-only)
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout_ms: int = 250
    redis_retry_interval_ms: int = 30_000

    # TTL classes (seconds)
    kb_ttl_s: int = 15 * 60
    response_ttl_s: int = 5 * 60
    conversation_ttl_s: int = 30 * 60

    # Knowledge index
    knowledge_base_dir: str = "knowledge-base"
    kb_file_suffix: str = ".txt"
    kb_hot_set_size: int = 1000
    kb_top_k: int = 3
    kb_build_workers: int = 4
    kb_file_timeout_ms: int = 5000

    # Session store
    sessions_dir: str = "conversations"
    session_max_turns: int = 100
    session_max_file_bytes: int = 1_048_576
    session_retention_hours: int = 24

    # Conversation lifecycle
    stale_timeout_ms: int = 5 * 60 * 1000
    sweep_interval_s: int = 60
    history_window: int = 4

    # Collaborator deadlines
    generation_timeout_ms: int = 8000
    synthesis_timeout_ms: int = 8000

    # Generation provider
    llm_provider: str = "gemini"  # gemini | openai | fake
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    openai_api_key: str = ""
    openai_model: str = "gpt-5-mini"
    openai_reasoning_effort: str = "minimal"

    # Synthesis provider
    deepgram_api_key: str = ""
    deepgram_model: str = "aura-asteria-en"
    deepgram_encoding: str = "linear16"
    deepgram_container: str = "wav"

    # Telephony
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_number: str = ""
    gather_timeout_s: int = 5
    barge_in: bool = True

    # Audio output
    audio_dir: str = "public/audio"

    # Persona
    advisor_name: str = "Ritwik"
    org_name: str = "Crio"

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"

    @property
    def session_retention_s(self) -> int:
        return int(self.session_retention_hours) * 3600

    def missing_env(self) -> list[str]:
        missing: list[str] = []
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self.twilio_number:
            missing.append("TWILIO_NUMBER")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if self.llm_provider == "gemini" and not self.gemini_api_key:
            missing.append("GEMINI_API_KEY")
        if self.llm_provider == "openai" and not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not os.getenv("SERVER_HOST"):
            missing.append("SERVER_HOST")
        return missing

    @staticmethod
    def from_env() -> "AdvisorConfig":
        llm_provider = _getenv_str("LLM_PROVIDER", "gemini").strip().lower()
        if llm_provider not in {"fake", "gemini", "openai"}:
            llm_provider = "gemini"
        log_level = _getenv_str("LOG_LEVEL", "INFO").strip().upper()
        if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            log_level = "INFO"
        port = _getenv_int("PORT", 5000)
        public_base_url = _getenv_str("SERVER_HOST", f"http://localhost:{port}").strip().rstrip("/")

        return AdvisorConfig(
            host=_getenv_str("HOST", "0.0.0.0"),
            port=port,
            public_base_url=public_base_url,
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0").strip(),
            redis_socket_timeout_ms=max(1, _getenv_int("REDIS_SOCKET_TIMEOUT_MS", 250)),
            redis_retry_interval_ms=max(0, _getenv_int("REDIS_RETRY_INTERVAL_MS", 30_000)),
            kb_ttl_s=max(1, _getenv_int("KB_TTL_S", 15 * 60)),
            response_ttl_s=max(1, _getenv_int("RESPONSE_TTL_S", 5 * 60)),
            conversation_ttl_s=max(1, _getenv_int("CONVERSATION_TTL_S", 30 * 60)),
            knowledge_base_dir=_getenv_str("KNOWLEDGE_BASE_DIR", "knowledge-base"),
            kb_file_suffix=_getenv_str("KB_FILE_SUFFIX", ".txt"),
            kb_hot_set_size=max(1, _getenv_int("KB_HOT_SET_SIZE", 1000)),
            kb_top_k=max(1, _getenv_int("KB_TOP_K", 3)),
            kb_build_workers=max(1, min(32, _getenv_int("KB_BUILD_WORKERS", 4))),
            kb_file_timeout_ms=max(1, _getenv_int("KB_FILE_TIMEOUT_MS", 5000)),
            sessions_dir=_getenv_str("SESSIONS_DIR", "conversations"),
            session_max_turns=max(1, _getenv_int("SESSION_MAX_TURNS", 100)),
            session_max_file_bytes=max(1024, _getenv_int("SESSION_MAX_FILE_BYTES", 1_048_576)),
            session_retention_hours=max(1, _getenv_int("SESSION_RETENTION_HOURS", 24)),
            stale_timeout_ms=max(1, _getenv_int("STALE_TIMEOUT_MS", 5 * 60 * 1000)),
            sweep_interval_s=max(1, _getenv_int("SWEEP_INTERVAL_S", 60)),
            history_window=max(0, _getenv_int("HISTORY_WINDOW", 4)),
            generation_timeout_ms=_getenv_int("GENERATION_TIMEOUT_MS", 8000),
            synthesis_timeout_ms=_getenv_int("SYNTHESIS_TIMEOUT_MS", 8000),
            llm_provider=llm_provider,
            gemini_api_key=_getenv_str("GEMINI_API_KEY", ""),
            gemini_model=_getenv_str("GEMINI_MODEL", "gemini-2.0-flash"),
            openai_api_key=_getenv_str("OPENAI_API_KEY", ""),
            openai_model=_getenv_str("OPENAI_MODEL", "gpt-5-mini"),
            openai_reasoning_effort=_getenv_str("OPENAI_REASONING_EFFORT", "minimal"),
            deepgram_api_key=_getenv_str("DEEPGRAM_API_KEY", ""),
            deepgram_model=_getenv_str("DEEPGRAM_MODEL", "aura-asteria-en"),
            deepgram_encoding=_getenv_str("DEEPGRAM_ENCODING", "linear16"),
            deepgram_container=_getenv_str("DEEPGRAM_CONTAINER", "wav"),
            twilio_account_sid=_getenv_str("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=_getenv_str("TWILIO_AUTH_TOKEN", ""),
            twilio_number=_getenv_str("TWILIO_NUMBER", ""),
            gather_timeout_s=max(1, _getenv_int("GATHER_TIMEOUT_S", 5)),
            barge_in=_getenv_bool("GATHER_BARGE_IN", True),
            audio_dir=_getenv_str("AUDIO_DIR", "public/audio"),
            advisor_name=_getenv_str("ADVISOR_NAME", "Ritwik"),
            org_name=_getenv_str("ORG_NAME", "Crio"),
            log_level=log_level,
            log_dir=_getenv_str("LOG_DIR", "logs"),
        )
