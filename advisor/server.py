from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from fastapi.staticfiles import StaticFiles

from .cache import TieredCache
from .clock import Clock, RealClock
from .config import AdvisorConfig
from .conversation_state import ConversationStateMachine
from .errors import InvalidAddressError, TelephonyError
from .knowledge import KnowledgeIndex
from .llm_client import LLMClient
from .logs import configure_logging
from .metrics import GLOBAL_METRICS, CompositeMetrics, Metrics
from .orchestrator import TurnOrchestrator
from .provider import build_call_client, build_llm_client, build_tts_client
from .session_store import SessionStore
from .telephony import CallClient, Directive, render_twiml
from .tts_client import TTSClient


logger = logging.getLogger(__name__)

TERMINAL_CALL_STATUSES = frozenset({"completed", "busy", "failed", "no-answer", "canceled"})
ERROR_TWIML_TEXT = "Sorry, an error occurred. Please try again later."


@dataclass
class AdvisorServices:
    cfg: AdvisorConfig
    clock: Clock
    metrics: Any
    cache: TieredCache
    knowledge: KnowledgeIndex
    sessions: SessionStore
    states: ConversationStateMachine
    orchestrator: TurnOrchestrator
    llm: Optional[LLMClient]
    tts: Optional[TTSClient]
    call_client: Optional[CallClient]

    async def aclose(self) -> None:
        for client in (self.llm, self.tts, self.call_client):
            if client is None:
                continue
            try:
                await client.aclose()
            except Exception as e:
                logger.debug("Ignoring client close error: %s", e)
        self.cache.close()


def build_services(
    cfg: AdvisorConfig,
    *,
    clock: Clock | None = None,
    metrics: Any | None = None,
    llm: Optional[LLMClient] = None,
    tts: Optional[TTSClient] = None,
    call_client: Optional[CallClient] = None,
) -> AdvisorServices:
    """
    Construct every store and collaborator for one process.

    Collaborators passed explicitly take precedence over the ones built from config;
    unconfigured collaborators stay None and the orchestrator runs degraded.
    """

    clk = clock or RealClock()
    m = metrics if metrics is not None else CompositeMetrics(Metrics(), GLOBAL_METRICS)
    cache = TieredCache.connect(cfg, clock=clk, metrics=m)
    knowledge = KnowledgeIndex.from_config(cfg, cache=cache, metrics=m)
    sessions = SessionStore.from_config(cfg, metrics=m)
    states = ConversationStateMachine(clock=clk, metrics=m)
    llm = llm if llm is not None else build_llm_client(cfg)
    tts = tts if tts is not None else build_tts_client(cfg)
    call_client = call_client if call_client is not None else build_call_client(cfg)
    orchestrator = TurnOrchestrator(
        cfg=cfg,
        cache=cache,
        knowledge=knowledge,
        sessions=sessions,
        states=states,
        llm=llm,
        tts=tts,
        clock=clk,
        metrics=m,
    )
    return AdvisorServices(
        cfg=cfg,
        clock=clk,
        metrics=m,
        cache=cache,
        knowledge=knowledge,
        sessions=sessions,
        states=states,
        orchestrator=orchestrator,
        llm=llm,
        tts=tts,
        call_client=call_client,
    )


async def _sweep_loop(services: AdvisorServices) -> None:
    interval_s = max(1, int(services.cfg.sweep_interval_s))
    while True:
        await asyncio.sleep(interval_s)
        try:
            counts = await asyncio.to_thread(services.orchestrator.sweep)
        except Exception:
            logger.exception("Periodic sweep failed")
            continue
        if any(counts.values()):
            logger.info("Periodic sweep: %s", counts)


def _twiml(directive: Directive) -> Response:
    return Response(content=render_twiml(directive), media_type="text/xml")


def _error_twiml(services: AdvisorServices) -> Response:
    return _twiml(Directive.speak(ERROR_TWIML_TEXT, services.orchestrator.gather))


def _coerce_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "y", "on"}:
        return True
    if value_str in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _form_str(form: Any, name: str) -> str:
    value = form.get(name)
    return str(value).strip() if value is not None else ""


def create_app(cfg: AdvisorConfig | None = None, *, services: AdvisorServices | None = None) -> FastAPI:
    config = services.cfg if services is not None else (cfg or AdvisorConfig.from_env())

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        svc = services
        if svc is None:
            configure_logging(config)
            svc = build_services(config)
        missing = config.missing_env()
        if missing:
            logger.warning("Missing environment variables, running degraded: %s", ", ".join(missing))
        app.state.services = svc
        Path(config.audio_dir).mkdir(parents=True, exist_ok=True)

        chunks = await asyncio.to_thread(svc.knowledge.load)
        logger.info("Knowledge base ready: chunks=%d", chunks)
        await asyncio.to_thread(svc.sessions.sweep, config.session_retention_s)

        sweeper = asyncio.create_task(_sweep_loop(svc), name="advisor-sweep")
        try:
            yield
        finally:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
            await svc.aclose()
            logger.info("Server shut down")

    app = FastAPI(title="voice-advisor", lifespan=lifespan)
    app.mount(
        "/audio",
        StaticFiles(directory=str(Path(config.audio_dir)), check_dir=False),
        name="audio",
    )

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        svc: AdvisorServices = request.app.state.services
        return JSONResponse(
            {
                "status": "ok",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "collaborators": {
                    "generation": svc.llm is not None,
                    "synthesis": svc.tts is not None,
                    "telephony": svc.call_client is not None,
                },
                "cache": {"remote_healthy": svc.cache.remote_healthy},
                "knowledge_chunks": len(svc.knowledge.chunks),
                "active_calls": len(svc.states),
            }
        )

    @app.get("/metrics")
    async def metrics(request: Request) -> PlainTextResponse:
        return PlainTextResponse(GLOBAL_METRICS.render_prometheus())

    @app.post("/start")
    async def start(request: Request) -> Response:
        svc: AdvisorServices = request.app.state.services
        form = await request.form()
        call_sid = _form_str(form, "CallSid")
        logger.info(
            "Received incoming call: call_id=%s from=%s to=%s",
            call_sid,
            _form_str(form, "From"),
            _form_str(form, "To"),
        )
        if not call_sid:
            logger.error("Start webhook without CallSid")
            return _error_twiml(svc)
        try:
            metadata = {
                "name": _form_str(form, "CallerName") or None,
                "programInterested": _form_str(form, "ProgramInterested") or None,
                "source": _form_str(form, "Source") or None,
                "phoneNumber": _form_str(form, "From") or None,
            }
            directive = await asyncio.to_thread(svc.orchestrator.start_call, call_sid, metadata)
        except Exception:
            logger.exception("Failed to process /start: call_id=%s", call_sid)
            return _error_twiml(svc)
        return _twiml(directive)

    @app.post("/process-speech")
    async def process_speech(request: Request) -> Response:
        svc: AdvisorServices = request.app.state.services
        form = await request.form()
        call_sid = _form_str(form, "CallSid")
        speech = _form_str(form, "SpeechResult")
        interrupted = _coerce_bool(form.get("Interrupted"))
        logger.info(
            "Received speech: call_id=%s chars=%d interrupted=%s",
            call_sid,
            len(speech),
            interrupted,
        )
        if not call_sid:
            logger.error("Speech webhook without CallSid")
            return _error_twiml(svc)
        try:
            directive = await svc.orchestrator.handle_turn(call_sid, speech, interrupted=interrupted)
        except Exception:
            logger.exception("Failed to process /process-speech: call_id=%s", call_sid)
            return _error_twiml(svc)
        return _twiml(directive)

    @app.post("/call-status")
    async def call_status(request: Request) -> JSONResponse:
        svc: AdvisorServices = request.app.state.services
        form = await request.form()
        call_sid = _form_str(form, "CallSid")
        status = _form_str(form, "CallStatus").lower()
        logger.info("Call status update: call_id=%s status=%s", call_sid, status)
        ended = bool(call_sid) and status in TERMINAL_CALL_STATUSES
        if ended:
            await asyncio.to_thread(svc.orchestrator.end_call, call_sid)
        return JSONResponse({"ok": True, "ended": ended})

    @app.post("/trigger-call")
    async def trigger_call(request: Request) -> JSONResponse:
        svc: AdvisorServices = request.app.state.services
        try:
            body = await request.json()
        except ValueError:
            body = {}
        phone_number = body.get("phoneNumber") if isinstance(body, dict) else None
        if not phone_number:
            return JSONResponse({"success": False, "error": "Missing phoneNumber in request body."}, status_code=400)
        if svc.call_client is None:
            return JSONResponse({"success": False, "error": "Telephony is not configured."}, status_code=503)
        callback_url = f"{svc.cfg.public_base_url.rstrip('/')}/start"
        try:
            result = await svc.call_client.create_call(to=str(phone_number), callback_url=callback_url)
        except InvalidAddressError as e:
            return JSONResponse({"success": False, "error": str(e)}, status_code=400)
        except TelephonyError as e:
            return JSONResponse({"success": False, "error": str(e)}, status_code=502)
        return JSONResponse({"success": True, "callSid": result.sid, "status": result.status})

    return app


def run() -> None:
    import uvicorn

    cfg = AdvisorConfig.from_env()
    configure_logging(cfg)
    uvicorn.run(create_app(cfg), host=cfg.host, port=cfg.port, log_config=None)


if __name__ == "__main__":
    run()
