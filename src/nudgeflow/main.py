from __future__ import annotations

import logging
import math
from collections.abc import AsyncGenerator
from typing import cast

import litellm
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from nudgeflow.config import NudgeSettings
from nudgeflow.errors import CooldownError, PersistenceError, RateLimitError
from nudgeflow.generation.breaker import CircuitBreaker, CircuitState
from nudgeflow.generation.client import GenerationClient
from nudgeflow.learners import InMemoryLearnerRepository, LearnerRepository, LearnerSnapshot
from nudgeflow.nudges.cooldown import CooldownRegistry
from nudgeflow.nudges.models import Nudge, NudgeStreamEvent
from nudgeflow.nudges.service import NudgeOrchestrator
from nudgeflow.nudges.sse import SSE_HEADERS, encode_event, encode_payload
from nudgeflow.nudges.store import InMemoryNudgeStore
from nudgeflow.ratelimit import RateLimiter, RateLimitStatus, client_key

logger = logging.getLogger(__name__)

SERVICE_NAME = "nudgeflow"
VERSION = "0.1.0"


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    ai_configured: bool
    circuit: CircuitState


def build_orchestrator(settings: NudgeSettings) -> NudgeOrchestrator:
    """Wire the generation client, shared breaker and cooldowns from settings."""
    breaker = CircuitBreaker(
        failure_threshold=settings.circuit_failure_threshold,
        reset_timeout_s=settings.circuit_reset_s,
    )
    client = GenerationClient(
        model_name=settings.llm_model,
        api_base=settings.llm_api_base,
        api_key=settings.llm_api_key,
        request_timeout_s=settings.llm_timeout_s,
        max_tokens=settings.llm_max_tokens,
        temperature=settings.llm_temperature,
        top_p=settings.llm_top_p,
        max_attempts=settings.max_attempts,
        backoff_base_s=settings.backoff_base_s,
        backoff_jitter_s=settings.backoff_jitter_s,
        breaker=breaker,
    )
    return NudgeOrchestrator(
        client=client,
        store=InMemoryNudgeStore(),
        cooldowns=CooldownRegistry(cooldown_s=settings.cooldown_s),
    )


def _ai_configured(settings: NudgeSettings) -> bool:
    if settings.llm_api_key:
        return True
    try:
        report = litellm.validate_environment(model=settings.llm_model)
    except Exception as exc:
        logger.warning(
            "Could not validate provider environment for %s: %s", settings.llm_model, exc
        )
        return False
    return bool(report.get("keys_in_environment"))


def create_app(
    settings: NudgeSettings | None = None,
    orchestrator: NudgeOrchestrator | None = None,
    learners: LearnerRepository | None = None,
    rate_limiter: RateLimiter | None = None,
) -> FastAPI:
    """
    Build the HTTP app. Tests pass their own orchestrator, repository and
    limiter so breaker, cooldown and rate-limit state never leak between cases.
    """
    settings = settings or NudgeSettings.from_env()
    app = FastAPI(title="Nudgeflow", version=VERSION)
    app.state.settings = settings
    app.state.orchestrator = orchestrator or build_orchestrator(settings)
    app.state.learners = learners if learners is not None else InMemoryLearnerRepository()
    app.state.rate_limiter = (
        rate_limiter
        if rate_limiter is not None
        else RateLimiter(max_requests=settings.rate_limit_per_minute)
    )

    app.add_exception_handler(CooldownError, _cooldown_handler)
    app.add_exception_handler(PersistenceError, _persistence_handler)
    app.add_exception_handler(RateLimitError, _rate_limit_handler)

    @app.get("/health")
    async def health_check(request: Request) -> HealthResponse:
        circuit = _orchestrator(request).circuit_state()
        ai_configured = _ai_configured(request.app.state.settings)
        return HealthResponse(
            status="ok" if ai_configured and not circuit.is_open else "degraded",
            service=SERVICE_NAME,
            version=VERSION,
            ai_configured=ai_configured,
            circuit=circuit,
        )

    @app.post("/learners")
    async def upsert_learner(learner: LearnerSnapshot, request: Request) -> LearnerSnapshot:
        """Register or refresh the snapshot used for nudge generation."""
        request.app.state.learners.upsert(learner)
        return learner

    @app.post("/learners/{learner_id}/nudge", response_model=None)
    async def generate_nudge(
        learner_id: int,
        request: Request,
        streaming: bool = True,
    ) -> JSONResponse | StreamingResponse:
        """
        Generate a nudge for a learner.

        Streams Server-Sent Events by default; ``?streaming=false`` returns a
        single JSON body. Transient AI failures never surface here: they come
        back as template-sourced nudges. Each client is limited to a fixed
        number of nudge requests per minute.
        """
        limit = _check_rate_limit(request)
        learner = _learner_or_404(request, learner_id)
        service = _orchestrator(request)
        logger.info("Nudge requested for learner %s (streaming=%s)", learner_id, streaming)

        if not streaming:
            response = await service.generate_nudge(learner)
            return JSONResponse(
                response.model_dump(mode="json", by_alias=True),
                headers=_rate_limit_headers(limit),
            )

        events = service.stream_nudge(learner)
        # Pull the start frame eagerly so a cooldown rejection becomes a 429
        # before any streaming headers are sent.
        first = await anext(events)
        return StreamingResponse(
            _sse_body(first, events, learner_id),
            media_type="text/event-stream",
            headers={**SSE_HEADERS, **_rate_limit_headers(limit)},
        )

    @app.get("/learners/{learner_id}/nudges")
    async def list_nudges(learner_id: int, request: Request) -> list[Nudge]:
        """Persisted nudges for a learner, newest first."""
        _learner_or_404(request, learner_id)
        return await _orchestrator(request).history(learner_id)

    return app


def _orchestrator(request: Request) -> NudgeOrchestrator:
    return request.app.state.orchestrator


def _check_rate_limit(request: Request) -> RateLimitStatus:
    key = client_key(
        admin_api_key=request.headers.get("x-admin-api-key"),
        client_host=request.client.host if request.client else None,
        forwarded_for=request.headers.get("x-forwarded-for"),
        real_ip=request.headers.get("x-real-ip"),
    )
    limiter: RateLimiter = request.app.state.rate_limiter
    return limiter.hit(key)


def _rate_limit_headers(status: RateLimitStatus) -> dict[str, str]:
    if status.limit == 0:
        return {}
    return {
        "X-RateLimit-Limit": str(status.limit),
        "X-RateLimit-Remaining": str(status.remaining),
        "X-RateLimit-Reset": str(math.ceil(status.reset_in_s)),
    }


def _learner_or_404(request: Request, learner_id: int) -> LearnerSnapshot:
    learner = request.app.state.learners.get(learner_id)
    if learner is None:
        raise HTTPException(
            status_code=404,
            detail=f"Learner not found: {learner_id}",
        )
    return learner


async def _sse_body(
    first: NudgeStreamEvent,
    events: AsyncGenerator[NudgeStreamEvent, None],
    learner_id: int,
) -> AsyncGenerator[str, None]:
    try:
        yield encode_event(first)
        async for event in events:
            yield encode_event(event)
    except PersistenceError as err:
        logger.error("Streamed nudge for learner %s could not be saved: %s", learner_id, err)
        yield encode_payload(
            {"type": "error", "message": "Failed to save nudge.", "fatal": True}
        )
    finally:
        await events.aclose()


async def _cooldown_handler(request: Request, exc: Exception) -> JSONResponse:
    error = cast(CooldownError, exc)
    retry_after = max(1, math.ceil(error.retry_after_s))
    return JSONResponse(
        status_code=429,
        content={
            "error": "cooldown",
            "message": str(error),
            "retryAfter": retry_after,
        },
        headers={"Retry-After": str(retry_after)},
    )


async def _rate_limit_handler(request: Request, exc: Exception) -> JSONResponse:
    error = cast(RateLimitError, exc)
    retry_after = max(1, math.ceil(error.retry_after_s))
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limited",
            "message": str(error),
            "retryAfter": retry_after,
        },
        headers={
            "Retry-After": str(retry_after),
            "X-RateLimit-Limit": str(error.limit),
            "X-RateLimit-Remaining": "0",
        },
    )


async def _persistence_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"error": "persistence_failed", "message": str(exc)},
    )


app = create_app()
