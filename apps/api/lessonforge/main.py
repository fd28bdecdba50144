from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .errors import ProviderConfigurationError
from .math_checker import validate_grade_appropriateness, validate_math_answers
from .pipeline import GenerationOutcome, GenerationServices, build_services, run_generation
from .schemas import CamelModel, GenerationContext, Grade, Plan, ValidationRequirements, ValidationResult
from .validator import validate_plan


logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging(settings.log_level)
    app.state.services = None
    app.state.services_error = None
    try:
        app.state.services = build_services(settings)
    except ProviderConfigurationError as exc:
        logger.error("Provider configuration is invalid: %s", exc)
        app.state.services_error = str(exc)
    try:
        yield
    finally:
        if app.state.services is not None:
            await app.state.services.aclose()


app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_services(request: Request) -> GenerationServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        detail = getattr(request.app.state, "services_error", None) or "Generation services are not configured"
        raise HTTPException(status_code=503, detail=detail)
    return services


class PlanValidationRequest(CamelModel):
    plan: Plan
    requirements: ValidationRequirements


class MathCheckRequest(CamelModel):
    html: str
    grade: Grade


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/generate", response_model=GenerationOutcome)
async def generate(
    payload: GenerationContext,
    services: GenerationServices = Depends(get_services),
) -> GenerationOutcome:
    try:
        return await run_generation(payload, services)
    except ProviderConfigurationError as exc:
        logger.error("Generation aborted: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc))


@app.post("/plans/validate", response_model=ValidationResult)
async def validate_plan_endpoint(payload: PlanValidationRequest) -> ValidationResult:
    return validate_plan(payload.plan, payload.requirements)


@app.post("/math/check")
async def math_check(payload: MathCheckRequest) -> dict[str, Any]:
    answers = validate_math_answers(payload.html, payload.grade)
    appropriateness = validate_grade_appropriateness(payload.html, payload.grade)
    return {
        "answers": asdict(answers),
        "gradeAppropriateness": asdict(appropriateness),
    }


@app.get("/images/cache")
async def image_cache_stats(services: GenerationServices = Depends(get_services)) -> dict[str, Any]:
    stats = services.image_cache.stats()
    return {
        "hits": stats.hits,
        "misses": stats.misses,
        "entries": stats.entries,
        "sizeBytes": stats.size_bytes,
        "hitRate": stats.hit_rate,
    }
