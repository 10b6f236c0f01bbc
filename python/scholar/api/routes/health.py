"""Health check endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends

from scholar.api.deps import get_llm_router
from scholar.config import get_settings
from scholar.responses import success_response
from scholar.services.llm import LLMRouter

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Liveness check endpoint.

    Returns 200 if the process is running.
    Does not check database or other dependencies.
    """
    return success_response({"status": "ok"})


@router.get("/health/llm")
async def llm_health_check(router: Annotated[LLMRouter, Depends(get_llm_router)]) -> dict:
    """Report whether the completion provider is reachable and serves the default model.

    Always 200; the payload carries the verdict.
    """
    result = await router.check_health(get_settings().default_model)
    status = "ok" if result["reachable"] and result["model_available"] else "degraded"
    return success_response({"status": status, **result})
