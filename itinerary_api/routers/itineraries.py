import logging
import time

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from itinerary_pipeline.budget import BudgetCheck
from itinerary_pipeline.errors import ErrorKind, PipelineError
from itinerary_pipeline.models import GenerationOptions, GenerationRequest, ItineraryResult
from itinerary_pipeline.orchestrator import ItineraryOrchestrator
from itinerary_pipeline.tracing import log_event

from ..deps import get_api_key, get_orchestrator


logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(get_api_key)])

_STATUS_BY_KIND = {
    ErrorKind.PROVIDER_RATE_LIMIT: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorKind.PROVIDER_TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorKind.PROVIDER_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.PROVIDER_QUOTA_EXCEEDED: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.CIRCUIT_OPEN: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.PROVIDER_AUTH: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.PROVIDER_ERROR: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.VALIDATION_ERROR: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.CANCELLATION: status.HTTP_408_REQUEST_TIMEOUT,
}


def status_for(error: PipelineError) -> int:
    return _STATUS_BY_KIND.get(error.kind, status.HTTP_502_BAD_GATEWAY)


class GenerateBody(BaseModel):
    request: GenerationRequest
    options: GenerationOptions = GenerationOptions()


@router.post("/generate", response_model=ItineraryResult)
async def generate(
    body: GenerateBody,
    orchestrator: ItineraryOrchestrator = Depends(get_orchestrator),
) -> ItineraryResult:
    start_time = time.monotonic()
    try:
        result = await orchestrator.generate_itinerary(body.request, body.options)
    except PipelineError as e:
        latency_ms = (time.monotonic() - start_time) * 1000
        log_event(logger, logging.WARNING, "itinerary-api", "generate", latency_ms=latency_ms, ok=False,
                  kind=e.kind.value)
        raise HTTPException(status_code=status_for(e), detail=e.to_dict())

    latency_ms = (time.monotonic() - start_time) * 1000
    log_event(logger, logging.INFO, "itinerary-api", "generate", latency_ms=latency_ms, ok=True,
              cache_hit=result.performance.cache_hit, quality=result.metadata.quality)
    return result


@router.post("/budget-check", response_model=BudgetCheck)
async def budget_check(
    req: GenerationRequest,
    orchestrator: ItineraryOrchestrator = Depends(get_orchestrator),
) -> BudgetCheck:
    return orchestrator.budget_optimizer.validate_budget(req)
