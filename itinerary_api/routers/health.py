from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from itinerary_pipeline.orchestrator import ItineraryOrchestrator, PipelineStats

from ..deps import get_api_key, get_orchestrator


router = APIRouter()


@router.get("/health")
async def health(orchestrator: ItineraryOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
    report = await orchestrator.health_check()
    code = status.HTTP_503_SERVICE_UNAVAILABLE if report.status == "unhealthy" else status.HTTP_200_OK
    return JSONResponse(status_code=code, content=report.model_dump())


@router.get("/stats", response_model=PipelineStats, dependencies=[Depends(get_api_key)])
async def stats(orchestrator: ItineraryOrchestrator = Depends(get_orchestrator)) -> PipelineStats:
    return orchestrator.stats()
