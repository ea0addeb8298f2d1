import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
import uvicorn

from itinerary_api.routers.health import router as health_router
from itinerary_api.routers.itineraries import router as itineraries_router
from itinerary_pipeline.orchestrator import ItineraryOrchestrator
from .config import CONFIG
from .deps import get_api_key


# --- Logging Configuration ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler()  # Ensure logs go to stdout/stderr
    ]
)
# --------------------------


def create_app(orchestrator: Optional[ItineraryOrchestrator] = None) -> FastAPI:
    """Build the service. A supplied orchestrator is used as is and left open on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = orchestrator is None
        app.state.orchestrator = orchestrator or ItineraryOrchestrator.from_config()
        try:
            yield
        finally:
            if owned:
                await app.state.orchestrator.aclose()

    limiter = Limiter(key_func=get_remote_address, default_limits=[CONFIG.rate_limit])

    app = FastAPI(title="Itinerary Pipeline", lifespan=lifespan)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=512)
    app.include_router(itineraries_router, prefix="/itineraries")
    app.include_router(health_router)

    @app.get("/", dependencies=[Depends(get_api_key)])
    async def root(_: Request):
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=CONFIG.port)
