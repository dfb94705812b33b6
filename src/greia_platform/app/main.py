"""FastAPI application entry point for the GREIA marketplace engine."""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from greia_platform.app.config import get_settings
from greia_platform.app.dependencies import get_fanout
from greia_platform.domain.schemas import HealthResponse
from greia_platform.infra.database import init_db

logger = logging.getLogger(__name__)


async def deferred_effect_loop():
    """Retry failed downstream effects at the configured interval."""
    interval = get_settings().effect_retry_interval_seconds
    while True:
        try:
            stats = await get_fanout().retry_deferred_effects()
            if stats["abandoned"]:
                logger.warning("Deferred effects abandoned this round: %d", stats["abandoned"])
        except Exception as e:
            logger.error("Deferred effect loop error: %s", e)
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database and start the retry loop."""
    await init_db()
    task = asyncio.create_task(deferred_effect_loop())
    yield
    task.cancel()


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="GREIA Marketplace Engine API",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS middleware: allow all origins in debug mode
_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from greia_platform.app.routes.admin import router as admin_router  # noqa: E402
from greia_platform.app.routes.candidates import router as candidates_router  # noqa: E402
from greia_platform.app.routes.engagements import router as engagements_router  # noqa: E402
from greia_platform.app.routes.requests import router as requests_router  # noqa: E402
from greia_platform.app.routes.ws import router as ws_router  # noqa: E402

app.include_router(requests_router)
app.include_router(engagements_router)
app.include_router(candidates_router)
app.include_router(admin_router)
app.include_router(ws_router)


@app.get("/health", tags=["health"], response_model=HealthResponse)
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "greia-platform"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "greia_platform.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
