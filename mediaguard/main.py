# mediaguard/main.py
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mediaguard.api.v1.routes_scan import router as scan_router
from mediaguard.core.config import get_settings
from mediaguard.core.logging_config import setup_logging
from mediaguard.services.scheduler import get_scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if get_scheduler.cache_info().currsize:
        await get_scheduler().aclose()


def create_app() -> FastAPI:
    setup_logging(default_level=get_settings().LOG_LEVEL)

    app = FastAPI(
        title="MediaGuard Backend",
        version="0.1.0",
        description="Signal-fusion media authenticity scanner (manifest, heuristics, loop detection).",
        lifespan=lifespan,
    )

    # CORS – allow extension + local dev domains
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "service": "mediaguard-backend", "version": "0.1.0"}

    # Mount v1 API routes
    app.include_router(scan_router, prefix="/api/v1")
    return app


app = create_app()
