"""FastAPI application entrypoint. No business logic; only wiring and middleware."""

from dotenv import load_dotenv

load_dotenv()

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.v1 import router as v1_router
from app.core.config import settings
from app.core.database import SessionLocal
from app.core.logging import configure_logging
from app.repositories.scans import SqlAlchemyScanRepository
from app.scanners.registry import build_registry
from app.services.dispatcher import Dispatcher
from app.services.enrichment import OllamaEnricher
from app.services.lifecycle import ScanLifecycleManager
from app.services.normalize import NormalizationEngine
from app.services.status import ScanStatusService

configure_logging(settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the scan pipeline once per process; cancel in-flight scans on shutdown."""
    repository = SqlAlchemyScanRepository(SessionLocal)
    dispatcher = Dispatcher(build_registry(settings), settings)
    lifecycle = ScanLifecycleManager(
        repository,
        dispatcher,
        NormalizationEngine(repository),
        settings,
        enricher=OllamaEnricher(settings) if settings.ENRICHMENT_ENABLED else None,
    )
    app.state.lifecycle = lifecycle
    app.state.status_service = ScanStatusService(repository)
    try:
        yield
    finally:
        await lifecycle.shutdown()


app = FastAPI(
    title="Vigil API",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.APP_ENV == "dev" else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(v1_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
def root() -> dict[str, str]:
    """Root route; minimal payload for discovery."""
    return {"message": "Vigil API"}
