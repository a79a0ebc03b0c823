from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime
import logging

from dotenv import load_dotenv
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.artifacts import files_router, router as artifacts_router
from .routers.diag import router as diag_router
from .routers.stream import router as stream_router
from ..observability.metrics import metrics_middleware_factory
from ..services.registry import get_registry

load_dotenv()  # CODECANVAS_* settings and model credentials from .env if present

LOG = logging.getLogger("codecanvas.api")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    orchestrator = get_registry().orchestrator
    orchestrator.start()
    try:
        yield
    finally:
        await orchestrator.shutdown()


app = FastAPI(title="CodeCanvas API", version="0.1.0", lifespan=lifespan)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

app.include_router(stream_router)
app.include_router(artifacts_router)
app.include_router(diag_router)
app.include_router(files_router)

# Same routers under /api
app.include_router(stream_router, prefix="/api")
app.include_router(artifacts_router, prefix="/api")
app.include_router(diag_router, prefix="/api")
app.include_router(files_router, prefix="/api")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Stream-Session-Id"],
)


def _health() -> dict:
    registry = get_registry()
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "storage": registry.settings.storage_backend,
            "sessions": registry.orchestrator.stats()["active_sessions"],
        },
    }


@app.get("/")
def root():
    return {"name": "CodeCanvas API", "version": "0.1.0"}


@app.get("/health")
def health():
    return _health()


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.get("/api/health")
def api_health():
    return _health()
