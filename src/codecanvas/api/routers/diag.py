from __future__ import annotations

from fastapi import APIRouter

from ...services.registry import get_registry

router = APIRouter(prefix="/diag", tags=["diagnostics"])


@router.get("/stats")
def diag_stats():
    registry = get_registry()
    return {
        "sessions": registry.orchestrator.stats(),
        "cache": registry.cache.stats(),
        "build": registry.bundler.stats(),
        "artifacts": len(registry.repository),
    }


@router.post("/packages/clear")
def clear_package_cache():
    registry = get_registry()
    registry.bundler.clear_package_cache()
    return {"cleared": True, "build": registry.bundler.stats()}


@router.get("/llm")
def diag_llm():
    client = get_registry().model_client
    return {
        "base_url": client.base_url,
        "model": client.model,
        "has_api_key": client.configured,
        "ready": client.configured,
    }
