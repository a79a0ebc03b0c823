from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Response, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from ...domain.artifact_models import BuildResult, ConsolidatedArtifact, SecurityReport
from ...domain.errors import ArtifactNotFound, ObjectNotFound, StorageError
from ...infrastructure.artifact_repository import ArtifactRecord
from ...services.block_extractor import extract
from ...services.consolidator import consolidate, make_artifact
from ...services.language_rules import content_type_for, language_from_filename, normalize_language
from ...services.registry import get_registry
from ...services.security_validator import validate

LOG = logging.getLogger("codecanvas.api")

router = APIRouter(prefix="/artifacts", tags=["artifacts"])
files_router = APIRouter(tags=["files"])


class BuildRequest(BaseModel):
    content: Optional[str] = Field(default=None, description="Model text containing fenced code")
    code: Optional[str] = Field(default=None, description="Raw source to build directly")
    language: Optional[str] = None


class ArtifactResponse(BaseModel):
    artifact: ConsolidatedArtifact
    build: Optional[BuildResult] = None
    storage_key: Optional[str] = None
    url: Optional[str] = None
    session_id: Optional[str] = None
    saved_at: str = ""


def _to_response(record: ArtifactRecord) -> ArtifactResponse:
    return ArtifactResponse(
        artifact=record.artifact,
        build=record.build,
        storage_key=record.stored.key if record.stored else None,
        url=record.stored.url if record.stored else None,
        session_id=record.session_id,
        saved_at=record.saved_at,
    )


def _load(artifact_id: str) -> ArtifactRecord:
    record = get_registry().repository.get(artifact_id)
    if record is None:
        raise ArtifactNotFound(artifact_id)
    return record


def _load_or_404(artifact_id: str) -> ArtifactRecord:
    try:
        return _load(artifact_id)
    except ArtifactNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.post("/build", response_model=ArtifactResponse, status_code=status.HTTP_201_CREATED)
async def build_artifact(req: BuildRequest) -> ArtifactResponse:
    if req.code:
        language = normalize_language(req.language) if req.language else None
        if language is None or language == "text":
            blocks = extract(req.code)
            language = blocks[0].language if blocks else "javascript"
        artifact = make_artifact(req.code, language)
    elif req.content:
        artifact = consolidate(extract(req.content))
        if artifact is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="No code found in content")
    else:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Provide content or code")

    registry = get_registry()
    try:
        stored = await registry.cache.store(artifact.code, artifact.language)
    except StorageError as exc:
        LOG.warning("artifact_store_failed", extra={"artifact_id": artifact.id, "err": str(exc)})
        stored = None
    build = None
    if artifact.metadata.buildable:
        build = await registry.bundler.build(artifact.code, artifact.language, title=artifact.title)
    record = registry.repository.save(artifact, build=build, stored=stored)
    return _to_response(record)


@router.get("", response_model=List[ArtifactResponse])
def list_artifacts(limit: int = Query(20, ge=1, le=200)) -> List[ArtifactResponse]:
    return [_to_response(r) for r in get_registry().repository.list_recent(limit)]


@router.get("/{artifact_id}", response_model=ArtifactResponse)
def get_artifact(artifact_id: str) -> ArtifactResponse:
    return _to_response(_load_or_404(artifact_id))


@router.get("/{artifact_id}/code", response_class=PlainTextResponse)
def get_artifact_code(artifact_id: str) -> PlainTextResponse:
    record = _load_or_404(artifact_id)
    return PlainTextResponse(record.artifact.code, media_type=content_type_for(record.artifact.language))


@router.get("/{artifact_id}/preview")
def get_artifact_preview(artifact_id: str) -> Response:
    record = _load_or_404(artifact_id)
    if record.build is None or not record.build.preview_html:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Preview not available")
    return Response(content=record.build.preview_html, media_type="text/html")


@router.get("/{artifact_id}/security", response_model=SecurityReport)
def get_artifact_security(artifact_id: str) -> SecurityReport:
    record = _load_or_404(artifact_id)
    return validate(record.artifact.code, record.artifact.language)


@router.post("/{artifact_id}/rebuild", response_model=ArtifactResponse)
async def rebuild_artifact(artifact_id: str) -> ArtifactResponse:
    record = _load_or_404(artifact_id)
    if not record.artifact.metadata.buildable:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Artifact is not buildable")
    registry = get_registry()
    build = await registry.bundler.build(record.artifact.code, record.artifact.language, title=record.artifact.title)
    return _to_response(registry.repository.save(record.artifact, build=build))


@files_router.get("/files/{key:path}")
async def download_file(key: str, token: str = Query(...)) -> Response:
    registry = get_registry()
    if not registry.signer.verify(token, key):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired token")
    try:
        body = await registry.cache.retrieve(key)
    except ObjectNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found") from exc
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    language = language_from_filename(key) or "text"
    return Response(content=body, media_type=content_type_for(language))

