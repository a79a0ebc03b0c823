from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class CodeBlock:
    """One fenced (or inferred) region of model text."""

    language: str
    body: str
    file_hint: Optional[str] = None
    source_span: Tuple[int, int] = (0, 0)

    @property
    def is_file(self) -> bool:
        return bool(self.file_hint)


class ArtifactMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    dependencies: List[str] = Field(default_factory=list)
    framework: Optional[str] = None
    has_jsx: bool = False
    estimated_lines: int = 0
    estimated_tokens: int = 0
    complexity: str = "low"
    buildable: bool = False
    previewable: bool = False
    original_blocks: int = 1


class ConsolidatedArtifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    language: str
    code: str
    hash: str
    type: str = "CODE"
    metadata: ArtifactMetadata = Field(default_factory=ArtifactMetadata)


class BuildResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    bundled_code: Optional[str] = None
    preview_html: Optional[str] = None
    dependencies: List[str] = Field(default_factory=list)
    installed_packages: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    build_time_ms: float = 0.0
    bundle_size_bytes: Optional[int] = None


class SecurityIssue(BaseModel):
    id: str
    type: str
    severity: str
    description: str
    line: Optional[int] = None
    suggestion: Optional[str] = None
    snippet: Optional[str] = None


class SecurityReport(BaseModel):
    is_secure: bool
    risk_level: str
    score: int
    issues: List[SecurityIssue] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class StoredArtifact(BaseModel):
    key: str
    url: str
    hash: str
    size: int
    content_type: str = "text/plain"
    url_expires_at: Optional[float] = None


class ProjectFile(BaseModel):
    file_name: str
    content: str
    language: str
    hash: str
    dependencies: List[str] = Field(default_factory=list)


class ProjectMetadata(BaseModel):
    total_files: int
    total_lines: int
    dependencies: List[str] = Field(default_factory=list)
    dev_dependencies: List[str] = Field(default_factory=list)
    entry_point: Optional[str] = None
    buildable: bool = False


class ProjectArtifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    framework: Optional[str] = None
    files: List[ProjectFile] = Field(default_factory=list)
    metadata: ProjectMetadata


class StreamEvent(BaseModel):
    id: str
    type: str
    session_id: str
    timestamp: float
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_sse(self) -> str:
        return f"id: {self.id}\ndata: {self.model_dump_json()}\n\n"
