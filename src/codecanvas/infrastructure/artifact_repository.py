from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import RLock
from typing import List, Optional, Protocol

from ..domain.artifact_models import BuildResult, ConsolidatedArtifact, StoredArtifact


@dataclass
class ArtifactRecord:
    artifact: ConsolidatedArtifact
    build: Optional[BuildResult] = None
    stored: Optional[StoredArtifact] = None
    session_id: Optional[str] = None
    saved_at: str = ""


class ArtifactRepository(Protocol):
    def save(
        self,
        artifact: ConsolidatedArtifact,
        build: Optional[BuildResult] = None,
        stored: Optional[StoredArtifact] = None,
        session_id: Optional[str] = None,
    ) -> ArtifactRecord:  # pragma: no cover - interface
        ...

    def get(self, artifact_id: str) -> Optional[ArtifactRecord]:  # pragma: no cover - interface
        ...

    def list_recent(self, limit: int = 20) -> List[ArtifactRecord]:  # pragma: no cover - interface
        ...


class InMemoryArtifactRepository:
    """Thread-safe in-memory record of finalized artifacts and their latest build."""

    def __init__(self, max_records: int = 5000) -> None:
        self._records: "OrderedDict[str, ArtifactRecord]" = OrderedDict()
        self._lock = RLock()
        self._max = max_records

    def save(
        self,
        artifact: ConsolidatedArtifact,
        build: Optional[BuildResult] = None,
        stored: Optional[StoredArtifact] = None,
        session_id: Optional[str] = None,
    ) -> ArtifactRecord:
        with self._lock:
            previous = self._records.pop(artifact.id, None)
            record = ArtifactRecord(
                artifact=artifact,
                build=build or (previous.build if previous else None),
                stored=stored or (previous.stored if previous else None),
                session_id=session_id or (previous.session_id if previous else None),
                saved_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            )
            self._records[artifact.id] = record
            while len(self._records) > self._max:
                self._records.popitem(last=False)
            return record

    def get(self, artifact_id: str) -> Optional[ArtifactRecord]:
        with self._lock:
            return self._records.get(artifact_id)

    def list_recent(self, limit: int = 20) -> List[ArtifactRecord]:
        with self._lock:
            return list(reversed(self._records.values()))[:limit]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
