from __future__ import annotations


class StorageError(RuntimeError):
    """Object storage could not complete a read or write."""


class ObjectNotFound(StorageError):
    def __init__(self, key: str) -> None:
        super().__init__(f"object not found: {key}")
        self.key = key


class ArtifactNotFound(LookupError):
    def __init__(self, artifact_id: str) -> None:
        super().__init__(f"artifact not found: {artifact_id}")
        self.artifact_id = artifact_id
