from __future__ import annotations

from typing import Optional

from ..config import Settings, get_settings
from ..infrastructure.artifact_repository import InMemoryArtifactRepository
from ..infrastructure.events import get_publisher
from ..infrastructure.object_storage import InMemoryObjectStorage, LocalObjectStorage, ObjectStorage, UrlSigner
from .artifact_cache import ContentAddressedCache, LRUCache
from .bundler import BundlerAdapter
from .model_stream import ModelStreamClient
from .package_installer import DependencyCache, PackageInstaller
from .stream_orchestrator import StreamOrchestrator


class ServiceRegistry:
    """Wire the pipeline services once per process from ``Settings``."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        self.signer = UrlSigner(secret=s.url_secret, base_url=s.public_base_url)
        self.storage: ObjectStorage
        if s.storage_backend == "local":
            self.storage = LocalObjectStorage(s.storage_dir, self.signer)
        else:
            self.storage = InMemoryObjectStorage(self.signer)
        self.cache = ContentAddressedCache(
            self.storage,
            prefix=s.storage_prefix,
            presign_ttl=s.presign_ttl,
            refresh_margin=s.url_refresh_margin,
            lru=LRUCache(max_entries=s.cache_max_entries, max_bytes=s.cache_max_bytes, ttl=s.cache_ttl),
        )
        self.dependency_cache = DependencyCache()
        self.installer = PackageInstaller(
            s.sandbox_dir,
            cache=self.dependency_cache,
            package_manager=s.package_manager,
            timeout=s.install_timeout,
        )
        self.bundler = BundlerAdapter(self.installer, executable=s.bundler_executable(), timeout=s.build_timeout)
        self.repository = InMemoryArtifactRepository()
        self.orchestrator = StreamOrchestrator(
            self.bundler,
            self.cache,
            repository=self.repository,
            max_sessions=s.max_sessions,
            session_timeout=s.session_timeout,
            sweep_interval=s.sweep_interval,
            history_limit=s.event_history_limit,
            publisher=get_publisher(s.redis_url),
        )
        self.model_client = ModelStreamClient(s.llm_base_url, s.llm_api_key, s.llm_model)


_registry: Optional[ServiceRegistry] = None


def get_registry() -> ServiceRegistry:
    global _registry
    if _registry is None:
        _registry = ServiceRegistry()
    return _registry


def set_registry(registry: Optional[ServiceRegistry]) -> None:
    global _registry
    _registry = registry
