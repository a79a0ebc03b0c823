from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """Runtime configuration resolved from ``CODECANVAS_*`` environment variables."""

    sandbox_dir: Path = Path("sandbox")
    package_manager: str = "npm"
    install_timeout: float = 120.0
    bundler_command: str = "esbuild"
    build_timeout: float = 30.0

    storage_backend: str = "memory"
    storage_dir: Path = Path("artifacts")
    storage_prefix: str = "code-artifacts/"
    presign_ttl: int = 3600
    url_secret: str = "codecanvas-dev-secret"
    public_base_url: str = ""

    cache_max_entries: int = 1000
    cache_max_bytes: int = 100 * 1024 * 1024
    cache_ttl: float = 3600.0
    url_refresh_margin: float = 600.0

    max_sessions: int = 100
    session_timeout: float = 300.0
    sweep_interval: float = 60.0
    event_history_limit: int = 100

    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: Optional[str] = None
    llm_model: str = "gpt-4o-mini"
    redis_url: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            sandbox_dir=Path(env.get("CODECANVAS_SANDBOX_DIR") or "sandbox"),
            package_manager=env.get("CODECANVAS_PACKAGE_MANAGER") or "npm",
            install_timeout=_env_float(env, "CODECANVAS_INSTALL_TIMEOUT", 120.0),
            bundler_command=env.get("CODECANVAS_BUNDLER") or "esbuild",
            build_timeout=_env_float(env, "CODECANVAS_BUILD_TIMEOUT", 30.0),
            storage_backend=(env.get("CODECANVAS_STORAGE_BACKEND") or "memory").lower(),
            storage_dir=Path(env.get("CODECANVAS_STORAGE_DIR") or "artifacts"),
            storage_prefix=env.get("CODECANVAS_STORAGE_PREFIX") or "code-artifacts/",
            presign_ttl=_env_int(env, "CODECANVAS_PRESIGN_TTL", 3600),
            url_secret=env.get("CODECANVAS_URL_SECRET") or "codecanvas-dev-secret",
            public_base_url=(env.get("CODECANVAS_PUBLIC_BASE_URL") or "").rstrip("/"),
            cache_max_entries=_env_int(env, "CODECANVAS_CACHE_MAX_ENTRIES", 1000),
            cache_max_bytes=_env_int(env, "CODECANVAS_CACHE_MAX_BYTES", 100 * 1024 * 1024),
            cache_ttl=_env_float(env, "CODECANVAS_CACHE_TTL", 3600.0),
            url_refresh_margin=_env_float(env, "CODECANVAS_URL_REFRESH_MARGIN", 600.0),
            max_sessions=_env_int(env, "CODECANVAS_MAX_SESSIONS", 100),
            session_timeout=_env_float(env, "CODECANVAS_SESSION_TIMEOUT", 300.0),
            sweep_interval=_env_float(env, "CODECANVAS_SWEEP_INTERVAL", 60.0),
            event_history_limit=_env_int(env, "CODECANVAS_EVENT_HISTORY", 100),
            llm_base_url=(env.get("CODECANVAS_LLM_BASE_URL") or "https://api.openai.com/v1").rstrip("/"),
            llm_api_key=env.get("CODECANVAS_LLM_API_KEY") or env.get("OPENAI_API_KEY"),
            llm_model=env.get("CODECANVAS_LLM_MODEL") or "gpt-4o-mini",
            redis_url=env.get("REDIS_URL") or None,
        )

    def bundler_executable(self) -> str:
        # Prefer the sandbox-local binary when the sandbox has installed esbuild.
        local = self.sandbox_dir / "node_modules" / ".bin" / self.bundler_command
        if local.exists():
            return str(local)
        return self.bundler_command


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
