from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from ..observability.metrics import PACKAGE_INSTALLS
from .command_runner import AsyncSubprocessRunner, CommandRunner

LOG = logging.getLogger("codecanvas.installer")

SANDBOX_PACKAGE_JSON = {
    "name": "codecanvas-sandbox",
    "version": "1.0.0",
    "description": "Sandbox for artifact builds",
    "private": True,
    "dependencies": {},
}

_INSTALL_ARGS: Dict[str, List[str]] = {
    "npm": ["install", "--save", "--no-audit", "--no-fund", "--loglevel=error"],
    "pnpm": ["add"],
    "yarn": ["add", "--silent"],
}


@dataclass(frozen=True)
class PackageInstallState:
    name: str
    installed: bool
    installed_at: Optional[str] = None


class DependencyCache:
    """Process-wide record of installed packages and in-flight install batches.

    Entries only ever move to installed; ``clear`` is the sole way to forget one.
    State checks and mutations never straddle an ``await``.
    """

    def __init__(self) -> None:
        self._installed: Dict[str, PackageInstallState] = {}
        self._in_flight: Dict[str, "asyncio.Future[Set[str]]"] = {}

    def status(self, name: str) -> str:
        if name in self._installed:
            return "installed"
        if name in self._in_flight:
            return "installing"
        return "unknown"

    def get(self, name: str) -> PackageInstallState:
        return self._installed.get(name) or PackageInstallState(name=name, installed=False)

    def is_installed(self, name: str) -> bool:
        return name in self._installed

    def mark_installed(self, name: str) -> None:
        if name not in self._installed:
            stamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            self._installed[name] = PackageInstallState(name=name, installed=True, installed_at=stamp)

    def pending(self, name: str) -> Optional["asyncio.Future[Set[str]]"]:
        return self._in_flight.get(name)

    def begin(self, names: Iterable[str], batch: "asyncio.Future[Set[str]]") -> None:
        for name in names:
            self._in_flight[name] = batch

    def finish(self, names: Iterable[str], batch: "asyncio.Future[Set[str]]") -> None:
        for name in names:
            if self._in_flight.get(name) is batch:
                del self._in_flight[name]

    def installed_names(self) -> List[str]:
        return sorted(self._installed)

    def in_flight_names(self) -> List[str]:
        return sorted(self._in_flight)

    def clear(self) -> None:
        self._installed.clear()


class PackageInstaller:
    def __init__(
        self,
        sandbox_dir: Path,
        runner: Optional[CommandRunner] = None,
        cache: Optional[DependencyCache] = None,
        package_manager: str = "npm",
        timeout: float = 120.0,
    ) -> None:
        self.sandbox_dir = Path(sandbox_dir)
        self.runner = runner or AsyncSubprocessRunner()
        self.cache = cache or DependencyCache()
        self.package_manager = package_manager
        self.timeout = timeout
        self.invocations = 0

    def ensure_sandbox(self) -> Path:
        self.sandbox_dir.mkdir(parents=True, exist_ok=True)
        manifest = self.sandbox_dir / "package.json"
        if not manifest.exists():
            manifest.write_text(json.dumps(SANDBOX_PACKAGE_JSON, indent=2), encoding="utf-8")
            LOG.info("sandbox_manifest_created", extra={"path": str(manifest)})
        return self.sandbox_dir

    @property
    def node_modules(self) -> Path:
        return self.sandbox_dir / "node_modules"

    def is_on_disk(self, name: str) -> bool:
        return (self.node_modules.joinpath(*name.split("/")) / "package.json").is_file()

    async def ensure_installed(self, names: Iterable[str]) -> List[str]:
        """Make sure ``names`` exist in the sandbox; return the subset that does.

        Never raises for install problems. Names already being installed by
        another caller are awaited rather than installed twice.
        """
        wanted: List[str] = []
        for name in names:
            if name and name not in wanted:
                wanted.append(name)
        if not wanted:
            return []

        ready: Set[str] = set()
        waits: Dict[str, "asyncio.Future[Set[str]]"] = {}
        to_install: List[str] = []
        for name in wanted:
            if self.cache.is_installed(name):
                ready.add(name)
                continue
            pending = self.cache.pending(name)
            if pending is not None:
                waits[name] = pending
                continue
            if self.is_on_disk(name):
                self.cache.mark_installed(name)
                ready.add(name)
                continue
            to_install.append(name)

        if to_install:
            batch: "asyncio.Future[Set[str]]" = asyncio.get_running_loop().create_future()
            self.cache.begin(to_install, batch)
            verified: Set[str] = set()
            try:
                verified = await self._install_batch(to_install)
            finally:
                for name in verified:
                    self.cache.mark_installed(name)
                self.cache.finish(to_install, batch)
                if not batch.done():
                    batch.set_result(verified)
            ready.update(verified)

        for name, pending in waits.items():
            done = await asyncio.shield(pending)
            if name in done or self.cache.is_installed(name):
                ready.add(name)

        missing = [name for name in wanted if name not in ready]
        if missing:
            LOG.warning("packages_unavailable", extra={"packages": missing})
        return [name for name in wanted if name in ready]

    async def _install_batch(self, names: List[str]) -> Set[str]:
        try:
            self.ensure_sandbox()
        except OSError as exc:
            LOG.error("sandbox_unavailable", extra={"path": str(self.sandbox_dir), "err": str(exc)})
            PACKAGE_INSTALLS.labels(outcome="error").inc()
            return set()

        args = [self.package_manager, *_INSTALL_ARGS.get(self.package_manager, ["install"]), *names]
        LOG.info("package_install_started", extra={"packages": names})
        self.invocations += 1
        try:
            result = await self.runner.run(args, cwd=self.sandbox_dir, timeout=self.timeout)
        except Exception as exc:
            PACKAGE_INSTALLS.labels(outcome="error").inc()
            LOG.error("package_install_failed", extra={"packages": names, "err": str(exc)})
            return set()
        if result.timed_out:
            PACKAGE_INSTALLS.labels(outcome="timeout").inc()
            LOG.error("package_install_timeout", extra={"packages": names, "timeout": self.timeout})
            return set()
        if result.exit_code != 0:
            PACKAGE_INSTALLS.labels(outcome="failed").inc()
            LOG.error(
                "package_install_failed",
                extra={"packages": names, "exit_code": result.exit_code, "stderr": result.stderr[-2000:]},
            )
            return set()

        verified = {name for name in names if self.is_on_disk(name)}
        PACKAGE_INSTALLS.labels(outcome="success" if len(verified) == len(names) else "partial").inc()
        LOG.info(
            "package_install_finished",
            extra={"packages": sorted(verified), "missing": [n for n in names if n not in verified], "ms": result.duration_ms},
        )
        return verified

    def stats(self) -> Dict[str, object]:
        return {
            "installed_packages": len(self.cache.installed_names()),
            "in_flight": self.cache.in_flight_names(),
            "sandbox_path": str(self.sandbox_dir),
            "invocations": self.invocations,
        }

    def clear_cache(self) -> None:
        self.cache.clear()
        LOG.info("package_cache_cleared")
