import asyncio
import json

import pytest

from src.codecanvas.services.package_installer import DependencyCache, PackageInstaller
from tests.utils import FakeRunner


def _installer(tmp_path, **runner_kwargs):
    runner = FakeRunner(**runner_kwargs)
    return PackageInstaller(tmp_path / "sandbox", runner=runner), runner


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_install(tmp_path):
    installer, runner = _installer(tmp_path, install_delay=0.05)
    first, second = await asyncio.gather(
        installer.ensure_installed(["left-pad"]),
        installer.ensure_installed(["left-pad"]),
    )
    assert first == second == ["left-pad"]
    assert len(runner.install_calls) == 1
    assert installer.cache.status("left-pad") == "installed"


@pytest.mark.asyncio
async def test_batch_is_one_invocation_and_writes_manifest(tmp_path):
    installer, runner = _installer(tmp_path)
    ready = await installer.ensure_installed(["react", "react-dom", "react"])
    assert ready == ["react", "react-dom"]
    (call,) = runner.install_calls
    assert call[:2] == ["npm", "install"]
    assert call[-2:] == ["react", "react-dom"]
    manifest = json.loads((tmp_path / "sandbox" / "package.json").read_text(encoding="utf-8"))
    assert manifest["name"] == "codecanvas-sandbox"
    assert manifest["private"] is True


@pytest.mark.asyncio
async def test_installed_packages_are_not_reinstalled(tmp_path):
    installer, runner = _installer(tmp_path)
    await installer.ensure_installed(["lodash"])
    await installer.ensure_installed(["lodash"])
    assert len(runner.install_calls) == 1
    assert installer.invocations == 1


@pytest.mark.asyncio
async def test_packages_already_on_disk_are_recorded_without_install(tmp_path):
    installer, runner = _installer(tmp_path)
    pkg = tmp_path / "sandbox" / "node_modules" / "@scope" / "ui"
    pkg.mkdir(parents=True)
    (pkg / "package.json").write_text("{}", encoding="utf-8")
    assert await installer.ensure_installed(["@scope/ui"]) == ["@scope/ui"]
    assert runner.install_calls == []
    assert installer.cache.get("@scope/ui").installed


@pytest.mark.asyncio
async def test_timeout_leaves_package_unknown(tmp_path):
    installer, runner = _installer(tmp_path, install_timeout=True)
    assert await installer.ensure_installed(["slow-pkg"]) == []
    assert installer.cache.status("slow-pkg") == "unknown"
    assert installer.cache.in_flight_names() == []


@pytest.mark.asyncio
async def test_failed_install_returns_subset_without_raising(tmp_path):
    installer, _ = _installer(tmp_path, install_exit=1)
    assert await installer.ensure_installed(["does-not-exist"]) == []
    assert not installer.cache.is_installed("does-not-exist")


class _RaisingRunner:
    async def run(self, args, cwd=None, timeout=60.0, input_text=None, env=None):
        raise NotADirectoryError("cwd is not a directory")


@pytest.mark.asyncio
async def test_runner_exception_is_contained(tmp_path):
    installer = PackageInstaller(tmp_path / "sandbox", runner=_RaisingRunner())
    assert await installer.ensure_installed(["left-pad"]) == []
    assert installer.cache.status("left-pad") == "unknown"
    assert installer.cache.in_flight_names() == []


@pytest.mark.asyncio
async def test_partial_install_reports_only_verified_packages(tmp_path):
    installer, _ = _installer(tmp_path, skip_packages=["ghost-pkg"])
    ready = await installer.ensure_installed(["left-pad", "ghost-pkg"])
    assert ready == ["left-pad"]
    assert installer.cache.status("ghost-pkg") == "unknown"


@pytest.mark.asyncio
async def test_clear_forgets_state_but_disk_check_recovers(tmp_path):
    installer, runner = _installer(tmp_path)
    await installer.ensure_installed(["left-pad"])
    installer.clear_cache()
    assert installer.cache.installed_names() == []
    assert await installer.ensure_installed(["left-pad"]) == ["left-pad"]
    assert len(runner.install_calls) == 1


@pytest.mark.asyncio
async def test_empty_request_is_noop(tmp_path):
    installer, runner = _installer(tmp_path)
    assert await installer.ensure_installed([]) == []
    assert runner.calls == []


def test_dependency_cache_entries_never_regress():
    cache = DependencyCache()
    cache.mark_installed("react")
    stamp = cache.get("react").installed_at
    cache.mark_installed("react")
    assert cache.get("react").installed_at == stamp
    assert cache.status("react") == "installed"
    assert cache.status("vue") == "unknown"
    assert cache.get("vue").installed is False
