import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture
def settings(tmp_path):
    """Isolated settings pointing sandbox and storage at a temp dir."""
    from src.codecanvas.config import Settings

    return Settings.from_env(
        {
            "CODECANVAS_SANDBOX_DIR": str(tmp_path / "sandbox"),
            "CODECANVAS_STORAGE_DIR": str(tmp_path / "artifacts"),
            "CODECANVAS_URL_SECRET": "test-secret",
        }
    )


@pytest.fixture
def fake_runner():
    from tests.utils import FakeRunner

    return FakeRunner()


@pytest.fixture
def registry(settings, fake_runner):
    """Process registry wired to the fake command runner, restored after the test."""
    from src.codecanvas.services import registry as registry_module

    reg = registry_module.ServiceRegistry(settings)
    reg.installer.runner = fake_runner
    reg.bundler.runner = fake_runner
    registry_module.set_registry(reg)
    try:
        yield reg
    finally:
        registry_module.set_registry(None)
