# promptforge/conftest.py
import os
import sys
from pathlib import Path

import pytest

# Add repository root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

os.environ.setdefault("SKIP_ENV_VALIDATION", "1")


@pytest.fixture(autouse=True)
def reset_metrics():
    """Counters are process-global; start every test from zero."""
    from promptforge.core.metrics import METRICS

    METRICS.reset()
    yield


@pytest.fixture
def test_settings(monkeypatch):
    """
    Patch attributes on the shared settings object.

    Usage:
        test_settings(ADMIN_KEY="secret", COMING_SOON=True)
    """
    from promptforge.core.config import settings

    def _apply(**overrides):
        for key, value in overrides.items():
            monkeypatch.setattr(settings, key, value)
        return settings

    return _apply


@pytest.fixture
def fake_backend():
    from promptforge.tests.mocks import FakePostgrest

    return FakePostgrest()


@pytest.fixture
def make_client():
    """
    Build an app and return a TestClient.

    The app gets a copy of the shared settings (including anything patched
    through test_settings) with ``settings_kwargs`` applied on top.
    """
    from fastapi.testclient import TestClient

    from promptforge.core.config import settings
    from promptforge.main import create_app

    apps = []

    def _make(backend=None, overrides=None, **settings_kwargs):
        app = create_app(settings.model_copy(update=settings_kwargs))
        if backend is not None:
            from promptforge.core.supabase import get_backend

            app.dependency_overrides[get_backend] = lambda: backend.client()
        for dependency, replacement in (overrides or {}).items():
            app.dependency_overrides[dependency] = replacement
        apps.append(app)
        return TestClient(app)

    yield _make
    for app in apps:
        app.dependency_overrides.clear()
