"""Fixtures for API tests: a fresh app over a temporary SQLite file."""
from contextlib import ExitStack
from typing import Dict, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from stylebook.api.app import create_app
from stylebook.api.dependencies import reset_dependencies
from stylebook.config import get_settings
from stylebook.database import close_database, get_session_factory
from stylebook.models import ServiceCatalog

ADMIN_EMAIL = "admin@stylebook.local"
ADMIN_PASSWORD = "correct-horse-battery"


@pytest.fixture
def suggester():
    """Haircut advisor stub; None disables the route."""
    def _suggest(image_data_url: str) -> dict:
        return {
            "detected_description": "Oval face, short straight hair",
            "suggestions": [{"name": "Textured crop", "reason": "Adds volume on top"}],
            "preview_style_name": "Textured crop",
        }
    return _suggest


@pytest.fixture
def api_env(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'api.db'}")
    monkeypatch.setenv("JWT_SECRET", "integration-secret-0123456789abcdef")
    monkeypatch.setenv("BOOKING_MAX_PER_MINUTE", "3")
    monkeypatch.setenv("AI_MAX_PER_MINUTE", "2")
    monkeypatch.setenv("ADMIN_BOOTSTRAP_EMAIL", ADMIN_EMAIL)
    monkeypatch.setenv("ADMIN_BOOTSTRAP_PASSWORD", ADMIN_PASSWORD)
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    return monkeypatch


@pytest.fixture
def make_client(api_env, suggester):
    """Build a TestClient; the app is started (lifespan) inside the context."""
    stack = ExitStack()

    def _make(with_suggester: bool = True, peer: Optional[Tuple[str, int]] = None) -> TestClient:
        get_settings.cache_clear()
        reset_dependencies()
        close_database()
        app = create_app(haircut_suggester=suggester if with_suggester else None)
        if peer is None:
            return stack.enter_context(TestClient(app))
        return stack.enter_context(TestClient(app, client=peer))

    yield _make

    stack.close()
    close_database()
    reset_dependencies()


@pytest.fixture
def client(make_client) -> TestClient:
    return make_client()


def seed_services() -> Dict[str, str]:
    """Two active services and one inactive one. Returns name -> id."""
    with get_session_factory()() as db:
        rows = [
            ServiceCatalog(name="Classic cut", price=15, duration_minutes=30),
            ServiceCatalog(name="Beard trim", price=8, duration_minutes=20),
            ServiceCatalog(name="Retired perm", price=40, duration_minutes=90, active=False),
        ]
        db.add_all(rows)
        db.commit()
        return {row.name: row.id for row in rows}


@pytest.fixture
def services(client) -> Dict[str, str]:
    return seed_services()


@pytest.fixture
def seed():
    """Seeds the database of the most recently built app."""
    return seed_services


@pytest.fixture
def admin_headers(client) -> dict:
    response = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}
