import os
import tempfile
import uuid
from pathlib import Path

import pytest

# The database and storage locations are read when the app is imported.
_TMP = Path(tempfile.mkdtemp(prefix="researchhub-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP / 'test.db'}"
os.environ["STORAGE_DIR"] = str(_TMP / "data")
os.environ["ENV"] = "dev"

from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session  # noqa: E402

from researchhub import services  # noqa: E402
from researchhub.database import engine  # noqa: E402
from researchhub.main import app, _rate_limiter, _dashboard_cache  # noqa: E402

PASSWORD = "secret123"

BASIC_BLOCKS = [
    {"type": "welcome_screen", "settings": {}},
    {"type": "multiple_choice", "settings": {"question": "Favourite colour?", "options": ["Red", "Green", "Blue"]}},
    {"type": "opinion_scale", "settings": {"question": "Rate the checkout"}},
    {"type": "thank_you", "settings": {}},
]


@pytest.fixture(autouse=True)
def reset_limits():
    """Rate limits and the dashboard cache are process-wide; start every test clean."""
    _rate_limiter.reset()
    _dashboard_cache.clear()
    yield


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db():
    with Session(engine) as session:
        yield session


@pytest.fixture
def make_user(client):
    """Return a factory creating a logged-in user: {'id', 'email', 'headers'}."""
    def _make(role="participant", first_name="Test", last_name="User"):
        email = f"{role}-{uuid.uuid4().hex[:10]}@example.com"
        if role == "admin":
            with Session(engine) as session:
                services.AuthService(session).register(email, PASSWORD, first_name, last_name, "admin", allow_admin=True)
        else:
            r = client.post("/auth/register", json={
                "email": email, "password": PASSWORD, "first_name": first_name, "last_name": last_name, "role": role,
            })
            assert r.status_code == 201, r.text
        r = client.post("/auth/login", json={"email": email, "password": PASSWORD})
        assert r.status_code == 200, r.text
        body = r.json()
        return {"id": body["user"]["id"], "email": email, "headers": {"Authorization": f"Bearer {body['access_token']}"}}
    return _make


@pytest.fixture
def make_study(client):
    """Return a factory creating a study for a researcher, active by default."""
    def _make(researcher, blocks=None, settings=None, activate=True, title="Checkout study"):
        r = client.post("/studies", headers=researcher["headers"], json={
            "title": title,
            "description": "How people use the checkout",
            "study_type": "usability",
            "settings": settings or {},
            "blocks": blocks if blocks is not None else BASIC_BLOCKS,
        })
        assert r.status_code == 201, r.text
        study = r.json()
        if activate:
            r = client.post(f"/studies/{study['id']}/status", headers=researcher["headers"], json={"status": "active"})
            assert r.status_code == 200, r.text
        return study
    return _make
