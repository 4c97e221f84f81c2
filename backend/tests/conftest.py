import os

# Settings are read at import time
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import json
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pantry_scanner.main import app
from pantry_scanner.core.database import Base, get_db
from pantry_scanner.core.security import get_password_hash
from pantry_scanner.models.household import Household
from pantry_scanner.models.user import User
from pantry_scanner.services.vision_client import VisionExtractor, VisionResponse

# Create in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class ScriptedExtractor(VisionExtractor):
    """
    Stand-in for the vision model.
    `handler(prompt, image)` returns the response text, a dict (sent as
    JSON) or an exception instance to raise.
    """

    def __init__(self, handler, input_tokens=100, output_tokens=50):
        self.handler = handler
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.prompts = []

    async def complete(self, image, media_type, prompt, max_tokens=None):
        self.prompts.append(prompt)
        result = self.handler(prompt, image)
        if isinstance(result, Exception):
            raise result
        if isinstance(result, dict):
            result = json.dumps(result)
        return VisionResponse(text=result, input_tokens=self.input_tokens, output_tokens=self.output_tokens)


def is_prescan(prompt):
    return "Do NOT extract items" in prompt


def is_verification(prompt):
    return "The line numbering has gaps" in prompt


def is_chunk(prompt, section=None):
    if "CHUNK-SPECIFIC INSTRUCTIONS" not in prompt:
        return False
    return section is None or f"{section.upper()} SECTION" in prompt


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db_session):
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def test_household(db_session):
    """Create a test household."""
    household = Household(name="Test Household")
    db_session.add(household)
    db_session.commit()
    db_session.refresh(household)
    return household


@pytest.fixture(scope="function")
def test_user(db_session, test_household):
    """Create a test user belonging to the test household."""
    user = User(
        email="test@example.com",
        hashed_password=get_password_hash("testpassword"),
        full_name="Test User",
        household_id=test_household.id,
        is_active=True,
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def auth_headers(client, test_user):
    """Get authentication headers for test user."""
    response = client.post(
        "/api/v1/auth/login",
        data={"username": "test@example.com", "password": "testpassword"},
    )
    token = response.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}
