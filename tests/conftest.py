"""Pytest configuration and fixtures."""

import os

import pytest

from tests.fakes.fake_db import FakeDB
from tests.fakes.fake_provider import FakeProvider

TEST_ENV = {
    "SUPABASE_URL": "https://test.supabase.co",
    "SUPABASE_SERVICE_ROLE_KEY": "test-key",
    "OPENAI_API_KEY": "test-openai-key",
    "APP_ENV": "test",
    "BACKGROUND_TASKS_ENABLED": "false",
    "FEATURE_EMBEDDING": "false",
}


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    for key, value in TEST_ENV.items():
        os.environ[key] = value


@pytest.fixture
def fake_db(monkeypatch):
    """In-memory database wired into every app.db module."""
    return FakeDB().install(monkeypatch)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def generator(fake_provider):
    from app.core.embedding_generator import EmbeddingGenerator

    return EmbeddingGenerator(fake_provider, enabled=True)


@pytest.fixture
def make_settings():
    """Build Settings with test values, keyword overrides win."""
    from app.core.config import Settings

    def _make(**overrides):
        values = {
            "SUPABASE_URL": TEST_ENV["SUPABASE_URL"],
            "SUPABASE_SERVICE_ROLE_KEY": TEST_ENV["SUPABASE_SERVICE_ROLE_KEY"],
            "OPENAI_API_KEY": TEST_ENV["OPENAI_API_KEY"],
            "FEATURE_EMBEDDING": True,
            "BACKGROUND_TASKS_ENABLED": False,
            "RECONCILE_SLEEP_BETWEEN_BATCHES_SECONDS": 0,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def pipeline(fake_db, fake_provider, make_settings):
    """Pipeline wired to the in-memory database and fake providers."""
    from app.core.pipeline import build_pipeline

    return build_pipeline(
        make_settings(),
        embedding_provider=fake_provider,
        chat_provider=FakeProvider(),
    )
