"""Pytest fixtures for AgriLens tests."""

import os

import pytest


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment variables before any imports.

    This fixture runs automatically before any tests and ensures that
    Settings never touch the filesystem or a real backend.
    """
    os.environ.setdefault("ENVIRONMENT", "test")
    os.environ.setdefault("LOG_TO_FILE", "false")
    os.environ.setdefault("LOG_LEVEL", "DEBUG")

    # Clear the settings cache to ensure tests start fresh
    from agrilens.config import get_settings

    get_settings.cache_clear()

    yield

    # Cleanup after all tests
    get_settings.cache_clear()


@pytest.fixture
def settings():
    """Settings for a test deployment with fast, predictable limits."""
    from agrilens.config import Settings

    return Settings(
        environment="test",
        log_to_file=False,
        jwt_secret="test-jwt-secret-0123456789abcdef0123",
        rate_limit_ai_max=3,
        rate_limit_ai_window_seconds=60,
        rate_limit_analysis_max=3,
        rate_limit_analysis_window_seconds=60,
        rate_limit_auth_max=5,
        rate_limit_auth_window_seconds=60,
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
