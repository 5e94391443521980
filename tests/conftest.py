# ===============================================================================
# PYTEST CONFIGURATION FOR THE RECURRING BILLING PLATFORM
# ===============================================================================
"""
Global test configuration.

Test Structure:
- tests/ mirrors apps/ structure for app-specific tests
- tests/factories/ holds plain factory functions and test doubles
- Naming convention: test_{feature}.py

Test Discovery:
- Run subscription tests: pytest tests/subscriptions/
- Run all tests: pytest tests/
"""

import os

import django


def pytest_configure():
    """Configure Django settings for pytest"""
    os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings.test')

    # Configure Django
    django.setup()


# ===============================================================================
# PYTEST FIXTURES
# ===============================================================================

import pytest  # noqa: E402

from apps.subscriptions.config import reset_config_cache  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_subscription_config():
    """Structured settings are cached per process; start every test from settings."""
    reset_config_cache()
    yield
    reset_config_cache()
