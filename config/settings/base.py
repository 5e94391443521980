"""
Django settings for the recurring billing platform - Base Configuration
"""

import os
from pathlib import Path
from typing import Any

# ===============================================================================
# CORE DJANGO SETTINGS
# ===============================================================================

BASE_DIR = Path(__file__).resolve().parent.parent.parent

# Application definition
DJANGO_APPS: list[str] = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
]

THIRD_PARTY_APPS: list[str] = [
    'django_q',
]

LOCAL_APPS: list[str] = [
    'apps.common',
    'apps.subscriptions',  # 💳 Recurring billing engine
]

INSTALLED_APPS: list[str] = DJANGO_APPS + THIRD_PARTY_APPS + LOCAL_APPS

# ===============================================================================
# DATABASE CONFIGURATION
# ===============================================================================

DATABASES: dict[str, dict[str, Any]] = {
    'default': {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': os.environ.get('DB_NAME', 'billing'),
        'USER': os.environ.get('DB_USER', 'billing'),
        'PASSWORD': os.environ.get('DB_PASSWORD', 'development_password'),
        'HOST': os.environ.get('DB_HOST', 'localhost'),
        'PORT': os.environ.get('DB_PORT', '5432'),
        'CONN_MAX_AGE': 60,  # Database connection pooling
    }
}

# ===============================================================================
# INTERNATIONALIZATION & LOCALIZATION
# ===============================================================================

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# ===============================================================================
# DJANGO-Q2 ASYNC TASK PROCESSING 🚀
# ===============================================================================

# Base queue cluster configuration
Q_CLUSTER_BASE = {
    'name': 'billing-cluster',
    'timeout': 300,  # 5 minutes
    'retry': 600,  # 10 minutes retry delay
    'save_limit': 1000,  # Keep last 1000 task results
    'catch_up': False,  # Missed renewals are picked up by the retry sweep instead
    'orm': 'default',  # Use the database as broker
    'bulk': 10,
    'queue_limit': 100,
}

# Default production configuration (overridden in environment-specific settings)
Q_CLUSTER = {
    **Q_CLUSTER_BASE,
    'workers': 2,
    'recycle': 500,
    'sync': False,
}

# ===============================================================================
# SUBSCRIPTIONS 💳
# ===============================================================================

# Automatic retries of failed renewal payments
SUBSCRIPTIONS_RETRY_ENABLED = os.environ.get('SUBSCRIPTIONS_RETRY_ENABLED', 'true').lower() == 'true'

# Per-gateway retry rule lists, e.g. {'bank_transfer': [...]}; others use the defaults
SUBSCRIPTIONS_GATEWAY_RETRY_RULES: dict[str, list[dict[str, Any]]] = {}

# Plan switch proration: recurring_price, sign_up_fee and length modes
SUBSCRIPTIONS_PRORATION = {
    'recurring_price': os.environ.get('SUBSCRIPTIONS_PRORATE_RECURRING', 'never'),
    'sign_up_fee': os.environ.get('SUBSCRIPTIONS_PRORATE_SIGN_UP_FEE', 'never'),
    'length': os.environ.get('SUBSCRIPTIONS_PRORATE_LENGTH', 'never'),
}

SUBSCRIPTIONS_PRICE_DECIMALS = 2

# Status after a failed renewal with no retry left: 'on-hold' or 'cancelled'
SUBSCRIPTIONS_FAILED_PAYMENT_STATUS = 'on-hold'

# Cancel instead of suspending after this many suspensions (0 = never)
SUBSCRIPTIONS_MAX_SUSPENSIONS = int(os.environ.get('SUBSCRIPTIONS_MAX_SUSPENSIONS', '0'))

# ===============================================================================
# DEFAULT AUTO FIELD
# ===============================================================================

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# ===============================================================================
# SECURITY SETTINGS (Base - override in prod.py)
# ===============================================================================

# SECRET_KEY validation for production security
SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY')
if not SECRET_KEY:
    # Development fallback - never use this in production
    import warnings
    warnings.warn(
        "🚨 SECURITY WARNING: Using default SECRET_KEY. "
        "Set DJANGO_SECRET_KEY environment variable for production!",
        UserWarning,
        stacklevel=2
    )
    SECRET_KEY = 'django-insecure-dev-key-only-change-in-production-or-tests'  # noqa: S105


def validate_production_secret_key() -> None:
    """Validate SECRET_KEY meets production security requirements"""
    if SECRET_KEY and SECRET_KEY.startswith('django-insecure-'):
        raise ValueError(
            "🔥 CRITICAL SECURITY ERROR: Cannot use insecure SECRET_KEY in production! "
            "Generate a secure key: python -c 'from django.core.management.utils import get_random_secret_key; print(get_random_secret_key())'"
        )
