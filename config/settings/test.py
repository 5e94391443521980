"""
Test settings for the recurring billing platform
Fast, isolated testing environment.
"""

from .base import *  # noqa: F403

# ===============================================================================
# TEST FLAGS
# ===============================================================================

DEBUG = False

# ===============================================================================
# TEST DATABASE (In-memory for speed)
# ===============================================================================

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
        'OPTIONS': {
            'timeout': 20,
        }
    }
}

# ===============================================================================
# DISABLE MIGRATIONS FOR FASTER TESTS
# ===============================================================================

class DisableMigrations:
    def __contains__(self, item: str) -> bool:
        return True

    def __getitem__(self, item: str) -> None:
        return None


MIGRATION_MODULES = DisableMigrations()

# ===============================================================================
# LOGGING (Minimal for tests)
# ===============================================================================

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'handlers': {
        'null': {
            'class': 'logging.NullHandler',
        },
    },
    'root': {
        'handlers': ['null'],
        'level': 'CRITICAL',
    },
}

# ===============================================================================
# TASK QUEUE (Synchronous for tests)
# ===============================================================================

Q_CLUSTER = {
    **Q_CLUSTER_BASE,  # noqa: F405
    'sync': True,
}

# ===============================================================================
# SUBSCRIPTIONS (deterministic defaults for tests)
# ===============================================================================

SUBSCRIPTIONS_RETRY_ENABLED = True
SUBSCRIPTIONS_PRORATION = {'recurring_price': 'never', 'sign_up_fee': 'never', 'length': 'never'}
SUBSCRIPTIONS_MAX_SUSPENSIONS = 0

# ===============================================================================
# SECURITY (Relaxed for tests)
# ===============================================================================

SECRET_KEY = 'django-test-key-not-secure'  # noqa: S105
ALLOWED_HOSTS = ['testserver', 'localhost', '127.0.0.1']

# Explicit test flag
TESTING = True
