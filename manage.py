#!/usr/bin/env python
"""
Command-line entry point for the recurring billing platform.

Typical use: ``migrate``, ``setup_subscription_tasks`` and ``qcluster`` to run
the renewal, retry and expiry workers.
"""

import os
import sys
from pathlib import Path


def load_environment() -> None:
    """Read a local .env file when one sits next to this script."""
    env_path = Path(__file__).resolve().parent / ".env"
    if not env_path.exists():
        return

    from dotenv import load_dotenv  # noqa: PLC0415

    load_dotenv(env_path)
    print("✅ [Environment] Loaded .env file")


def main() -> None:
    load_environment()

    # Development settings unless the environment says otherwise
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.dev")

    from django.core.management import execute_from_command_line  # noqa: PLC0415

    execute_from_command_line(sys.argv)


if __name__ == "__main__":
    main()
