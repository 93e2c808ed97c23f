"""Test session configuration.

This module auto-loads environment variables from the project `.env` file so
tests that exercise `load_settings` see the same defaults a developer shell
would. Individual tests override values with `monkeypatch`.
"""

from __future__ import annotations

import pytest
from dotenv import load_dotenv


@pytest.fixture(scope="session", autouse=True)
def _load_dotenv_for_tests() -> None:
    # Load once per test session; no error if .env is absent.
    load_dotenv()
