"""Shared pytest configuration for outboard tests."""

from collections.abc import Iterator
from pathlib import Path

import pytest

from outboard import configure
from outboard import reset_settings

FIXTURES_DIR: Path = Path(__file__).resolve().parent / "fixtures"


@pytest.fixture(autouse=True, scope="session")
def _companion_settings() -> Iterator[None]:
    """Point the companion at the fixture modules before it first spawns.

    :yields: Control to the test session.
    """
    configure(modules_root=FIXTURES_DIR, call_timeout=30.0)
    yield
    reset_settings()
