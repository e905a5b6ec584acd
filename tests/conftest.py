"""Shared fixtures: a fresh file-backed store per test."""

from __future__ import annotations

from typing import Any, Dict

import pytest
import pytest_asyncio

from training_log.db import Store
from training_log.settings import get_settings


@pytest.fixture(autouse=True)
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'training.db'}"


@pytest_asyncio.fixture
async def store(db_url):
    """A seeded store: six body parts, six empty template slots."""
    s = await Store.open(db_url)
    yield s
    await s.close()


@pytest_asyncio.fixture
async def empty_store(tmp_path):
    """A store that was opened without seeding."""
    s = await Store.open(f"sqlite:///{tmp_path / 'empty.db'}", seed=False)
    yield s
    await s.close()


def make_document(schema_version: Any = 1, **data: Any) -> Dict[str, Any]:
    """A wire-format backup document; collections not given are empty."""
    keys = ("bodyParts", "exercises", "workoutLogs", "sets", "templates", "meta")
    return {
        "schemaVersion": schema_version,
        "exportedAt": "2025-01-10T08:00:00Z",
        "data": {key: data.get(key, []) for key in keys},
    }
