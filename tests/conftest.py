"""Shared fixtures for memory tests."""

import pytest

from nanomem.memory.store import SqliteMemoryStore
from tests.fakes import CharEmbedding


@pytest.fixture
def embedding():
    return CharEmbedding()


@pytest.fixture
def store(tmp_path, embedding):
    """Store with vectors enabled."""
    s = SqliteMemoryStore(tmp_path / "memory.db", embedding=embedding)
    yield s
    s.close()


@pytest.fixture
def lexical_store(tmp_path):
    """Store without an embedding provider."""
    s = SqliteMemoryStore(tmp_path / "lexical.db")
    yield s
    s.close()
