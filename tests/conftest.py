"""Shared test fixtures."""

import pytest
import tempfile
from pathlib import Path


@pytest.fixture
def temp_dir():
    """Temporary directory for tests, with symlinks resolved."""
    with tempfile.TemporaryDirectory() as d:
        yield Path(d).resolve()


@pytest.fixture
def write_source(temp_dir):
    """Write a source file into temp_dir and return its path."""

    def _write(name: str, text: str) -> Path:
        path = temp_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
        return path

    return _write


@pytest.fixture
def request_file(temp_dir):
    """Location of the durable request file."""
    return temp_dir / "rebaseline.json"


@pytest.fixture
def store(request_file):
    """Empty request store with a fresh per-run source cache."""
    from rebaseline.requests import RequestStore

    return RequestStore(request_file)


@pytest.fixture
def load_store(request_file):
    """Load the request file the way a second process would."""
    from rebaseline.requests import RequestStore
    from rebaseline.source import SourceCache

    async def _load():
        return await RequestStore.load(request_file, SourceCache())

    return _load
