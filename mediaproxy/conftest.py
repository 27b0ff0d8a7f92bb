import pytest

from mediaproxy.upstream.memory import InMemoryUpstream


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fs() -> InMemoryUpstream:
    """In-memory upstream that honours ranges unless a test says otherwise."""
    return InMemoryUpstream(chunk_size=256)
