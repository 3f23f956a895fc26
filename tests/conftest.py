"""
Shared fixtures.
"""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from ai_usage_monitor.storage.models import Provider, ProviderKind
from ai_usage_monitor.storage.repository import MetricsStore

# Wednesday, mid-month; week starts Monday 2024-05-13
NOW = datetime(2024, 5, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest_asyncio.fixture
async def store(tmp_path):
    """Store backed by a fresh database file."""
    store = MetricsStore(str(tmp_path / "monitor.db"))
    await store.initialize_schema()
    return store


@pytest.fixture
def openai_provider():
    return Provider(id="openai-main", name="OpenAI", kind=ProviderKind.OPENAI)


@pytest.fixture
def anthropic_provider():
    return Provider(id="anthropic-main", name="Anthropic", kind=ProviderKind.ANTHROPIC)


@pytest.fixture
def openrouter_provider():
    return Provider(id="openrouter", name="OpenRouter", kind=ProviderKind.OPENROUTER)
