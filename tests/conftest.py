# tests/conftest.py
"""Pytest configuration and fixtures"""
import pytest
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from chatpush.core.audience import AudienceResolver  # noqa: E402
from chatpush.core.dispatcher import Dispatcher  # noqa: E402
from chatpush.core.domain import Community  # noqa: E402
from chatpush.core.handlers import ChatMessageHandler, DirectSendHandler  # noqa: E402
from chatpush.core.payload import PayloadBuilder  # noqa: E402
from chatpush.core.tokens import TokenResolver  # noqa: E402
from chatpush.infra.metrics import get_metrics_collector  # noqa: E402
from tests.fakes import (  # noqa: E402
    FakePushProvider,
    InMemoryCommunityStore,
    InMemoryMessageStore,
    InMemoryUserTokenStore,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield
    get_metrics_collector().reset()


@pytest.fixture
def community():
    return Community(id="c1", name="Hikers", members=["u1", "u2", "u3"])


@pytest.fixture
def communities(community):
    return InMemoryCommunityStore([community])


@pytest.fixture
def users():
    """Only u2 has a token; u3 exists with a blank one."""
    return InMemoryUserTokenStore({"u2": "tok-u2", "u3": ""})


@pytest.fixture
def messages():
    return InMemoryMessageStore()


@pytest.fixture
def provider():
    return FakePushProvider()


@pytest.fixture
def builder():
    return PayloadBuilder()


@pytest.fixture
def chat_handler(communities, users, messages, provider, builder):
    return ChatMessageHandler(
        AudienceResolver(communities),
        TokenResolver(users),
        builder,
        Dispatcher(provider),
        messages,
    )


@pytest.fixture
def direct_handler(users, provider, builder):
    return DirectSendHandler(TokenResolver(users), builder, Dispatcher(provider))


@pytest.fixture
def chat_record():
    return {
        "communityId": "c1",
        "senderId": "u1",
        "senderName": "Al",
        "content": "hi",
        "messageType": "text",
    }
