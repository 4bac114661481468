"""
Pytest configuration and fixtures
"""

import asyncio
import json
import os
import pytest
from unittest.mock import AsyncMock, MagicMock

# Set test environment variables before importing callbridge modules
os.environ.setdefault("TWILIO_ACCOUNT_SID", "ACtest")
os.environ.setdefault("TWILIO_AUTH_TOKEN", "test-auth-token")
os.environ.setdefault("ELEVENLABS_API_KEY", "test-elevenlabs-key")
os.environ.setdefault("ELEVENLABS_AGENT_IDS", "default-agent")
os.environ.setdefault("SERVER_DOMAIN", "bridge.example.com")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")

from fastapi.testclient import TestClient

from callbridge.db import set_repository
from callbridge.db.adapters.memory import InMemoryTenantRepository
from callbridge.models.tenant import AgentConfig, ClientMeta, Tenant
from callbridge.services.session_store import InMemorySessionStore, set_session_store


def make_tenant(**overrides) -> Tenant:
    data = dict(
        tenant_id="acme",
        cal_id="cal-1",
        agent_id="agent-primary",
        twilio_phone_number="+15550000001",
        client_meta=ClientMeta(
            full_name="Jane Roe",
            phone="+15559990000",
            business_name="Acme Dental",
            email="jane@acme.test",
        ),
        additional_agents=[
            AgentConfig(agent_id="agent-second", twilio_phone_number="+15550000002", agent_name="Evening line")
        ],
    )
    data.update(overrides)
    return Tenant(**data)


class FakeCarrier:
    """Stand-in for the Twilio media stream socket"""

    def __init__(self):
        self.sent = []
        self.closed = False

    async def send_text(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True


class FakeVendor:
    """Stand-in for the ElevenLabs conversation socket"""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def feed(self, message) -> None:
        self._incoming.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


def run_sync(coro):
    """Run a coroutine from synchronous test code without touching the current event loop"""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def settle(predicate, attempts: int = 200) -> None:
    """Let background tasks run until predicate() holds"""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def repository():
    """Fresh in-memory tenant store installed as the process singleton"""
    repo = InMemoryTenantRepository()
    set_repository(repo)
    yield repo
    set_repository(None)


@pytest.fixture
def sessions():
    store = InMemorySessionStore(ttl_seconds=60)
    set_session_store(store)
    yield store
    set_session_store(None)


@pytest.fixture
def tenant():
    return make_tenant()


@pytest.fixture
def seeded_repository(repository, tenant):
    """Tenant store holding the sample tenant"""
    run_sync(repository.create_tenant(tenant))
    return repository


@pytest.fixture
def mock_twilio_service():
    """Mocked Twilio service with successful responses"""
    service = MagicMock()
    service.create_call = AsyncMock(return_value={"success": True, "call_sid": "CAagent", "status": "queued"})
    service.get_call = AsyncMock(return_value={"success": True, "call_sid": "CA123", "from": "+15550000001"})
    service.update_call = AsyncMock(return_value={"success": True, "call_sid": "CA123", "status": "in-progress"})
    service.generate_hold_conference_twiml = MagicMock(return_value="<Response><Dial><Conference /></Dial></Response>")
    service.generate_agent_conference_twiml = MagicMock(return_value="<Response><Dial><Conference /></Dial></Response>")
    return service


@pytest.fixture
def test_client(seeded_repository, sessions):
    """Fixture for test client"""
    from callbridge.main import app
    with TestClient(app) as client:
        yield client
