from datetime import datetime
from typing import Any, Dict, List, Optional

import fakeredis
import pytest
import pytest_asyncio

from livechat.database import create_engine, create_sessionmaker, init_models
from livechat.models import OperatorStatus
from livechat.realtime.gateway import Gateway
from livechat.services.messages import MessageLog
from livechat.services.notifications import NotificationDispatcher, Notifier
from livechat.services.operators import OperatorRegistry
from livechat.services.sessions import SessionStore


class RecordingEmitter:
    """Keeps every event the gateway hands to the transport."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    async def send(self, handle, event, data):
        self.events.append({"handle": handle, "event": event, "data": data, "broadcast": False})

    async def broadcast(self, event, data, skip=None):
        self.events.append({"handle": None, "event": event, "data": data, "broadcast": True, "skip": skip})

    def named(self, event: str, handle: Optional[str] = None) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["event"] == event and (handle is None or e["handle"] == handle)]

    def clear(self):
        self.events.clear()


class RecordingSender:
    """Notification sender whose outcomes are scripted; defaults to success."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls: List[Dict[str, Any]] = []
        self.delivered: List[Dict[str, Any]] = []

    async def send(self, payload):
        self.calls.append(payload)
        outcome = self.outcomes.pop(0) if self.outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        if outcome:
            self.delivered.append(payload)
        return outcome


@pytest_asyncio.fixture
async def engine():
    engine = create_engine("sqlite+aiosqlite://")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return create_sessionmaker(engine)


@pytest.fixture
def sessions(sessionmaker):
    return SessionStore(sessionmaker)


@pytest.fixture
def messages(sessionmaker):
    return MessageLog(sessionmaker)


@pytest_asyncio.fixture
async def cache():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def operators(sessionmaker):
    return OperatorRegistry(sessionmaker)


@pytest.fixture
def make_operator(operators):
    async def factory(
        operator_id: str,
        status: OperatorStatus = OperatorStatus.ONLINE,
        name: Optional[str] = None,
        last_active_at: Optional[datetime] = None,
        registry: Optional[OperatorRegistry] = None,
    ):
        registry = registry or operators
        name = name or f"Operator {operator_id}"
        operator = await registry.create(name, f"{operator_id}@example.com", operator_id=operator_id)
        if status != OperatorStatus.OFFLINE:
            operator = (await registry.set_status(operator_id, status)).operator
        if last_active_at is not None:
            async with registry._db() as db, db.begin():
                row = await db.get(type(operator), operator_id)
                row.last_active_at = last_active_at
            operator = await registry.get(operator_id)
        return operator

    return factory


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def dispatcher(sender):
    return NotificationDispatcher(sender, max_attempts=3, retry_delay=0)


@pytest.fixture
def emitter():
    return RecordingEmitter()


@pytest_asyncio.fixture
async def gateway(sessions, messages, operators, dispatcher, emitter):
    gateway = Gateway(sessions, messages, operators, notifier=Notifier([dispatcher]), emitter=emitter)
    yield gateway
    await dispatcher.close()


@pytest.fixture
def make_sender():
    return RecordingSender
