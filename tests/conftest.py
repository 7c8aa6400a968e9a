import asyncio
import time

import pytest

from database import MemoryRoomStore
from errors import ProviderError, SessionNotFound
from provider import ProviderGateway
from registry import RoomRegistry
from schemas import Session


class FakeGateway(ProviderGateway):
    """In-process stand-in for the video provider."""

    def __init__(self):
        self.sessions = {}
        self.ended = []
        self.fail_create = False
        self.next_ids = []
        self.session_age = 3600
        self._counter = 0

    async def create_session(self, name):
        await asyncio.sleep(0)
        if self.fail_create:
            raise ProviderError("create room failed: provider unavailable")
        if self.next_ids:
            sid = self.next_ids.pop(0)
        else:
            self._counter += 1
            sid = f"RM{self._counter:04d}"
        self.sessions[sid] = Session(
            id=sid, name=name, room_name=f"room-{sid}", created_at=time.time() - self.session_age
        )
        return self.sessions[sid]

    async def list_live_sessions(self, limit):
        await asyncio.sleep(0)
        return [s for s in self.sessions.values() if s.live][:limit]

    async def fetch_session(self, session_id):
        await asyncio.sleep(0)
        if session_id not in self.sessions:
            raise SessionNotFound(session_id)
        return self.sessions[session_id]

    async def end_session(self, session_id):
        await self.fetch_session(session_id)
        self.finish(session_id)
        self.ended.append(session_id)

    async def mint_credential(self, identity, session_id):
        session = await self.fetch_session(session_id)
        return f"token:{identity}:{session.id}"

    def finish(self, session_id):
        self.sessions[session_id] = self.sessions[session_id].model_copy(update={"status": "completed"})

    def forget(self, session_id):
        del self.sessions[session_id]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def store():
    return MemoryRoomStore()


@pytest.fixture
def registry(store, gateway):
    return RoomRegistry(store, gateway, retry_backoff=0)
