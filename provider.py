"""LiveKit gateway for remote video sessions.

Creates sessions, lists the live ones, looks up a single session and mints
join tokens. LiveKit keys rooms by name, so every session gets a generated
unique room name; the display name travels in the room metadata and the
provider-assigned sid is the identifier the rest of the service uses.
"""

import asyncio
import json
import logging
import secrets
import time
from datetime import timedelta
from typing import List, Optional

import aiohttp
from livekit import api
from livekit.api.room_service import RoomService

from config import Settings
from errors import ProviderError, SessionNotFound
from schemas import Session

logger = logging.getLogger(__name__)

LIVE = "in-progress"
COMPLETED = "completed"


class ProviderGateway:
    """Remote session operations; every call is a round trip that may fail."""

    async def create_session(self, name: str) -> Session:
        raise NotImplementedError

    async def list_live_sessions(self, limit: int) -> List[Session]:
        raise NotImplementedError

    async def fetch_session(self, session_id: str) -> Session:
        raise NotImplementedError

    async def end_session(self, session_id: str) -> None:
        raise NotImplementedError

    async def mint_credential(self, identity: str, session_id: str) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class LiveKitGateway(ProviderGateway):
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._session: Optional[aiohttp.ClientSession] = None
        self._room_service: Optional[RoomService] = None

    async def _ensure_service(self) -> RoomService:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._room_service = None

        if self._room_service is None:
            self._room_service = RoomService(
                self._session,
                self.settings.livekit_url,
                self.settings.livekit_api_key,
                self.settings.livekit_api_secret,
            )

        return self._room_service

    async def close(self) -> None:
        """Close aiohttp session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        self._room_service = None

    async def _call(self, what: str, coro):
        timeout = self.settings.provider_timeout_seconds
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.warning("LiveKit %s timed out after %ss", what, timeout)
            raise ProviderError(f"{what} timed out after {timeout}s") from e
        except Exception as e:
            raise ProviderError(f"{what} failed: {e}") from e

    def generate_room_name(self) -> str:
        """Room name in format: {prefix}-{timestamp}-{random}"""
        timestamp = int(time.time())
        random_suffix = secrets.token_hex(4)
        return f"{self.settings.room_prefix}-{timestamp}-{random_suffix}"

    @staticmethod
    def _display_name(room: api.Room) -> str:
        try:
            meta = json.loads(room.metadata) if room.metadata else {}
        except ValueError:
            meta = {}
        if isinstance(meta, dict) and meta.get("displayName"):
            return meta["displayName"]
        return room.name

    def _to_session(self, room: api.Room) -> Session:
        return Session(
            id=room.sid,
            name=self._display_name(room),
            status=LIVE,
            room_name=room.name,
            created_at=float(room.creation_time) if room.creation_time else None,
        )

    async def _list_rooms(self) -> List[api.Room]:
        service = await self._ensure_service()
        response = await self._call("list rooms", service.list_rooms(api.ListRoomsRequest()))
        return list(response.rooms)

    async def _find_room(self, session_id: str) -> api.Room:
        for room in await self._list_rooms():
            if room.sid == session_id:
                return room
        raise SessionNotFound(session_id)

    async def create_session(self, name: str) -> Session:
        service = await self._ensure_service()
        room = await self._call(
            f"create room '{name}'",
            service.create_room(
                api.CreateRoomRequest(
                    name=self.generate_room_name(),
                    empty_timeout=self.settings.empty_timeout_seconds,
                    metadata=json.dumps({"displayName": name}),
                )
            ),
        )
        return self._to_session(room)

    async def list_live_sessions(self, limit: int) -> List[Session]:
        # LiveKit only lists rooms that are still open
        rooms = await self._list_rooms()
        return [self._to_session(room) for room in rooms[:limit]]

    async def fetch_session(self, session_id: str) -> Session:
        return self._to_session(await self._find_room(session_id))

    async def end_session(self, session_id: str) -> None:
        room = await self._find_room(session_id)
        service = await self._ensure_service()
        await self._call(f"delete room '{room.name}'", service.delete_room(api.DeleteRoomRequest(room=room.name)))

    async def mint_credential(self, identity: str, session_id: str) -> str:
        """JWT granting `identity` join, publish and subscribe rights on the session's room."""
        room = await self._find_room(session_id)
        token = api.AccessToken(self.settings.livekit_api_key, self.settings.livekit_api_secret)
        token.with_identity(identity)
        token.with_name(identity)
        token.with_grants(
            api.VideoGrants(
                room_join=True,
                room=room.name,
                can_publish=True,
                can_subscribe=True,
                can_publish_data=True,
            )
        )
        token.with_ttl(timedelta(hours=self.settings.token_ttl_hours))
        return token.to_jwt()
