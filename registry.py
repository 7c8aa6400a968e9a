"""
Room registry: keeps local room records in step with the provider.

The provider decides whether a session is live; the store owns room names
and the breakout hierarchy. Archival only ever moves a room from live to
archived, and every write goes through the store's revision check.
"""
import asyncio
import logging
import random
import time
from typing import Callable, List, Optional

from database import RoomStore
from errors import (
    ConflictError,
    DuplicateBreakoutError,
    PersistenceError,
    RoomArchivedError,
    RoomError,
    RoomNotFound,
    SessionNotFound,
)
from provider import ProviderGateway
from schemas import BreakoutRoom, MainRoom, ReconciliationReport, RoomStatus, Session, WriteResult

logger = logging.getLogger(__name__)


class RoomRegistry:
    def __init__(
        self,
        store: RoomStore,
        provider: ProviderGateway,
        live_session_limit: int = 500,
        max_attempts: int = 10,
        retry_backoff: float = 0.05,
        allow_breakout_on_archived: bool = False,
        room_prefix: str = "room",
        orphan_grace_seconds: float = 300,
    ):
        self.store = store
        self.provider = provider
        self.live_session_limit = live_session_limit
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.allow_breakout_on_archived = allow_breakout_on_archived
        self.room_prefix = room_prefix
        self.orphan_grace_seconds = orphan_grace_seconds

    async def close(self) -> None:
        await self.provider.close()
        await self.store.close()

    async def create_main_room(self, name: str) -> MainRoom:
        session = await self.provider.create_session(name)
        room = MainRoom(id=session.id, name=name)
        try:
            room = await self.store.insert(room)
        except (PersistenceError, ConflictError):
            logger.error("Remote session %s ('%s') has no local record after a failed write", session.id, name)
            raise
        logger.info("Created main room %s ('%s')", room.id, room.name)
        return room

    async def create_breakout_room(self, name: str, parent_id: str) -> MainRoom:
        """Create a remote session and attach it under `parent_id`.

        Returns the parent with its updated breakout list.
        """
        parent = await self.store.get(parent_id)
        self._check_parent(parent)

        session = await self.provider.create_session(name)
        owner = await self.store.find_parent_of(session.id)
        if owner is not None:
            raise DuplicateBreakoutError(session.id, owner.id)
        breakout = BreakoutRoom(id=session.id, name=name)

        def attach(room: MainRoom) -> MainRoom:
            self._check_parent(room)
            if room.has_breakout(breakout.id):
                raise DuplicateBreakoutError(breakout.id, room.id)
            room.breakouts.append(breakout)
            return room

        try:
            parent = await self._update(parent_id, attach)
        except (PersistenceError, ConflictError):
            logger.error(
                "Remote session %s ('%s') was not attached to %s", session.id, name, parent_id
            )
            raise
        logger.info("Attached breakout %s ('%s') to %s", breakout.id, name, parent.id)
        return parent

    def _check_parent(self, room: MainRoom) -> None:
        if room.archived and not self.allow_breakout_on_archived:
            raise RoomArchivedError(room.id)

    async def _update(self, room_id: str, mutate: Callable[[MainRoom], Optional[MainRoom]]) -> MainRoom:
        """Read-modify-write with bounded retries on revision conflicts.

        `mutate` returns None when the stored record needs no change.
        """
        attempt = 0
        while True:
            attempt += 1
            room = await self.store.get(room_id)
            changed = mutate(room)
            if changed is None:
                return room
            try:
                return await self.store.put(changed)
            except ConflictError as e:
                if attempt >= self.max_attempts:
                    raise ConflictError(
                        f"Room '{room_id}' still contended after {attempt} attempts"
                    ) from e
                logger.debug("Conflict on %s (attempt %d): %s", room_id, attempt, e)
                await asyncio.sleep(random.uniform(0, self.retry_backoff * attempt))

    async def reconcile_active_rooms(self) -> ReconciliationReport:
        """Archive every unarchived room the provider no longer lists as live.

        Each stale room is re-read and archived through the retrying update. A
        room some concurrent caller archived first counts as done, not failed.
        """
        live = await self.provider.list_live_sessions(self.live_session_limit)
        live_ids = {session.id for session in live}
        candidates = await self.store.find_by_archived(False)

        stale = [room.id for room in candidates if room.id not in live_ids]
        outcomes = await asyncio.gather(*(self._archive_room(room_id) for room_id in stale), return_exceptions=True)
        archived: List[str] = []
        failures: List[WriteResult] = []
        for room_id, outcome in zip(stale, outcomes):
            if isinstance(outcome, RoomError):
                logger.warning("Could not archive room %s: %s", room_id, outcome)
                failures.append(WriteResult(room_id=room_id, ok=False, error=str(outcome)))
            elif isinstance(outcome, BaseException):
                raise outcome
            elif outcome:
                archived.append(room_id)

        rooms = await self.store.find_by_archived(False)
        logger.info(
            "Reconciled rooms: %d live at provider, %d archived, %d failed, %d active",
            len(live_ids), len(archived), len(failures), len(rooms),
        )
        return ReconciliationReport(rooms=rooms, archived=archived, failures=failures)

    async def _archive_room(self, room_id: str) -> bool:
        """Archive one room; False when it was already archived."""
        changed = False

        def mark(room: MainRoom) -> Optional[MainRoom]:
            nonlocal changed
            changed = not room.archived
            return _archive(room)

        await self._update(room_id, mark)
        return changed

    async def get_main_room_status(self, room_id: str) -> RoomStatus:
        room = await self.store.get(room_id)
        if room.archived:
            return RoomStatus(room=room, active=False)

        try:
            session = await self.provider.fetch_session(room_id)
            live = session.live
        except SessionNotFound:
            live = False
        if live:
            return RoomStatus(room=room, active=True)

        room = await self._update(room_id, _archive)
        logger.info("Archived room %s after provider reported it ended", room_id)
        return RoomStatus(room=room, active=False)

    async def issue_access_credential(self, identity: str, room_id: str) -> str:
        return await self.provider.mint_credential(identity, room_id)

    async def sweep_orphaned_sessions(self, terminate: bool = False) -> List[Session]:
        """Live sessions this service created that have no local main or breakout record.

        Only rooms named with our prefix are considered, and sessions younger
        than the grace period are skipped since their creation may still be
        in flight. With `terminate`, each orphan is also ended at the provider.
        """
        live = await self.provider.list_live_sessions(self.live_session_limit)
        cutoff = time.time() - self.orphan_grace_seconds
        candidates = [s for s in live if self._owned(s) and s.created_at is not None and s.created_at <= cutoff]
        orphans = [session for session in candidates if not await self._is_known(session.id)]

        for session in orphans:
            logger.warning("Session %s ('%s') has no local record", session.id, session.name)
            if not terminate:
                continue
            try:
                await self.provider.end_session(session.id)
            except SessionNotFound:
                logger.info("Orphaned session %s already ended", session.id)
            else:
                logger.info("Ended orphaned session %s", session.id)
        return orphans

    def _owned(self, session: Session) -> bool:
        return bool(session.room_name) and session.room_name.startswith(f"{self.room_prefix}-")

    async def _is_known(self, session_id: str) -> bool:
        try:
            await self.store.get(session_id)
            return True
        except RoomNotFound:
            return await self.store.find_parent_of(session_id) is not None

    async def run_periodic_reconciliation(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reconcile_active_rooms()
            except RoomError:
                logger.exception("Background reconciliation failed")


def _archive(room: MainRoom) -> Optional[MainRoom]:
    if room.archived:
        return None
    room.archived = True
    return room
