"""
Error taxonomy for the video rooms service.

Every failure the registry surfaces derives from RoomError, so the API layer
can translate any of them into a client-facing payload.
"""


class RoomError(Exception):
    """Base class for registry failures."""


class RoomNotFound(RoomError):
    def __init__(self, room_id: str):
        super().__init__(f"Room '{room_id}' not found")
        self.room_id = room_id


class ConflictError(RoomError):
    """A write was rejected because the stored record changed underneath it."""


class RoomArchivedError(ConflictError):
    def __init__(self, room_id: str):
        super().__init__(f"Room '{room_id}' is archived and cannot take new breakout rooms")
        self.room_id = room_id


class DuplicateBreakoutError(ConflictError):
    def __init__(self, breakout_id: str, parent_id: str):
        super().__init__(f"Breakout room '{breakout_id}' is already attached to '{parent_id}'")
        self.breakout_id = breakout_id
        self.parent_id = parent_id


class ProviderError(RoomError):
    """Remote session call failed or timed out."""


class SessionNotFound(ProviderError):
    def __init__(self, session_id: str):
        super().__init__(f"Session '{session_id}' not found at provider")
        self.session_id = session_id


class PersistenceError(RoomError):
    """Store read or write failed."""
