"""
Database Schemas for the video rooms service

Each MainRoom is one document in the "room" collection, keyed by the
provider-assigned session id. Breakout rooms live embedded in their parent
and have no collection of their own.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional


class BreakoutRoom(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id", description="Provider session id")
    name: str = Field(..., description="Display name")


class MainRoom(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id", description="Provider session id")
    name: str = Field(..., description="Display name, fixed at creation")
    archived: bool = Field(False, description="Session has ended; never reset once true")
    breakouts: List[BreakoutRoom] = Field(default_factory=list)
    revision: int = Field(0, ge=0, description="Optimistic concurrency token")

    def has_breakout(self, breakout_id: str) -> bool:
        return any(b.id == breakout_id for b in self.breakouts)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)

    def to_public(self) -> dict:
        """Shape returned to API clients; the revision token stays internal."""
        return self.model_dump(by_alias=True, exclude={"revision"})


class Session(BaseModel):
    """A remote session as reported by the video provider."""

    id: str
    name: str
    status: str = "in-progress"
    room_name: Optional[str] = Field(None, description="Provider-side room name")
    created_at: Optional[float] = Field(None, description="Creation time, epoch seconds")

    @property
    def live(self) -> bool:
        return self.status == "in-progress"


class WriteResult(BaseModel):
    room_id: str
    ok: bool
    error: Optional[str] = None


class ReconciliationReport(BaseModel):
    rooms: List[MainRoom] = Field(default_factory=list, description="Non-archived rooms after the pass")
    archived: List[str] = Field(default_factory=list, description="Ids archived by this pass")
    failures: List[WriteResult] = Field(default_factory=list)


class RoomStatus(BaseModel):
    room: MainRoom
    active: bool


# --------------------- Request bodies ---------------------
class CreateMainRoomRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_name: str = Field(..., alias="roomName", min_length=1)


class CreateBreakoutRoomRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_name: str = Field(..., alias="roomName", min_length=1)
    parent_sid: str = Field(..., alias="parentSid", min_length=1)


class TokenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    identity: str = Field(..., min_length=1)
    room_sid: str = Field(..., alias="roomSid", min_length=1)


class SweepRequest(BaseModel):
    terminate: bool = False
