from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Room(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    created_at: datetime = Field(default_factory=utc_now)


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    room_id: str
    author: str
    body: str
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def sort_key(self) -> tuple:
        """Store ordering: creation time, ties broken by id."""
        return (self.created_at, self.id)


class ChangeEvent(BaseModel):
    """A committed-row-inserted notification as published by the store."""

    table: str
    type: str = "INSERT"
    record: dict[str, Any]
    commit_timestamp: datetime = Field(default_factory=utc_now)


class CreateRoomRequest(BaseModel):
    name: str


class SendMessageRequest(BaseModel):
    author: str
    body: str


class RoomDetailsResponse(BaseModel):
    room: Room
    message_count: int


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: Optional[dict[str, Any]] = None
