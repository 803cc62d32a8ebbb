"""Pydantic schemas for profiles and notifications.

Learn: Separate "Write" schemas (input) from "Read" schemas (output).
Email is free-form: the only rule is that it is present and a string.
"""

from typing import Optional

from pydantic import BaseModel

from profilecast.store.base import ChangeEvent, ChangeKind


class ProfileWrite(BaseModel):
    email: str


class ProfileRead(BaseModel):
    id: str
    email: str

    model_config = {"from_attributes": True}


class ProfileNotification(BaseModel):
    """Text frame sent to WebSocket subscribers for each change."""

    id: Optional[str] = None
    email: Optional[str] = None
    kind: ChangeKind

    @classmethod
    def from_event(cls, event: ChangeEvent) -> "ProfileNotification":
        if event.profile is None:
            return cls(kind=event.kind)
        return cls(kind=event.kind, id=event.profile.id, email=event.profile.email)
