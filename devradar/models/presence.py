"""
devradar/models/presence.py
Presence records: what a user is doing right now.
"""

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

UserStatus = Literal["online", "idle", "dnd", "offline"]


class CamelModel(BaseModel):
    """Wire models: camelCase on the wire, snake_case in Python, unknown fields ignored."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ActivityPayload(CamelModel):
    file_name: Optional[str] = Field(default=None, max_length=255)
    language: Optional[str] = Field(default=None, max_length=50)
    project: Optional[str] = Field(default=None, max_length=255)
    workspace: Optional[str] = Field(default=None, max_length=255)
    session_duration: int = Field(default=0, ge=0, description="Seconds since the editor session started")
    intensity: Optional[int] = Field(default=None, ge=0, le=100)


class PresenceRecord(CamelModel):
    user_id: str = Field(min_length=1)
    status: UserStatus
    activity: Optional[ActivityPayload] = None
    updated_at: int = Field(description="Epoch milliseconds")

    @classmethod
    def offline(cls, user_id: str, updated_at: int) -> "PresenceRecord":
        return cls(user_id=user_id, status="offline", updated_at=updated_at)
