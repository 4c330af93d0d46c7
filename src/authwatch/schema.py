"""Data models shared across authwatch.

Events are immutable once created by the parser; downstream consumers
may copy them but never mutate them.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class EventKind(str, Enum):
    """Outcome of an SSH authentication attempt."""

    SUCCESS = "success"
    FAILURE = "failure"


class Event(BaseModel):
    """A single SSH login attempt extracted from a log message."""

    model_config = ConfigDict(frozen=True)

    ts: datetime = Field(..., description="When the attempt happened")
    kind: EventKind
    username: str
    ip: str
    port: int = Field(default=0, description="Source port, 0 if unparsable")
    method: str = Field(..., description="password or publickey")
    invalid_user: bool = Field(default=False, description="Failures only")

    @property
    def is_success(self) -> bool:
        return self.kind == EventKind.SUCCESS


class Location(BaseModel):
    """GeoIP location for a source address."""

    model_config = ConfigDict(frozen=True)

    country: str = ""
    city: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.country and not self.city
