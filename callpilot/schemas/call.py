"""
Data models for calls, their conversation log, summaries and intents.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Written when a mid-call follow-up creates the summary row before the
# post-call summary exists. Kept distinct from "no summary at all".
PENDING_SUMMARY = "Pending summary"
NO_SUMMARY = "No summary generated."


class CallStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self.rank == _TERMINAL_RANK


_TERMINAL_RANK = 2
_STATUS_RANK = {
    CallStatus.PENDING: 0,
    CallStatus.IN_PROGRESS: 1,
    CallStatus.COMPLETED: _TERMINAL_RANK,
    CallStatus.FAILED: _TERMINAL_RANK,
    CallStatus.CANCELED: _TERMINAL_RANK,
}


class CallDirection(str, Enum):
    OUTBOUND = "OUTBOUND"
    INBOUND = "INBOUND"


class LogRole(str, Enum):
    USER = "USER"
    ASSISTANT = "ASSISTANT"
    SYSTEM = "SYSTEM"
    CONTACT = "CONTACT"  # the human on the far end of the call


class CallMetadata(BaseModel):
    """Known metadata keys; anything else is kept as-is."""

    model_config = ConfigDict(extra="allow")

    phone_number: Optional[str] = None  # manually dialed number
    from_number: Optional[str] = None
    to_number: Optional[str] = None


class Call(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    call_sid: Optional[str] = None
    direction: CallDirection
    status: CallStatus = CallStatus.PENDING
    goal: Optional[str] = None
    metadata: CallMetadata = Field(default_factory=CallMetadata)
    contact_id: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None

    @field_validator("metadata", mode="before")
    @classmethod
    def _null_metadata(cls, value: Any) -> Any:
        return {} if value is None else value


class LogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    call_id: str
    role: LogRole
    content: str
    created_at: datetime


class CallSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    call_id: str
    summary: str
    next_steps: Optional[str] = None
    follow_up_by: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.summary == PENDING_SUMMARY


class CallIntent(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    call_id: str
    label: str
    confidence: float = Field(ge=0.0, le=1.0)


class CallDetail(BaseModel):
    """A call with everything it owns, as returned by the calls API."""

    call: Call
    logs: list[LogEntry] = Field(default_factory=list)
    summary: Optional[CallSummary] = None
    intent: Optional[CallIntent] = None


def metadata_dict(metadata: CallMetadata | dict[str, Any] | None) -> dict[str, Any]:
    """Serialize metadata for storage, dropping unset known keys."""
    if metadata is None:
        return {}
    if isinstance(metadata, CallMetadata):
        return metadata.model_dump(exclude_none=True)
    return {k: v for k, v in metadata.items() if v is not None}
