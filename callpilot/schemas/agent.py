"""
Output schemas requested from the model service.

The JSON schemas are sent with each request; the pydantic models parse the
answer. Keys are camelCase on the wire to match the schema the model sees.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from callpilot.logging_config import get_logger
from callpilot.schemas.call import NO_SUMMARY

logger = get_logger(__name__)

_DATETIME = TypeAdapter(datetime)


def lenient_datetime(value: Any, field: str) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp. Anything unparseable becomes None."""
    if value is None or value == "":
        return None
    try:
        return _DATETIME.validate_python(value)
    except ValidationError:
        logger.warning("unparseable_timestamp_dropped", field=field, value=str(value)[:100])
        return None


class FollowUpSchedule(BaseModel):
    time: Optional[datetime] = None
    notes: Optional[str] = None

    @field_validator("time", mode="before")
    @classmethod
    def _lenient_time(cls, value: Any) -> Optional[datetime]:
        return lenient_datetime(value, "followUp.schedule.time")


class FollowUp(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    next_steps: Optional[str] = Field(default=None, alias="nextSteps")
    schedule: Optional[FollowUpSchedule] = None

    @property
    def schedule_time(self) -> Optional[datetime]:
        return self.schedule.time if self.schedule else None

    @property
    def has_content(self) -> bool:
        return bool(self.next_steps) or self.schedule_time is not None


class IntentSignal(BaseModel):
    label: str
    confidence: float = 0.5

    @field_validator("confidence")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return min(1.0, max(0.0, value))


class AgentTurn(BaseModel):
    """One generated assistant turn."""

    model_config = ConfigDict(populate_by_name=True)

    reply: str = ""
    should_hangup: bool = Field(default=False, alias="shouldHangup")
    follow_up: Optional[FollowUp] = Field(default=None, alias="followUp")
    intent: Optional[IntentSignal] = None

    @field_validator("reply", mode="before")
    @classmethod
    def _null_reply(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("should_hangup", mode="before")
    @classmethod
    def _null_hangup(cls, value: Any) -> Any:
        return False if value is None else value


class SummaryResult(BaseModel):
    """Post-call summary produced from the full transcript."""

    model_config = ConfigDict(populate_by_name=True)

    summary: str = NO_SUMMARY
    next_steps: Optional[str] = Field(default=None, alias="nextSteps")
    follow_up_by: Optional[datetime] = Field(default=None, alias="followUpBy")

    @field_validator("summary", mode="before")
    @classmethod
    def _null_summary(cls, value: Any) -> Any:
        return value or NO_SUMMARY

    @field_validator("follow_up_by", mode="before")
    @classmethod
    def _lenient_follow_up_by(cls, value: Any) -> Optional[datetime]:
        return lenient_datetime(value, "followUpBy")


AGENT_TURN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "reply": {"type": "string"},
        "shouldHangup": {"type": "boolean"},
        "followUp": {
            "type": "object",
            "properties": {
                "nextSteps": {"type": "string"},
                "schedule": {
                    "type": "object",
                    "properties": {
                        "time": {"type": "string", "description": "ISO 8601 timestamp"},
                        "notes": {"type": "string"},
                    },
                    "required": ["time"],
                },
            },
        },
        "intent": {
            "type": "object",
            "properties": {
                "label": {"type": "string"},
                "confidence": {"type": "number"},
            },
            "required": ["label", "confidence"],
        },
    },
    "required": ["reply", "shouldHangup"],
}

CALL_SUMMARY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "summary": {"type": "string"},
        "nextSteps": {"type": "string"},
        "followUpBy": {"type": ["string", "null"], "description": "ISO 8601 timestamp or null"},
    },
    "required": ["summary"],
}
