"""
Telephony webhook events, normalized from Twilio's form-encoded callbacks.
"""

from typing import Any, Mapping, Optional

from pydantic import BaseModel


def _field(source: Mapping[str, Any], key: str) -> Optional[str]:
    value = source.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class VoiceWebhookEvent(BaseModel):
    """One invocation of the voice webhook (call connect or a spoken turn)."""

    call_id: Optional[str] = None  # explicit reference from our own callback URL
    turn: int = 0
    call_sid: Optional[str] = None
    speech_result: Optional[str] = None
    call_status: Optional[str] = None
    from_number: Optional[str] = None
    to_number: Optional[str] = None

    @classmethod
    def from_request(
        cls, query: Mapping[str, Any], form: Mapping[str, Any]
    ) -> "VoiceWebhookEvent":
        turn_raw = _field(query, "turn")
        try:
            turn = max(0, int(turn_raw)) if turn_raw else 0
        except ValueError:
            turn = 0
        return cls(
            call_id=_field(query, "callId"),
            turn=turn,
            call_sid=_field(form, "CallSid"),
            speech_result=_field(form, "SpeechResult"),
            call_status=_field(form, "CallStatus"),
            from_number=_field(form, "From"),
            to_number=_field(form, "To"),
        )


class StatusWebhookEvent(BaseModel):
    call_sid: Optional[str] = None
    call_status: Optional[str] = None

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> "StatusWebhookEvent":
        return cls(
            call_sid=_field(form, "CallSid"),
            call_status=_field(form, "CallStatus"),
        )
