"""
Telephony provider integration (Twilio).

Two halves: the REST client used to originate and hang up calls, and the
TwiML markup returned from the voice webhook. The Twilio REST client is
synchronous, so calls to it run in a worker thread.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional
from urllib.parse import urlencode

from twilio.base.exceptions import TwilioException
from twilio.request_validator import RequestValidator
from twilio.rest import Client
from twilio.twiml.voice_response import VoiceResponse

from callpilot.config import Settings
from callpilot.errors import ConfigurationError, ProviderError
from callpilot.logging_config import get_logger

logger = get_logger(__name__)

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]

APOLOGY_TEXT = "We could not locate your call record. Goodbye."
UNAVAILABLE_TEXT = "Sorry, we are having technical difficulties. Please call back later. Goodbye."
RETRY_TEXT = "Sorry, I didn't quite catch that. Could you say that again?"
GOODBYE_TEXT = "Thank you. Goodbye."


def voice_callback_url(voice_webhook_url: str, call_id: str, turn: int = 0) -> str:
    """Voice webhook URL scoped to one call and the turn expected next."""
    params = {"callId": call_id}
    if turn:
        params["turn"] = str(turn)
    return f"{voice_webhook_url}?{urlencode(params)}"


class TelephonyClient(ABC):
    @abstractmethod
    async def originate(self, to_number: str, callback_url: str, status_callback_url: str) -> str:
        """Start an outbound call and return the provider call SID."""

    @abstractmethod
    async def hangup(self, call_sid: str) -> None:
        """Terminate an in-progress call."""


class TwilioTelephony(TelephonyClient):
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: Optional[Client] = None,
    ) -> None:
        if not account_sid or not auth_token or not from_number:
            raise ConfigurationError("Twilio account SID, auth token and phone number are required")
        self._from_number = from_number
        self._client = client or Client(account_sid, auth_token)

    @classmethod
    def from_settings(cls, settings: Settings) -> TwilioTelephony:
        return cls(
            settings.twilio_account_sid,
            settings.twilio_auth_token,
            settings.twilio_phone_number,
        )

    async def originate(self, to_number: str, callback_url: str, status_callback_url: str) -> str:
        try:
            call = await asyncio.to_thread(
                self._client.calls.create,
                to=to_number,
                from_=self._from_number,
                url=callback_url,
                method="POST",
                status_callback=status_callback_url,
                status_callback_event=STATUS_CALLBACK_EVENTS,
                status_callback_method="POST",
                machine_detection="DetectMessageEnd",
            )
        except (TwilioException, OSError) as e:
            logger.error("twilio_originate_failed", to=to_number, error=str(e))
            raise ProviderError(f"Twilio could not place the call: {e}") from e

        logger.info("twilio_call_created", call_sid=call.sid, to=to_number)
        return call.sid

    async def hangup(self, call_sid: str) -> None:
        try:
            await asyncio.to_thread(self._client.calls(call_sid).update, status="completed")
        except (TwilioException, OSError) as e:
            logger.error("twilio_hangup_failed", call_sid=call_sid, error=str(e))
            raise ProviderError(f"Twilio could not hang up {call_sid}: {e}") from e
        logger.info("twilio_call_hung_up", call_sid=call_sid)


class VoiceResponder:
    """Builds the TwiML documents returned from the voice webhook."""

    def __init__(self, voice: str = "Polly.Joanna", language: str = "en-US") -> None:
        self._voice = voice
        self._language = language

    @classmethod
    def from_settings(cls, settings: Settings) -> VoiceResponder:
        return cls(voice=settings.tts_voice, language=settings.speech_language)

    def listen(self, reply: str, action_url: str) -> str:
        """Speak ``reply`` and gather the next utterance, posting it to ``action_url``."""
        response = VoiceResponse()
        gather = response.gather(
            input="speech",
            method="POST",
            action=action_url,
            speech_timeout="auto",
            enhanced=True,
            speech_model="phone_call",
            language=self._language,
        )
        if reply:
            gather.say(reply, voice=self._voice)
        response.pause(length=1)
        return str(response)

    def say_and_hangup(self, text: str) -> str:
        response = VoiceResponse()
        if text:
            response.say(text, voice=self._voice)
        response.hangup()
        return str(response)

    def hangup(self) -> str:
        response = VoiceResponse()
        response.hangup()
        return str(response)


def signature_is_valid(
    auth_token: str, url: str, params: Mapping[str, Any], signature: str
) -> bool:
    """Check an X-Twilio-Signature header against the request URL and form."""
    return RequestValidator(auth_token).validate(url, dict(params), signature or "")
