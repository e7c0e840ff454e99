"""
Call Dispatcher.

Places outbound calls and applies manual control actions from the
dashboard. The call record is written before Twilio is asked to dial, so a
failed origination still leaves an audit trail (marked FAILED).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from callpilot.config import Settings
from callpilot.db import CallStore, utcnow
from callpilot.errors import InvalidRequestError, NotFoundError, ProviderError
from callpilot.logging_config import get_logger
from callpilot.schemas.call import Call, CallDirection, CallStatus
from callpilot.services.call_state import plan_status_change
from callpilot.services.telephony import TelephonyClient, voice_callback_url

logger = get_logger(__name__)


class ControlAction(str, Enum):
    HANGUP = "hangup"
    MUTE = "mute"
    UNMUTE = "unmute"
    HOLD = "hold"
    RESUME = "resume"


class CallDispatcher:
    def __init__(self, store: CallStore, telephony: TelephonyClient, settings: Settings) -> None:
        self._store = store
        self._telephony = telephony
        self._settings = settings

    async def create_outbound_call(
        self,
        *,
        contact_id: Optional[str] = None,
        phone_number: Optional[str] = None,
        goal: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Call:
        """
        Create a call record and ask Twilio to dial it.

        Exactly one of ``contact_id`` or ``phone_number`` is required.

        Raises:
            InvalidRequestError: neither or both targets given, or unknown contact.
            ProviderError: Twilio refused the call; the record is left FAILED.
        """
        phone_number = (phone_number or "").strip() or None
        if not contact_id and not phone_number:
            raise InvalidRequestError("Either contact_id or phone_number is required to place a call.")
        if contact_id and phone_number:
            raise InvalidRequestError("Provide contact_id or phone_number, not both.")

        to_number = phone_number
        if contact_id:
            contact = await self._store.get_contact(contact_id)
            if contact is None:
                raise InvalidRequestError(f"Unknown contact {contact_id}")
            to_number = contact.phone_number

        meta = dict(metadata or {})
        if phone_number:
            meta.setdefault("phone_number", phone_number)

        call = await self._store.create_call(
            CallDirection.OUTBOUND,
            contact_id=contact_id,
            goal=goal,
            metadata=meta,
        )
        logger.info("outbound_call_created", call_id=call.id, contact_id=contact_id)

        try:
            call_sid = await self._telephony.originate(
                to_number or "",
                callback_url=voice_callback_url(self._settings.voice_webhook_url, call.id),
                status_callback_url=self._settings.status_webhook_url,
            )
        except ProviderError:
            change = plan_status_change(CallStatus.FAILED, utcnow())
            await self._store.update_status(change.status, call_id=call.id, ended_at=change.ended_at)
            logger.warning("outbound_call_origination_failed", call_id=call.id)
            raise

        # The voice webhook may already have attached the SID
        await self._store.assign_provider_id(call.id, call_sid)
        change = plan_status_change(CallStatus.IN_PROGRESS, utcnow())
        updated = await self._store.update_status(
            change.status,
            call_id=call.id,
            started_at=change.started_at,
        )

        logger.info("outbound_call_dispatched", call_id=call.id, call_sid=call_sid)
        return updated or await self._store.get_call(call.id) or call

    async def hangup_call(self, call_id: str) -> Call:
        """Hang up through Twilio, then close the call as CANCELED (no summary)."""
        call = await self._require_call_with_sid(call_id)

        await self._telephony.hangup(call.call_sid or "")

        change = plan_status_change(CallStatus.CANCELED, utcnow())
        updated = await self._store.update_status(change.status, call_id=call.id, ended_at=change.ended_at)
        logger.info(
            "call_hung_up_manually",
            call_id=call.id,
            status=(updated or call).status.value,
        )
        return updated or await self._store.get_call(call.id) or call

    async def control(self, call_id: str, action: ControlAction) -> Call:
        if action == ControlAction.HANGUP:
            return await self.hangup_call(call_id)

        call = await self._require_call_with_sid(call_id)
        # TODO: mute/hold need the call moved into a Twilio conference first.
        logger.info("call_control_not_implemented", call_id=call.id, action=action.value)
        return call

    async def _require_call_with_sid(self, call_id: str) -> Call:
        call = await self._store.get_call(call_id)
        if call is None:
            raise NotFoundError(f"Call {call_id} not found")
        if not call.call_sid:
            raise InvalidRequestError("Call SID not available")
        return call
