"""
Call Orchestrator Service.

Drives a live call from Twilio's webhooks: resolves each delivery to a call
record (creating one for a new inbound call), records the contact's speech,
generates the assistant's next turn, and answers with TwiML that either
keeps listening or hangs up. Provider status reports move the call forward
through its state machine, and a finished call is summarized exactly once.

Each delivery is an independent unit of work. Deliveries for the same call
are serialized by the DeliveryGuard, redeliveries are answered from its
replay cache, status changes are conditional (forward-only) updates, and
finalization is claimed atomically in the store.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from callpilot.config import Settings
from callpilot.db import CallStore, utcnow
from callpilot.errors import (
    ConflictError,
    GenerationSchemaError,
    ResolutionError,
    ServiceUnavailableError,
    StoreError,
)
from callpilot.logging_config import call_id_var, get_logger
from callpilot.schemas.agent import AgentTurn, SummaryResult
from callpilot.schemas.call import (
    Call,
    CallDirection,
    CallMetadata,
    CallStatus,
    LogEntry,
    LogRole,
)
from callpilot.schemas.webhook import StatusWebhookEvent, VoiceWebhookEvent
from callpilot.services.call_state import map_provider_status, plan_status_change
from callpilot.services.delivery_guard import DeliveryGuard, delivery_key
from callpilot.services.summarizer import Summarizer
from callpilot.services.telephony import (
    APOLOGY_TEXT,
    GOODBYE_TEXT,
    RETRY_TEXT,
    UNAVAILABLE_TEXT,
    VoiceResponder,
    voice_callback_url,
)
from callpilot.services.turn_generator import TurnContext, TurnGenerator

logger = get_logger(__name__)


@dataclass(frozen=True)
class WebhookReply:
    """What a webhook handler answers, plus any follow-on work."""

    markup: Optional[str] = None
    finalize_call_id: Optional[str] = None


class CallOrchestrator:
    """
    State machine keyed by call id.

    Every public handler maps (stored call state, webhook event) to
    (updated call state, reply). Finalization is returned as a follow-on
    instruction so the webhook can answer Twilio before the summary runs.
    """

    def __init__(
        self,
        store: CallStore,
        turn_generator: TurnGenerator,
        summarizer: Summarizer,
        guard: DeliveryGuard,
        settings: Settings,
        responder: Optional[VoiceResponder] = None,
    ) -> None:
        self._store = store
        self._generator = turn_generator
        self._summarizer = summarizer
        self._guard = guard
        self._settings = settings
        self._responder = responder or VoiceResponder.from_settings(settings)

    def callback_url(self, call_id: str, turn: int = 0) -> str:
        return voice_callback_url(self._settings.voice_webhook_url, call_id, turn)

    # -- Voice webhook --

    async def handle_voice_webhook(self, event: VoiceWebhookEvent) -> WebhookReply:
        """Answer one voice webhook delivery. Always returns TwiML."""
        try:
            call = await self._resolve_call(event)
        except (ResolutionError, StoreError) as e:
            logger.warning(
                "voice_webhook_unresolved",
                call_ref=event.call_id,
                call_sid=event.call_sid,
                error=str(e),
            )
            return WebhookReply(markup=self._responder.say_and_hangup(APOLOGY_TEXT))

        call_id_var.set(call.id)
        key = delivery_key(call.id, event.turn, event.speech_result)

        try:
            if event.call_status:
                await self.apply_provider_status(event.call_status, call_id=call.id)

            async with self._guard.lock(call.id):
                cached = await self._guard.recall(key)
                if cached is not None:
                    logger.info("voice_webhook_replayed", turn=event.turn)
                    return WebhookReply(markup=cached)

                reply = await self._run_turn(call, event)
                await self._guard.remember(key, reply.markup or "")
                return reply
        except (StoreError, ServiceUnavailableError) as e:
            logger.error("voice_webhook_failed", error_type=type(e).__name__, error=str(e))
            return WebhookReply(markup=self._responder.say_and_hangup(UNAVAILABLE_TEXT))

    async def _resolve_call(self, event: VoiceWebhookEvent) -> Call:
        if event.call_id:
            call = await self._store.get_call(event.call_id)
            if call is None:
                raise ResolutionError(f"Unknown call reference {event.call_id}")
            if event.call_sid and not call.call_sid:
                call = await self._attach_provider_id(call, event.call_sid)
            return call

        if not event.call_sid:
            raise ResolutionError("Webhook carries neither a call reference nor a CallSid")

        existing = await self._store.find_call_by_provider_id(event.call_sid)
        if existing:
            return existing
        return await self._create_inbound_call(event)

    async def _attach_provider_id(self, call: Call, call_sid: str) -> Call:
        try:
            updated = await self._store.assign_provider_id(call.id, call_sid)
        except ConflictError:
            logger.warning("call_sid_already_assigned", call_id=call.id, call_sid=call_sid)
            return call
        return updated or call

    async def _create_inbound_call(self, event: VoiceWebhookEvent) -> Call:
        contact = None
        if event.from_number:
            contact = await self._store.find_contact_by_phone_number(event.from_number)

        try:
            call = await self._store.create_call(
                CallDirection.INBOUND,
                status=CallStatus.IN_PROGRESS,
                call_sid=event.call_sid,
                contact_id=contact.id if contact else None,
                metadata=CallMetadata(from_number=event.from_number, to_number=event.to_number),
                started_at=utcnow(),
            )
        except ConflictError:
            # A concurrent first delivery for the same CallSid created it
            call = await self._store.find_call_by_provider_id(event.call_sid or "")
            if call is None:
                raise ResolutionError(f"Could not create or find call for {event.call_sid}")
            return call

        logger.info(
            "inbound_call_created",
            call_id=call.id,
            call_sid=call.call_sid,
            contact_id=call.contact_id,
        )
        return call

    async def _run_turn(self, call: Call, event: VoiceWebhookEvent) -> WebhookReply:
        utterance = event.speech_result
        appended: Optional[LogEntry] = None
        if utterance:
            appended = await self._store.append_log_entry(call.id, LogRole.CONTACT, utterance)

        loaded = await self._store.load_call_with_history(call.id)
        if loaded is None:
            raise StoreError(f"Call {call.id} disappeared mid-turn")
        call, entries = loaded
        next_turn = len(entries) + 1

        if call.status.is_terminal:
            logger.info("turn_after_call_closed", status=call.status.value)
            return WebhookReply(markup=self._responder.hangup())

        context = await self._build_context(call, entries, appended, utterance)
        try:
            turn = await asyncio.wait_for(
                self._generator.generate_turn(context),
                timeout=self._settings.turn_timeout_seconds,
            )
        except (GenerationSchemaError, ServiceUnavailableError, asyncio.TimeoutError) as e:
            return await self._degraded_turn(call, utterance, next_turn, e)

        spoken = turn.reply or (GOODBYE_TEXT if turn.should_hangup else "")
        await self._store.append_log_entry(call.id, LogRole.ASSISTANT, spoken)
        await self._record_signals(call.id, turn)

        if turn.should_hangup:
            logger.info("agent_requested_hangup", turn=next_turn)
            return WebhookReply(
                markup=self._responder.say_and_hangup(spoken),
                finalize_call_id=call.id,
            )
        return WebhookReply(markup=self._responder.listen(spoken, self.callback_url(call.id, next_turn)))

    async def _degraded_turn(
        self,
        call: Call,
        utterance: Optional[str],
        next_turn: int,
        error: BaseException,
    ) -> WebhookReply:
        error_type = type(error).__name__
        logger.error("turn_generation_failed", error_type=error_type, error=str(error))
        await self._store.append_log_entry(call.id, LogRole.SYSTEM, f"Turn generation failed: {error_type}")
        if not utterance:
            # Nothing to ask the contact to repeat
            return WebhookReply(markup=self._responder.say_and_hangup(UNAVAILABLE_TEXT))
        return WebhookReply(markup=self._responder.listen(RETRY_TEXT, self.callback_url(call.id, next_turn)))

    async def _build_context(
        self,
        call: Call,
        entries: list[LogEntry],
        appended: Optional[LogEntry],
        utterance: Optional[str],
    ) -> TurnContext:
        history = [e for e in entries if appended is None or e.id != appended.id]
        instructions = await self._store.list_active_instructions()

        contact = None
        contact_instruction = None
        if call.contact_id:
            contact = await self._store.get_contact(call.contact_id)
            contact_instruction = await self._store.get_contact_instruction(call.contact_id)

        memory = await self._store.get_summary(call.id)
        if memory is None and call.contact_id:
            memory = await self._store.find_recent_summary(call.contact_id, exclude_call_id=call.id)

        return TurnContext(
            call=call,
            standing_instructions=instructions,
            contact=contact,
            contact_instruction=contact_instruction,
            memory=memory,
            history=history,
            utterance=utterance,
        )

    async def _record_signals(self, call_id: str, turn: AgentTurn) -> None:
        if turn.intent:
            await self._store.upsert_intent(call_id, turn.intent.label, turn.intent.confidence)
        if turn.follow_up and turn.follow_up.has_content:
            await self._store.record_follow_up(
                call_id,
                next_steps=turn.follow_up.next_steps,
                follow_up_by=turn.follow_up.schedule_time,
            )

    # -- Status webhook --

    async def handle_status_webhook(self, event: StatusWebhookEvent) -> WebhookReply:
        """Apply a provider status report. Never produces TwiML."""
        if not event.call_sid:
            return WebhookReply()

        try:
            await self.apply_provider_status(event.call_status, call_sid=event.call_sid)
            if map_provider_status(event.call_status) != CallStatus.COMPLETED:
                return WebhookReply()

            call = await self._store.find_call_by_provider_id(event.call_sid)
        except StoreError as e:
            logger.error("status_webhook_failed", call_sid=event.call_sid, error=str(e))
            return WebhookReply()

        if call is None or call.finalized_at is not None:
            return WebhookReply()
        return WebhookReply(finalize_call_id=call.id)

    async def apply_provider_status(
        self,
        provider_status: Optional[str],
        *,
        call_id: Optional[str] = None,
        call_sid: Optional[str] = None,
    ) -> Optional[Call]:
        """Map a Twilio status and apply it if it moves the call forward."""
        target = map_provider_status(provider_status)
        if target is None:
            logger.debug("provider_status_ignored", provider_status=provider_status)
            return None

        change = plan_status_change(target, utcnow())
        updated = await self._store.update_status(
            change.status,
            call_id=call_id,
            call_sid=call_sid,
            started_at=change.started_at,
            ended_at=change.ended_at,
        )
        if updated:
            logger.info("call_status_changed", call_id=updated.id, status=updated.status.value)
        else:
            logger.info(
                "call_status_unchanged",
                call_ref=call_id or call_sid,
                requested=target.value,
            )
        return updated

    # -- Finalization --

    async def finalize_call(self, call_id: str) -> bool:
        """
        Summarize and close a call, at most once.

        Returns True if this invocation performed finalization. A store
        failure after the claim releases it so a later delivery can retry.
        """
        if not await self._store.claim_finalization(call_id):
            logger.info("finalization_skipped", call_id=call_id)
            return False

        try:
            return await self._summarize_and_close(call_id)
        except StoreError as e:
            logger.error("finalization_failed", call_id=call_id, error=str(e))
            try:
                await self._store.release_finalization(call_id)
            except StoreError as release_error:
                logger.error("finalization_release_failed", call_id=call_id, error=str(release_error))
            return False

    async def _summarize_and_close(self, call_id: str) -> bool:
        loaded = await self._store.load_call_with_history(call_id)
        if loaded is None:
            return False
        call, history = loaded

        try:
            result = await asyncio.wait_for(
                self._summarizer.summarize(call, history),
                timeout=self._settings.summary_timeout_seconds,
            )
        except (GenerationSchemaError, ServiceUnavailableError, asyncio.TimeoutError) as e:
            logger.error("summary_failed", call_id=call_id, error_type=type(e).__name__, error=str(e))
            result = SummaryResult()

        await self._store.upsert_summary(
            call_id,
            result.summary,
            next_steps=result.next_steps,
            follow_up_by=result.follow_up_by,
        )

        change = plan_status_change(CallStatus.COMPLETED, utcnow())
        closed = await self._store.update_status(
            change.status,
            call_id=call_id,
            ended_at=change.ended_at,
        )
        logger.info(
            "call_finalized",
            call_id=call_id,
            status=closed.status.value if closed else call.status.value,
            transcript_entries=len(history),
        )
        return True
