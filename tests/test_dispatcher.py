import pytest

from callpilot.errors import InvalidRequestError, NotFoundError, ProviderError
from callpilot.schemas.call import CallDirection, CallStatus
from callpilot.schemas.webhook import StatusWebhookEvent
from callpilot.services.call_dispatcher import ControlAction


async def test_dial_phone_number(dispatcher, telephony, store, settings):
    call = await dispatcher.create_outbound_call(phone_number=" +15551234567 ", goal="Ask about hours")

    assert call.direction == CallDirection.OUTBOUND
    assert call.status == CallStatus.IN_PROGRESS
    assert call.started_at is not None
    assert call.goal == "Ask about hours"
    assert call.metadata.phone_number == "+15551234567"

    placed = telephony.originated[0]
    assert placed["to"] == "+15551234567"
    assert placed["url"] == f"{settings.public_base_url}/twilio/voice?callId={call.id}"
    assert placed["status_callback"] == settings.status_webhook_url
    assert call.call_sid == placed["sid"]
    assert (await store.find_call_by_provider_id(placed["sid"])).id == call.id


async def test_dial_contact(dispatcher, telephony, store):
    contact = store.add_contact("Dana", "+15550101")

    call = await dispatcher.create_outbound_call(contact_id=contact.id, metadata={"source": "dashboard"})

    assert telephony.originated[0]["to"] == "+15550101"
    assert call.contact_id == contact.id
    assert call.metadata.model_extra == {"source": "dashboard"}


@pytest.mark.parametrize(
    "kwargs",
    [
        {},
        {"phone_number": "   "},
        {"contact_id": "c1", "phone_number": "+15551234567"},
        {"contact_id": "no-such-contact"},
    ],
)
async def test_invalid_targets_are_rejected(dispatcher, telephony, store, kwargs):
    with pytest.raises(InvalidRequestError):
        await dispatcher.create_outbound_call(**kwargs)
    assert telephony.originated == []
    assert store.calls == {}


async def test_origination_failure_leaves_failed_record(dispatcher, telephony, store):
    telephony.fail_originate = True

    with pytest.raises(ProviderError):
        await dispatcher.create_outbound_call(phone_number="+15551234567")

    (call,) = store.calls.values()
    assert call.status == CallStatus.FAILED
    assert call.ended_at is not None
    assert call.call_sid is None


async def test_hangup_cancels_call(dispatcher, telephony, store):
    call = await dispatcher.create_outbound_call(phone_number="+15551234567")

    hung_up = await dispatcher.control(call.id, ControlAction.HANGUP)

    assert telephony.hung_up == [call.call_sid]
    assert hung_up.status == CallStatus.CANCELED
    assert hung_up.ended_at is not None
    assert await store.get_summary(call.id) is None


async def test_late_completed_status_keeps_canceled(dispatcher, orchestrator, store, model):
    call = await dispatcher.create_outbound_call(phone_number="+15551234567")
    await dispatcher.hangup_call(call.id)
    model.queue_summary({"summary": "Hung up by operator."})

    reply = await orchestrator.handle_status_webhook(
        StatusWebhookEvent(call_sid=call.call_sid, call_status="completed")
    )
    await orchestrator.finalize_call(reply.finalize_call_id)

    assert (await store.get_call(call.id)).status == CallStatus.CANCELED
    assert (await store.get_summary(call.id)).summary == "Hung up by operator."


async def test_hangup_unknown_call(dispatcher):
    with pytest.raises(NotFoundError):
        await dispatcher.hangup_call("no-such-call")


async def test_hangup_without_provider_id(dispatcher, store, telephony):
    call = await store.create_call(CallDirection.OUTBOUND)

    with pytest.raises(InvalidRequestError):
        await dispatcher.hangup_call(call.id)
    assert telephony.hung_up == []


async def test_hangup_provider_failure_keeps_status(dispatcher, store, telephony):
    call = await dispatcher.create_outbound_call(phone_number="+15551234567")

    async def refuse(call_sid):
        raise ProviderError("Twilio could not hang up")

    telephony.hangup = refuse
    with pytest.raises(ProviderError):
        await dispatcher.hangup_call(call.id)
    assert (await store.get_call(call.id)).status == CallStatus.IN_PROGRESS


@pytest.mark.parametrize("action", [ControlAction.MUTE, ControlAction.HOLD, ControlAction.RESUME])
async def test_other_controls_have_no_provider_effect(dispatcher, telephony, action):
    call = await dispatcher.create_outbound_call(phone_number="+15551234567")

    result = await dispatcher.control(call.id, action)

    assert result.status == CallStatus.IN_PROGRESS
    assert telephony.hung_up == []
