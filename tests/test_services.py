import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from twilio.base.exceptions import TwilioException

from callpilot.config import Settings
from callpilot.errors import (
    ConfigurationError,
    GenerationSchemaError,
    ProviderError,
    ServiceUnavailableError,
)
from callpilot.schemas.webhook import StatusWebhookEvent, VoiceWebhookEvent
from callpilot.services.delivery_guard import InMemoryDeliveryGuard, RedisDeliveryGuard, delivery_key
from callpilot.services.llm_client import ModelServiceClient
from callpilot.services.telephony import (
    STATUS_CALLBACK_EVENTS,
    TwilioTelephony,
    VoiceResponder,
    voice_callback_url,
)


# -- Model service client --


def completion(content: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


def model_client(handler, max_attempts: int = 2) -> ModelServiceClient:
    http = httpx.AsyncClient(base_url="https://model.test/v1", transport=httpx.MockTransport(handler))
    return ModelServiceClient(api_key="test-key", max_attempts=max_attempts, http_client=http)


async def ask(client: ModelServiceClient) -> dict:
    return await client.complete_json(
        model="gpt-test",
        messages=[{"role": "user", "content": "hi"}],
        schema_name="agent_turn",
        schema={"type": "object"},
        temperature=0.5,
        max_tokens=50,
    )


async def test_complete_json_sends_schema_and_decodes():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return completion('{"reply": "hello", "shouldHangup": false}')

    result = await ask(model_client(handler))

    assert result == {"reply": "hello", "shouldHangup": False}
    body = seen[0]
    assert body["model"] == "gpt-test"
    assert body["response_format"]["type"] == "json_schema"
    assert body["response_format"]["json_schema"]["name"] == "agent_turn"


async def test_server_errors_are_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503)
        return completion('{"reply": "ok"}')

    assert await ask(model_client(handler)) == {"reply": "ok"}
    assert len(calls) == 2


async def test_client_errors_are_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, json={"error": "bad request"})

    with pytest.raises(ServiceUnavailableError):
        await ask(model_client(handler, max_attempts=3))
    assert len(calls) == 1


async def test_transport_errors_exhaust_attempts():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ServiceUnavailableError):
        await ask(model_client(handler))


@pytest.mark.parametrize("content", ["not json", "[1, 2]"])
async def test_unparseable_output_is_a_schema_error(content):
    with pytest.raises(GenerationSchemaError):
        await ask(model_client(lambda request: completion(content)))


def test_missing_api_key_fails_at_construction():
    with pytest.raises(ConfigurationError):
        ModelServiceClient(api_key="")


# -- Delivery guard --


def test_delivery_key_identity():
    assert delivery_key("c1", 1, "Yes") == delivery_key("c1", 1, " Yes ")
    assert delivery_key("c1", 1, "Yes") != delivery_key("c1", 3, "Yes")
    assert delivery_key("c1", 1, "Yes") != delivery_key("c2", 1, "Yes")
    assert delivery_key("c1", 0, None) == delivery_key("c1", 0, "")


async def test_replay_cache_expires():
    guard = InMemoryDeliveryGuard(replay_window=0.05)
    await guard.remember("k", "<Response/>")
    assert await guard.recall("k") == "<Response/>"

    await asyncio.sleep(0.1)
    assert await guard.recall("k") is None


async def test_lock_serializes_per_call():
    guard = InMemoryDeliveryGuard()
    order = []

    async def work(name: str) -> None:
        async with guard.lock("call-1"):
            order.append(f"{name}-start")
            await asyncio.sleep(0.01)
            order.append(f"{name}-end")

    await asyncio.gather(work("a"), work("b"))
    assert order == ["a-start", "a-end", "b-start", "b-end"]


async def test_lock_wait_is_bounded():
    guard = InMemoryDeliveryGuard(lock_wait=0.05)
    async with guard.lock("call-1"):
        with pytest.raises(ServiceUnavailableError):
            async with guard.lock("call-1"):
                pass


# -- Telephony --


def test_voice_callback_url():
    base = "https://agent.example.com/twilio/voice"
    assert voice_callback_url(base, "abc") == f"{base}?callId=abc"
    assert voice_callback_url(base, "abc", 4) == f"{base}?callId=abc&turn=4"


def test_listen_markup():
    markup = VoiceResponder(voice="Polly.Matthew", language="en-GB").listen("How can I help?", "https://x/twilio/voice?callId=1&turn=2")

    assert markup.startswith("<?xml")
    assert "<Gather" in markup
    assert 'input="speech"' in markup
    assert 'speechTimeout="auto"' in markup
    assert 'language="en-GB"' in markup
    assert 'action="https://x/twilio/voice?callId=1&amp;turn=2"' in markup
    assert '<Say voice="Polly.Matthew">How can I help?</Say>' in markup
    assert '<Pause length="1"' in markup
    assert "<Hangup" not in markup


def test_say_and_hangup_markup():
    markup = VoiceResponder().say_and_hangup("Goodbye.")
    assert markup.index("<Say") < markup.index("<Hangup")
    assert "<Say" not in VoiceResponder().hangup()


def test_twilio_credentials_required():
    with pytest.raises(ConfigurationError):
        TwilioTelephony("", "token", "+15550000000")


async def test_originate_requests_status_events_and_machine_detection():
    client = MagicMock()
    client.calls.create.return_value = SimpleNamespace(sid="CA123")
    telephony = TwilioTelephony("AC1", "token", "+15550000000", client=client)

    sid = await telephony.originate("+15551234567", "https://x/voice?callId=1", "https://x/status")

    assert sid == "CA123"
    kwargs = client.calls.create.call_args.kwargs
    assert kwargs["to"] == "+15551234567"
    assert kwargs["from_"] == "+15550000000"
    assert kwargs["url"] == "https://x/voice?callId=1"
    assert kwargs["status_callback"] == "https://x/status"
    assert kwargs["status_callback_event"] == STATUS_CALLBACK_EVENTS
    assert kwargs["machine_detection"] == "DetectMessageEnd"


async def test_provider_errors_are_wrapped():
    client = MagicMock()
    client.calls.create.side_effect = TwilioException("invalid number")
    client.calls.return_value.update.side_effect = TwilioException("not found")
    telephony = TwilioTelephony("AC1", "token", "+15550000000", client=client)

    with pytest.raises(ProviderError):
        await telephony.originate("+1", "https://x/voice", "https://x/status")
    with pytest.raises(ProviderError):
        await telephony.hangup("CA123")


async def test_hangup_completes_call():
    client = MagicMock()
    telephony = TwilioTelephony("AC1", "token", "+15550000000", client=client)

    await telephony.hangup("CA123")

    client.calls.assert_called_with("CA123")
    client.calls.return_value.update.assert_called_with(status="completed")


# -- Webhook events --


def test_voice_event_from_request():
    event = VoiceWebhookEvent.from_request(
        {"callId": "c1", "turn": "5"},
        {"CallSid": "CA1", "SpeechResult": "  Yes please ", "CallStatus": "in-progress", "From": "+1555"},
    )
    assert (event.call_id, event.turn, event.call_sid) == ("c1", 5, "CA1")
    assert event.speech_result == "Yes please"
    assert event.call_status == "in-progress"
    assert event.from_number == "+1555"
    assert event.to_number is None


@pytest.mark.parametrize("turn", ["abc", "-2", ""])
def test_voice_event_bad_turn_defaults_to_zero(turn):
    assert VoiceWebhookEvent.from_request({"turn": turn}, {}).turn == 0


def test_status_event_blank_fields_are_none():
    event = StatusWebhookEvent.from_form({"CallSid": "", "CallStatus": "completed"})
    assert event.call_sid is None
    assert event.call_status == "completed"


async def test_idle_call_locks_are_released():
    guard = InMemoryDeliveryGuard(lock_wait=0.05)

    async def work(call_id: str) -> None:
        async with guard.lock(call_id):
            await asyncio.sleep(0.01)

    await asyncio.gather(work("call-1"), work("call-1"), work("call-2"))
    assert guard.active_locks == 0

    # a waiter that times out does not leak the lock either
    async with guard.lock("call-1"):
        with pytest.raises(ServiceUnavailableError):
            async with guard.lock("call-1"):
                pass
    assert guard.active_locks == 0


def test_lock_wait_stays_below_twilio_webhook_timeout():
    assert Settings(_env_file=None).call_lock_wait_seconds < 15


async def test_redis_lock_waits_less_than_its_lease():
    redis = MagicMock()
    redis.lock.return_value.acquire = AsyncMock(return_value=True)
    redis.lock.return_value.release = AsyncMock()
    settings = Settings(_env_file=None, call_lock_lease_seconds=30, call_lock_wait_seconds=5)
    guard = RedisDeliveryGuard(
        redis,
        lock_lease=settings.call_lock_lease_seconds,
        lock_wait=settings.call_lock_wait_seconds,
    )

    async with guard.lock("call-1"):
        pass

    redis.lock.assert_called_once_with("calls:lock:call-1", timeout=30, blocking_timeout=5)
    redis.lock.return_value.release.assert_awaited_once()
