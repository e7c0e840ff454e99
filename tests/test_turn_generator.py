from datetime import datetime, timezone

import pytest

from callpilot.errors import GenerationSchemaError
from callpilot.schemas.call import (
    PENDING_SUMMARY,
    Call,
    CallDirection,
    CallStatus,
    CallSummary,
    LogEntry,
    LogRole,
)
from callpilot.schemas.contact import Contact, Instruction
from callpilot.services.summarizer import Summarizer, format_transcript
from callpilot.services.turn_generator import (
    PREAMBLE,
    TurnContext,
    TurnGenerator,
    build_messages,
    build_system_message,
)

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def make_call(**kwargs) -> Call:
    defaults = dict(
        id="call-1",
        direction=CallDirection.OUTBOUND,
        status=CallStatus.IN_PROGRESS,
        created_at=NOW,
    )
    defaults.update(kwargs)
    return Call(**defaults)


def entry(entry_id: int, role: LogRole, content: str) -> LogEntry:
    return LogEntry(id=entry_id, call_id="call-1", role=role, content=content, created_at=NOW)


def test_system_message_includes_all_context():
    context = TurnContext(
        call=make_call(goal="Book a table for four on Friday"),
        standing_instructions=[Instruction(id="i1", content="Introduce yourself first.")],
        contact=Contact(id="c1", name="Dana", phone_number="+15550101", notes="Prefers mornings"),
        contact_instruction="Confirm the delivery window.",
        memory=CallSummary(call_id="old", summary="Dana asked for a quote.", next_steps="Send quote"),
    )
    system = build_system_message(context)

    assert system.startswith(PREAMBLE[0])
    assert "Introduce yourself first." in system
    assert "Confirm the delivery window." in system
    assert "Call goal: Book a table for four on Friday" in system
    assert "Dana (+15550101)" in system and "Prefers mornings" in system
    assert "Recent call memory:\nDana asked for a quote." in system
    assert "Outstanding follow-ups:\nSend quote" in system


def test_dialed_number_used_without_contact():
    context = TurnContext(call=make_call(metadata={"phone_number": "+15557654321"}))
    assert "Dialed number: +15557654321" in build_system_message(context)


def test_pending_placeholder_is_not_presented_as_memory():
    context = TurnContext(
        call=make_call(),
        memory=CallSummary(call_id="call-1", summary=PENDING_SUMMARY, next_steps="Call back at 3pm"),
    )
    system = build_system_message(context)
    assert PENDING_SUMMARY not in system
    assert "Call back at 3pm" in system


def test_messages_follow_history_order_and_skip_system_notes():
    context = TurnContext(
        call=make_call(),
        history=[
            entry(1, LogRole.ASSISTANT, "Hi, this is Sam."),
            entry(2, LogRole.CONTACT, "Hello?"),
            entry(3, LogRole.SYSTEM, "Turn generation failed: ServiceUnavailableError"),
            entry(4, LogRole.ASSISTANT, "Sorry, could you repeat that?"),
        ],
        utterance="I said hello.",
    )
    messages = build_messages(context)

    assert [m["role"] for m in messages] == ["system", "assistant", "user", "assistant", "user"]
    assert messages[-1]["content"] == "I said hello."
    assert all("Turn generation failed" not in m["content"] for m in messages)


def test_first_turn_has_only_the_directive():
    messages = build_messages(TurnContext(call=make_call()))
    assert len(messages) == 1
    assert messages[0]["role"] == "system"


async def test_generate_turn_parses_answer(model):
    model.queue_turn({
        "reply": "Sure, Friday works.",
        "shouldHangup": False,
        "followUp": {"nextSteps": "Send confirmation", "schedule": {"time": "2026-10-23T09:00:00Z"}},
        "intent": {"label": "booking", "confidence": 1.7},
    })
    turn = await TurnGenerator(model, model="gpt-test").generate_turn(TurnContext(call=make_call()))

    assert turn.reply == "Sure, Friday works."
    assert not turn.should_hangup
    assert turn.follow_up.next_steps == "Send confirmation"
    assert turn.follow_up.schedule_time == datetime(2026, 10, 23, 9, 0, tzinfo=timezone.utc)
    assert turn.intent.confidence == 1.0
    assert model.requests[0]["model"] == "gpt-test"


async def test_generate_turn_coerces_nulls(model):
    model.queue_turn({"reply": None, "shouldHangup": None})
    turn = await TurnGenerator(model).generate_turn(TurnContext(call=make_call()))
    assert turn.reply == ""
    assert turn.should_hangup is False


async def test_generate_turn_rejects_schema_mismatch(model):
    model.queue_turn({"reply": "ok", "shouldHangup": "perhaps"})
    with pytest.raises(GenerationSchemaError):
        await TurnGenerator(model).generate_turn(TurnContext(call=make_call()))


def test_format_transcript():
    history = [entry(1, LogRole.ASSISTANT, "Hi"), entry(2, LogRole.CONTACT, "Hello")]
    assert format_transcript(history) == "ASSISTANT: Hi\nCONTACT: Hello"


async def test_summarize_sends_transcript(model):
    model.queue_summary({"summary": "Booked Friday.", "nextSteps": "Send confirmation", "followUpBy": None})
    history = [entry(1, LogRole.ASSISTANT, "Hi"), entry(2, LogRole.CONTACT, "Friday please")]

    result = await Summarizer(model).summarize(make_call(), history)

    assert result.summary == "Booked Friday."
    assert result.next_steps == "Send confirmation"
    assert result.follow_up_by is None
    user_message = model.requests_for("call_summary")[0]["messages"][1]["content"]
    assert "CONTACT: Friday please" in user_message


async def test_summarize_empty_summary_falls_back(model):
    model.queue_summary({"summary": ""})
    result = await Summarizer(model).summarize(make_call(), [])
    assert result.summary == "No summary generated."
