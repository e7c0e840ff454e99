"""
Turn Generator.

Builds the directive context for one live call turn (behavioral preamble,
standing and per-contact instructions, the call goal, the contact profile,
and any earlier summary as memory), appends the conversation so far, and
asks the model service for the next reply in a fixed JSON schema.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from pydantic import ValidationError

from callpilot.config import Settings
from callpilot.errors import GenerationSchemaError
from callpilot.logging_config import get_logger
from callpilot.schemas.agent import AGENT_TURN_SCHEMA, AgentTurn
from callpilot.schemas.call import Call, CallSummary, LogEntry, LogRole
from callpilot.schemas.contact import Contact, Instruction
from callpilot.services.llm_client import ChatMessage, ModelServiceClient

logger = get_logger(__name__)


PREAMBLE = (
    "You are an autonomous phone agent handling a live call on behalf of the user. "
    "Respond succinctly, politely, and confidently. Confirm critical details back to the contact.",
    "Never mention that you are an AI. Speak as the user would. Maintain a warm tone.",
    "Keep responses short (2 sentences max) unless you are providing a summary or answering a complex question. "
    "Your reply is spoken aloud, so never use markdown, lists, or special formatting.",
    "If you are asked something you cannot do (e.g., provide sensitive data), politely decline.",
)

CLOSING_DIRECTIVE = (
    "When you conclude the call or achieve the goal, set shouldHangup to true. "
    "Whenever you promise a follow-up, populate followUp.nextSteps and optionally followUp.schedule "
    "with an ISO 8601 time. If the contact's intent is clear, report it in intent with a confidence "
    "between 0 and 1."
)

_CHAT_ROLES = {
    LogRole.ASSISTANT: "assistant",
    LogRole.CONTACT: "user",
    LogRole.USER: "user",
}


@dataclass
class TurnContext:
    """Everything the generator needs for one turn."""

    call: Call
    standing_instructions: list[Instruction] = field(default_factory=list)
    contact: Optional[Contact] = None
    contact_instruction: Optional[str] = None
    memory: Optional[CallSummary] = None
    history: list[LogEntry] = field(default_factory=list)
    utterance: Optional[str] = None


class TurnGenerator:
    def __init__(
        self,
        client: ModelServiceClient,
        model: str = "gpt-4o-mini",
        temperature: float = 0.6,
        max_tokens: int = 200,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    @classmethod
    def from_settings(cls, client: ModelServiceClient, settings: Settings) -> TurnGenerator:
        return cls(
            client,
            model=settings.call_model,
            temperature=settings.turn_temperature,
            max_tokens=settings.turn_max_tokens,
        )

    async def generate_turn(self, context: TurnContext) -> AgentTurn:
        """
        Produce the next assistant turn.

        Raises:
            GenerationSchemaError: the model output does not fit the turn schema.
            ServiceUnavailableError: the model service is unreachable.
        """
        messages = build_messages(context)
        payload = await self._client.complete_json(
            model=self._model,
            messages=messages,
            schema_name="agent_turn",
            schema=AGENT_TURN_SCHEMA,
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )
        try:
            turn = AgentTurn.model_validate(payload)
        except ValidationError as e:
            logger.warning("agent_turn_schema_mismatch", errors=e.error_count())
            raise GenerationSchemaError("Agent response did not match expected schema") from e

        logger.info(
            "agent_turn_generated",
            history_len=len(context.history),
            has_utterance=bool(context.utterance),
            should_hangup=turn.should_hangup,
            intent=turn.intent.label if turn.intent else None,
        )
        return turn


def build_system_message(context: TurnContext) -> str:
    pieces = list(PREAMBLE)

    directives = [i.content for i in context.standing_instructions if i.content]
    if context.contact_instruction:
        directives.append(context.contact_instruction)
    if directives:
        pieces.append("Custom instructions:\n" + "\n\n".join(directives))

    if context.call.goal:
        pieces.append(f"Call goal: {context.call.goal}")

    contact = context.contact
    if contact:
        profile = f"Contact profile: {contact.name} ({contact.phone_number})"
        if contact.notes:
            profile += f" | Notes: {contact.notes}"
        pieces.append(profile)
    elif context.call.metadata.phone_number:
        pieces.append(f"Dialed number: {context.call.metadata.phone_number}")

    memory = context.memory
    if memory:
        if not memory.is_pending:
            pieces.append("Recent call memory:\n" + memory.summary)
        if memory.next_steps:
            pieces.append("Outstanding follow-ups:\n" + memory.next_steps)

    pieces.append(CLOSING_DIRECTIVE)
    return "\n\n".join(pieces)


def build_messages(context: TurnContext) -> list[ChatMessage]:
    """System directive, then the history as alternating turns, then the new utterance."""
    messages: list[ChatMessage] = [{"role": "system", "content": build_system_message(context)}]
    for entry in context.history:
        role = _CHAT_ROLES.get(entry.role)
        if role is None:
            continue  # SYSTEM entries are operational notes, not dialogue
        messages.append({"role": role, "content": entry.content})
    if context.utterance:
        messages.append({"role": "user", "content": context.utterance})
    return messages
