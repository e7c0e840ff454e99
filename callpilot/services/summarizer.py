"""
Summarizer.

Turns a finished call's transcript into a summary, next steps and an
optional follow-up deadline.
"""

from __future__ import annotations

from pydantic import ValidationError

from callpilot.config import Settings
from callpilot.errors import GenerationSchemaError
from callpilot.logging_config import get_logger
from callpilot.schemas.agent import CALL_SUMMARY_SCHEMA, SummaryResult
from callpilot.schemas.call import Call, LogEntry
from callpilot.services.llm_client import ModelServiceClient

logger = get_logger(__name__)

SUMMARY_PROMPT = (
    "You are a meticulous call summarizer. Produce a JSON object with summary, "
    "nextSteps, and followUpBy (ISO8601 string or null)."
)


def format_transcript(history: list[LogEntry]) -> str:
    return "\n".join(f"{entry.role.value}: {entry.content}" for entry in history)


class Summarizer:
    def __init__(
        self,
        client: ModelServiceClient,
        model: str = "gpt-4o-mini",
        temperature: float = 0.2,
        max_tokens: int = 300,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    @classmethod
    def from_settings(cls, client: ModelServiceClient, settings: Settings) -> Summarizer:
        return cls(
            client,
            model=settings.summary_model,
            temperature=settings.summary_temperature,
            max_tokens=settings.summary_max_tokens,
        )

    async def summarize(self, call: Call, history: list[LogEntry]) -> SummaryResult:
        logger.info("summary_started", call_id=call.id, transcript_entries=len(history))

        payload = await self._client.complete_json(
            model=self._model,
            messages=[
                {"role": "system", "content": SUMMARY_PROMPT},
                {"role": "user", "content": f"Conversation transcript:\n{format_transcript(history)}"},
            ],
            schema_name="call_summary",
            schema=CALL_SUMMARY_SCHEMA,
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )
        try:
            result = SummaryResult.model_validate(payload)
        except ValidationError as e:
            raise GenerationSchemaError("Call summary did not match expected schema") from e

        logger.info(
            "summary_complete",
            call_id=call.id,
            has_next_steps=bool(result.next_steps),
            follow_up_by=result.follow_up_by.isoformat() if result.follow_up_by else None,
        )
        return result
