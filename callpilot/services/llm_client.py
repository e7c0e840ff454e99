"""
Model Service Client.

Thin async client for an OpenAI-compatible chat completions endpoint that
returns JSON constrained by a caller-supplied schema. Transport failures
and 429/5xx answers are retried a bounded number of times; anything the
caller can't parse is reported as GenerationSchemaError and never retried.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from callpilot.config import Settings
from callpilot.errors import ConfigurationError, GenerationSchemaError, ServiceUnavailableError
from callpilot.logging_config import get_logger

logger = get_logger(__name__)

ChatMessage = dict[str, str]


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    return False


class ModelServiceClient:
    """Requests schema-constrained JSON completions."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 8.0,
        max_attempts: int = 2,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not api_key:
            raise ConfigurationError("OpenAI API key is not configured")
        self._max_attempts = max_attempts
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> ModelServiceClient:
        return cls(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=settings.model_request_timeout_seconds,
            max_attempts=settings.model_max_attempts,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def complete_json(
        self,
        *,
        model: str,
        messages: list[ChatMessage],
        schema_name: str,
        schema: dict[str, Any],
        temperature: float,
        max_tokens: int,
    ) -> dict[str, Any]:
        """
        Run one completion and return the decoded JSON object.

        Raises:
            ServiceUnavailableError: the service could not be reached or kept failing.
            GenerationSchemaError: the answer was not a JSON object.
        """
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": schema_name, "schema": schema},
            },
        }

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(multiplier=0.25, max=2),
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    response = await self._client.post("/chat/completions", json=payload)
                    response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "model_service_error_status",
                schema=schema_name,
                status=e.response.status_code,
            )
            raise ServiceUnavailableError(f"Model service returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("model_service_unreachable", schema=schema_name, error=str(e))
            raise ServiceUnavailableError(f"Model service unreachable: {e}") from e

        return self._decode(schema_name, response)

    @staticmethod
    def _decode(schema_name: str, response: httpx.Response) -> dict[str, Any]:
        try:
            content = response.json()["choices"][0]["message"]["content"]
            parsed = json.loads(content)
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.warning("model_output_unparseable", schema=schema_name, error=str(e))
            raise GenerationSchemaError(f"{schema_name}: model output is not valid JSON") from e

        if not isinstance(parsed, dict):
            raise GenerationSchemaError(f"{schema_name}: model output is not a JSON object")
        return parsed
