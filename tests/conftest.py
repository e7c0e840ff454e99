"""Shared fixtures: in-memory backends plus fakes for the model service and Twilio."""
import itertools
from collections import defaultdict, deque
from typing import Any

import pytest

from callpilot.config import Settings
from callpilot.errors import ProviderError, ServiceUnavailableError
from callpilot.memory_store import InMemoryCallStore
from callpilot.services.call_dispatcher import CallDispatcher
from callpilot.services.call_orchestrator import CallOrchestrator
from callpilot.services.delivery_guard import InMemoryDeliveryGuard
from callpilot.services.summarizer import Summarizer
from callpilot.services.telephony import TelephonyClient
from callpilot.services.turn_generator import TurnGenerator

PUBLIC_URL = "https://agent.example.com"


class FakeModelClient:
    """Answers complete_json from per-schema queues; an empty queue means the service is down."""

    def __init__(self) -> None:
        self.queues: dict[str, deque] = defaultdict(deque)
        self.requests: list[dict[str, Any]] = []

    def queue_turn(self, *answers: Any) -> None:
        self.queues["agent_turn"].extend(answers)

    def queue_summary(self, *answers: Any) -> None:
        self.queues["call_summary"].extend(answers)

    def requests_for(self, schema_name: str) -> list[dict[str, Any]]:
        return [r for r in self.requests if r["schema_name"] == schema_name]

    async def complete_json(self, *, model, messages, schema_name, schema, temperature, max_tokens):
        self.requests.append({"schema_name": schema_name, "model": model, "messages": messages})
        queue = self.queues[schema_name]
        if not queue:
            raise ServiceUnavailableError("model service unavailable")
        answer = queue.popleft()
        if isinstance(answer, BaseException):
            raise answer
        return answer

    async def close(self) -> None:
        pass


class FakeTelephony(TelephonyClient):
    def __init__(self) -> None:
        self.originated: list[dict[str, str]] = []
        self.hung_up: list[str] = []
        self.fail_originate = False
        self._sids = itertools.count(1)

    async def originate(self, to_number: str, callback_url: str, status_callback_url: str) -> str:
        if self.fail_originate:
            raise ProviderError("Twilio could not place the call: invalid number")
        sid = f"CA{next(self._sids):032d}"
        self.originated.append(
            {"to": to_number, "url": callback_url, "status_callback": status_callback_url, "sid": sid}
        )
        return sid

    async def hangup(self, call_sid: str) -> None:
        self.hung_up.append(call_sid)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        openai_api_key="test-key",
        public_base_url=PUBLIC_URL,
        store_backend="memory",
        guard_backend="memory",
        twilio_auth_token="test-auth-token",
        twilio_validate_signatures=False,
        turn_timeout_seconds=2,
        summary_timeout_seconds=2,
    )


@pytest.fixture
def store() -> InMemoryCallStore:
    return InMemoryCallStore()


@pytest.fixture
def guard() -> InMemoryDeliveryGuard:
    return InMemoryDeliveryGuard(lock_wait=2, replay_window=60)


@pytest.fixture
def model() -> FakeModelClient:
    return FakeModelClient()


@pytest.fixture
def telephony() -> FakeTelephony:
    return FakeTelephony()


@pytest.fixture
def orchestrator(store, guard, model, settings) -> CallOrchestrator:
    return CallOrchestrator(store, TurnGenerator(model), Summarizer(model), guard, settings)


@pytest.fixture
def dispatcher(store, telephony, settings) -> CallDispatcher:
    return CallDispatcher(store, telephony, settings)
