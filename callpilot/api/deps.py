"""
Service container and FastAPI dependencies.

The container is built once in the app lifespan and stored on
``app.state``; routes pull the pieces they need through the getters below.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from callpilot.config import GuardBackend, Settings, StoreBackend
from callpilot.db import CallStore, SupabaseCallStore
from callpilot.errors import ConfigurationError
from callpilot.logging_config import get_logger
from callpilot.memory_store import InMemoryCallStore
from callpilot.services.call_dispatcher import CallDispatcher
from callpilot.services.call_orchestrator import CallOrchestrator
from callpilot.services.delivery_guard import (
    DeliveryGuard,
    InMemoryDeliveryGuard,
    RedisDeliveryGuard,
)
from callpilot.services.llm_client import ModelServiceClient
from callpilot.services.summarizer import Summarizer
from callpilot.services.telephony import TwilioTelephony
from callpilot.services.turn_generator import TurnGenerator

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    store: CallStore
    guard: DeliveryGuard
    orchestrator: CallOrchestrator
    dispatcher: Optional[CallDispatcher] = None
    model_client: Optional[ModelServiceClient] = None

    async def close(self) -> None:
        if self.model_client is not None:
            await self.model_client.close()
        await self.guard.close()
        await self.store.close()


async def build_container(settings: Settings) -> ServiceContainer:
    """
    Wire the store, guard, model service and telephony from settings.

    The model service is required. Telephony is optional: without Twilio
    credentials the webhooks still work but outbound calls and manual
    control answer 503.
    """
    if settings.store_backend == StoreBackend.MEMORY:
        store: CallStore = InMemoryCallStore()
    else:
        store = await SupabaseCallStore.connect(settings)

    if settings.guard_backend == GuardBackend.MEMORY:
        guard: DeliveryGuard = InMemoryDeliveryGuard(
            lock_wait=settings.call_lock_wait_seconds,
            replay_window=settings.delivery_replay_window_seconds,
        )
    else:
        guard = RedisDeliveryGuard.from_settings(settings)

    model_client = ModelServiceClient.from_settings(settings)
    orchestrator = CallOrchestrator(
        store,
        TurnGenerator.from_settings(model_client, settings),
        Summarizer.from_settings(model_client, settings),
        guard,
        settings,
    )

    dispatcher = None
    try:
        dispatcher = CallDispatcher(store, TwilioTelephony.from_settings(settings), settings)
    except ConfigurationError as e:
        logger.warning("telephony_not_configured", error=str(e))

    logger.info(
        "services_initialized",
        store=settings.store_backend.value,
        guard=settings.guard_backend.value,
        telephony=dispatcher is not None,
    )
    return ServiceContainer(
        settings=settings,
        store=store,
        guard=guard,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
        model_client=model_client,
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_store(request: Request) -> CallStore:
    return get_container(request).store


def get_orchestrator(request: Request) -> CallOrchestrator:
    return get_container(request).orchestrator


def get_dispatcher(request: Request) -> CallDispatcher:
    dispatcher = get_container(request).dispatcher
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Telephony provider is not configured")
    return dispatcher


def get_app_settings(request: Request) -> Settings:
    return get_container(request).settings
