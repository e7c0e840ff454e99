"""
API Router — Call Management Endpoints.

Places outbound calls, lists and inspects calls, and applies manual
control actions.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from callpilot.api.deps import get_dispatcher, get_store
from callpilot.db import CallStore
from callpilot.errors import InvalidRequestError, NotFoundError, ProviderError
from callpilot.logging_config import get_logger
from callpilot.schemas.call import Call, CallDetail
from callpilot.services.call_dispatcher import CallDispatcher, ControlAction

logger = get_logger(__name__)
router = APIRouter(prefix="/calls", tags=["Calls"])


class CreateCallRequest(BaseModel):
    contact_id: Optional[str] = Field(default=None, alias="contactId")
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")
    goal: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class ControlRequest(BaseModel):
    action: ControlAction


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidRequestError):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=502, detail=str(e))


@router.post("", response_model=Call, status_code=201)
async def create_call(
    body: CreateCallRequest,
    dispatcher: CallDispatcher = Depends(get_dispatcher),
) -> Call:
    """Create a call record and dial the contact or number."""
    try:
        return await dispatcher.create_outbound_call(
            contact_id=body.contact_id,
            phone_number=body.phone_number,
            goal=body.goal,
            metadata=body.metadata,
        )
    except (InvalidRequestError, ProviderError) as e:
        logger.warning("create_call_rejected", error_type=type(e).__name__, error=str(e))
        raise _http_error(e)


@router.get("", response_model=list[Call])
async def list_calls(
    limit: int = Query(default=50, ge=1, le=200),
    store: CallStore = Depends(get_store),
) -> list[Call]:
    """Most recent calls first."""
    return await store.list_calls(limit=limit)


@router.get("/{call_id}", response_model=CallDetail)
async def get_call(call_id: str, store: CallStore = Depends(get_store)) -> CallDetail:
    """A call with its conversation log, summary and intent."""
    loaded = await store.load_call_with_history(call_id)
    if loaded is None:
        raise HTTPException(status_code=404, detail="Call not found")
    call, logs = loaded
    return CallDetail(
        call=call,
        logs=logs,
        summary=await store.get_summary(call_id),
        intent=await store.get_intent(call_id),
    )


@router.post("/{call_id}/control", response_model=Call)
async def control_call(
    call_id: str,
    body: ControlRequest,
    dispatcher: CallDispatcher = Depends(get_dispatcher),
) -> Call:
    """Manual control. Only hangup has an effect on the live call today."""
    try:
        return await dispatcher.control(call_id, body.action)
    except (NotFoundError, InvalidRequestError, ProviderError) as e:
        logger.warning("call_control_rejected", call_id=call_id, action=body.action.value, error=str(e))
        raise _http_error(e)
