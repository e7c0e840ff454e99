"""
Call Store.

Defines the persistence operations the call services rely on and the
Supabase-backed implementation used in deployments. Status changes are
conditional updates keyed on the current status, and finalization is
claimed through a conditional write on ``finalized_at``, so concurrent
webhook deliveries for the same call cannot both win.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient, acreate_client

from callpilot.config import Settings
from callpilot.errors import ConfigurationError, ConflictError, StoreError
from callpilot.logging_config import get_logger
from callpilot.schemas.call import (
    PENDING_SUMMARY,
    Call,
    CallDirection,
    CallIntent,
    CallMetadata,
    CallStatus,
    CallSummary,
    LogEntry,
    LogRole,
    metadata_dict,
)
from callpilot.schemas.contact import Contact, Instruction
from callpilot.services.call_state import statuses_below

logger = get_logger(__name__)

UNIQUE_VIOLATION = "23505"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallStore(ABC):
    """Persistence operations required by the orchestrator and dispatcher."""

    # -- Calls --

    @abstractmethod
    async def create_call(
        self,
        direction: CallDirection,
        *,
        status: CallStatus = CallStatus.PENDING,
        call_sid: Optional[str] = None,
        contact_id: Optional[str] = None,
        goal: Optional[str] = None,
        metadata: CallMetadata | dict[str, Any] | None = None,
        started_at: Optional[datetime] = None,
    ) -> Call:
        """Insert a call. Raises ConflictError if ``call_sid`` is taken."""

    @abstractmethod
    async def get_call(self, call_id: str) -> Optional[Call]: ...

    @abstractmethod
    async def find_call_by_provider_id(self, call_sid: str) -> Optional[Call]: ...

    @abstractmethod
    async def list_calls(self, limit: int = 50) -> list[Call]:
        """Most recent calls first."""

    @abstractmethod
    async def assign_provider_id(self, call_id: str, call_sid: str) -> Optional[Call]:
        """Set the provider call SID if the call does not have one yet."""

    @abstractmethod
    async def update_status(
        self,
        status: CallStatus,
        *,
        call_id: Optional[str] = None,
        call_sid: Optional[str] = None,
        started_at: Optional[datetime] = None,
        ended_at: Optional[datetime] = None,
    ) -> Optional[Call]:
        """
        Move a call forward to ``status``.

        Only applies when the current status ranks strictly lower. Returns the
        updated call, or None when nothing matched (unknown call, or a stale /
        duplicate transition).
        """

    @abstractmethod
    async def claim_finalization(self, call_id: str) -> bool:
        """Stamp ``finalized_at`` if unset. True only for the caller that set it."""

    @abstractmethod
    async def release_finalization(self, call_id: str) -> None:
        """Clear ``finalized_at`` so a failed finalization can be retried."""

    # -- Conversation log --

    @abstractmethod
    async def append_log_entry(self, call_id: str, role: LogRole, content: str) -> LogEntry: ...

    @abstractmethod
    async def load_call_with_history(self, call_id: str) -> Optional[tuple[Call, list[LogEntry]]]:
        """The call and its log entries in creation order."""

    # -- Summary / intent --

    @abstractmethod
    async def get_summary(self, call_id: str) -> Optional[CallSummary]: ...

    @abstractmethod
    async def find_recent_summary(
        self, contact_id: str, exclude_call_id: Optional[str] = None
    ) -> Optional[CallSummary]:
        """Latest finished summary of another call with this contact."""

    @abstractmethod
    async def upsert_summary(
        self,
        call_id: str,
        summary: str,
        next_steps: Optional[str] = None,
        follow_up_by: Optional[datetime] = None,
    ) -> CallSummary:
        """Overwrite the summary text; next steps / follow-up only when given."""

    @abstractmethod
    async def record_follow_up(
        self,
        call_id: str,
        next_steps: Optional[str] = None,
        follow_up_by: Optional[datetime] = None,
    ) -> CallSummary:
        """Update follow-up fields, creating a pending summary if none exists."""

    @abstractmethod
    async def upsert_intent(self, call_id: str, label: str, confidence: float) -> CallIntent: ...

    @abstractmethod
    async def get_intent(self, call_id: str) -> Optional[CallIntent]: ...

    # -- Contacts / instructions (read-only) --

    @abstractmethod
    async def get_contact(self, contact_id: str) -> Optional[Contact]: ...

    @abstractmethod
    async def find_contact_by_phone_number(self, phone_number: str) -> Optional[Contact]: ...

    @abstractmethod
    async def get_contact_instruction(self, contact_id: str) -> Optional[str]: ...

    @abstractmethod
    async def list_active_instructions(self) -> list[Instruction]: ...

    async def close(self) -> None:
        """Release connections."""


class SupabaseCallStore(CallStore):
    """CallStore over the Supabase (PostgREST) async client."""

    def __init__(self, client: AsyncClient) -> None:
        self._client = client

    @classmethod
    async def connect(cls, settings: Settings) -> SupabaseCallStore:
        if not settings.supabase_url or not settings.supabase_service_key:
            raise ConfigurationError("Supabase URL and service key are required for the supabase store")
        try:
            client = await acreate_client(settings.supabase_url, settings.supabase_service_key)
        except Exception as e:
            logger.error("supabase_client_init_failed", error=str(e))
            raise
        logger.info("supabase_client_initialized", url=settings.supabase_url)
        return cls(client)

    @property
    def client(self) -> AsyncClient:
        return self._client

    async def _execute(self, op: str, query: Any) -> list[dict[str, Any]]:
        try:
            response = await query.execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise ConflictError(f"{op}: {e.message}") from e
            logger.error("store_query_failed", op=op, code=e.code, error=e.message)
            raise StoreError(f"{op} failed: {e.message}") from e
        except httpx.HTTPError as e:
            logger.error("store_unreachable", op=op, error=str(e))
            raise StoreError(f"{op} failed: {e}") from e
        data = response.data if response is not None else None
        if data is None:
            return []
        return data if isinstance(data, list) else [data]

    async def _first(self, op: str, query: Any) -> Optional[dict[str, Any]]:
        rows = await self._execute(op, query)
        return rows[0] if rows else None

    # -- Calls --

    async def create_call(
        self,
        direction: CallDirection,
        *,
        status: CallStatus = CallStatus.PENDING,
        call_sid: Optional[str] = None,
        contact_id: Optional[str] = None,
        goal: Optional[str] = None,
        metadata: CallMetadata | dict[str, Any] | None = None,
        started_at: Optional[datetime] = None,
    ) -> Call:
        payload: dict[str, Any] = {
            "direction": direction.value,
            "status": status.value,
            "call_sid": call_sid,
            "contact_id": contact_id,
            "goal": goal,
            "metadata": metadata_dict(metadata),
        }
        if started_at:
            payload["started_at"] = started_at.isoformat()
        row = await self._first("create_call", self.client.table("calls").insert(payload))
        if row is None:
            raise StoreError("create_call returned no row")
        return Call.model_validate(row)

    async def get_call(self, call_id: str) -> Optional[Call]:
        row = await self._first(
            "get_call",
            self.client.table("calls").select("*").eq("id", call_id).limit(1),
        )
        return Call.model_validate(row) if row else None

    async def find_call_by_provider_id(self, call_sid: str) -> Optional[Call]:
        row = await self._first(
            "find_call_by_provider_id",
            self.client.table("calls").select("*").eq("call_sid", call_sid).limit(1),
        )
        return Call.model_validate(row) if row else None

    async def list_calls(self, limit: int = 50) -> list[Call]:
        rows = await self._execute(
            "list_calls",
            self.client.table("calls").select("*").order("created_at", desc=True).limit(limit),
        )
        return [Call.model_validate(row) for row in rows]

    async def assign_provider_id(self, call_id: str, call_sid: str) -> Optional[Call]:
        row = await self._first(
            "assign_provider_id",
            self.client.table("calls")
            .update({"call_sid": call_sid})
            .eq("id", call_id)
            .is_("call_sid", "null"),
        )
        return Call.model_validate(row) if row else None

    async def update_status(
        self,
        status: CallStatus,
        *,
        call_id: Optional[str] = None,
        call_sid: Optional[str] = None,
        started_at: Optional[datetime] = None,
        ended_at: Optional[datetime] = None,
    ) -> Optional[Call]:
        if not call_id and not call_sid:
            return None
        allowed = [s.value for s in statuses_below(status)]
        if not allowed:
            return None

        updates: dict[str, Any] = {"status": status.value}
        if started_at:
            updates["started_at"] = started_at.isoformat()
        if ended_at:
            updates["ended_at"] = ended_at.isoformat()

        query = self.client.table("calls").update(updates).in_("status", allowed)
        query = query.eq("id", call_id) if call_id else query.eq("call_sid", call_sid)
        row = await self._first("update_status", query)
        return Call.model_validate(row) if row else None

    async def claim_finalization(self, call_id: str) -> bool:
        row = await self._first(
            "claim_finalization",
            self.client.table("calls")
            .update({"finalized_at": utcnow().isoformat()})
            .eq("id", call_id)
            .is_("finalized_at", "null"),
        )
        return row is not None

    async def release_finalization(self, call_id: str) -> None:
        await self._execute(
            "release_finalization",
            self.client.table("calls")
            .update({"finalized_at": None})
            .eq("id", call_id)
            .not_.is_("finalized_at", "null"),
        )

    # -- Conversation log --

    async def append_log_entry(self, call_id: str, role: LogRole, content: str) -> LogEntry:
        row = await self._first(
            "append_log_entry",
            self.client.table("call_logs").insert(
                {"call_id": call_id, "role": role.value, "content": content}
            ),
        )
        if row is None:
            raise StoreError("append_log_entry returned no row")
        return LogEntry.model_validate(row)

    async def load_call_with_history(self, call_id: str) -> Optional[tuple[Call, list[LogEntry]]]:
        call = await self.get_call(call_id)
        if call is None:
            return None
        rows = await self._execute(
            "load_history",
            self.client.table("call_logs")
            .select("*")
            .eq("call_id", call_id)
            .order("created_at")
            .order("id"),
        )
        return call, [LogEntry.model_validate(row) for row in rows]

    # -- Summary / intent --

    async def get_summary(self, call_id: str) -> Optional[CallSummary]:
        row = await self._first(
            "get_summary",
            self.client.table("call_summaries").select("*").eq("call_id", call_id).limit(1),
        )
        return CallSummary.model_validate(row) if row else None

    async def find_recent_summary(
        self, contact_id: str, exclude_call_id: Optional[str] = None
    ) -> Optional[CallSummary]:
        query = (
            self.client.table("call_summaries")
            .select("call_id, summary, next_steps, follow_up_by, calls!inner(contact_id)")
            .eq("calls.contact_id", contact_id)
            .neq("summary", PENDING_SUMMARY)
        )
        if exclude_call_id:
            query = query.neq("call_id", exclude_call_id)
        row = await self._first(
            "find_recent_summary",
            query.order("updated_at", desc=True).limit(1),
        )
        if not row:
            return None
        row.pop("calls", None)
        return CallSummary.model_validate(row)

    async def upsert_summary(
        self,
        call_id: str,
        summary: str,
        next_steps: Optional[str] = None,
        follow_up_by: Optional[datetime] = None,
    ) -> CallSummary:
        payload: dict[str, Any] = {
            "call_id": call_id,
            "summary": summary,
            "updated_at": utcnow().isoformat(),
        }
        if next_steps is not None:
            payload["next_steps"] = next_steps
        if follow_up_by is not None:
            payload["follow_up_by"] = follow_up_by.isoformat()
        row = await self._first(
            "upsert_summary",
            self.client.table("call_summaries").upsert(payload, on_conflict="call_id"),
        )
        if row is None:
            raise StoreError("upsert_summary returned no row")
        return CallSummary.model_validate(row)

    async def record_follow_up(
        self,
        call_id: str,
        next_steps: Optional[str] = None,
        follow_up_by: Optional[datetime] = None,
    ) -> CallSummary:
        await self._execute(
            "record_follow_up_placeholder",
            self.client.table("call_summaries").upsert(
                {"call_id": call_id, "summary": PENDING_SUMMARY},
                on_conflict="call_id",
                ignore_duplicates=True,
            ),
        )
        updates: dict[str, Any] = {"updated_at": utcnow().isoformat()}
        if next_steps is not None:
            updates["next_steps"] = next_steps
        if follow_up_by is not None:
            updates["follow_up_by"] = follow_up_by.isoformat()
        row = await self._first(
            "record_follow_up",
            self.client.table("call_summaries").update(updates).eq("call_id", call_id),
        )
        if row is None:
            raise StoreError("record_follow_up returned no row")
        return CallSummary.model_validate(row)

    async def upsert_intent(self, call_id: str, label: str, confidence: float) -> CallIntent:
        row = await self._first(
            "upsert_intent",
            self.client.table("call_intents").upsert(
                {"call_id": call_id, "label": label, "confidence": confidence},
                on_conflict="call_id",
            ),
        )
        if row is None:
            raise StoreError("upsert_intent returned no row")
        return CallIntent.model_validate(row)

    async def get_intent(self, call_id: str) -> Optional[CallIntent]:
        row = await self._first(
            "get_intent",
            self.client.table("call_intents").select("*").eq("call_id", call_id).limit(1),
        )
        return CallIntent.model_validate(row) if row else None

    # -- Contacts / instructions --

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        row = await self._first(
            "get_contact",
            self.client.table("contacts").select("*").eq("id", contact_id).limit(1),
        )
        return Contact.model_validate(row) if row else None

    async def find_contact_by_phone_number(self, phone_number: str) -> Optional[Contact]:
        row = await self._first(
            "find_contact_by_phone_number",
            self.client.table("contacts").select("*").eq("phone_number", phone_number).limit(1),
        )
        return Contact.model_validate(row) if row else None

    async def get_contact_instruction(self, contact_id: str) -> Optional[str]:
        row = await self._first(
            "get_contact_instruction",
            self.client.table("contact_instructions")
            .select("content")
            .eq("contact_id", contact_id)
            .limit(1),
        )
        return (row or {}).get("content") or None

    async def list_active_instructions(self) -> list[Instruction]:
        rows = await self._execute(
            "list_active_instructions",
            self.client.table("custom_instructions")
            .select("*")
            .eq("active", True)
            .order("created_at"),
        )
        return [Instruction.model_validate(row) for row in rows]
