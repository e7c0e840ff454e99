"""
In-process Call Store for local development and tests.

Every method mutates state without awaiting part-way through, so each one
is atomic with respect to other coroutines on the same event loop. Data is
lost when the process exits.
"""

from __future__ import annotations

import itertools
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from callpilot.db import CallStore, utcnow
from callpilot.errors import ConflictError
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
from callpilot.services.call_state import next_status


class InMemoryCallStore(CallStore):
    def __init__(self) -> None:
        self.calls: dict[str, Call] = {}
        self.logs: dict[str, list[LogEntry]] = {}
        self.summaries: dict[str, CallSummary] = {}
        self.summary_updated: dict[str, datetime] = {}
        self.intents: dict[str, CallIntent] = {}
        self.contacts: dict[str, Contact] = {}
        self.contact_instructions: dict[str, str] = {}
        self.instructions: list[Instruction] = []
        self._log_ids = itertools.count(1)
        self._last_log_at: Optional[datetime] = None

    # -- Seeding (contacts and instructions are managed outside the core) --

    def add_contact(
        self,
        name: str,
        phone_number: str,
        notes: Optional[str] = None,
        instruction: Optional[str] = None,
    ) -> Contact:
        contact = Contact(
            id=str(uuid4()),
            name=name,
            phone_number=phone_number,
            notes=notes,
            created_at=utcnow(),
        )
        self.contacts[contact.id] = contact
        if instruction:
            self.contact_instructions[contact.id] = instruction
        return contact

    def add_instruction(self, content: str, title: str = "", active: bool = True) -> Instruction:
        instruction = Instruction(id=str(uuid4()), title=title, content=content, active=active)
        self.instructions.append(instruction)
        return instruction

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
        if call_sid and self._by_sid(call_sid):
            raise ConflictError(f"call_sid {call_sid} already assigned")
        call = Call(
            id=str(uuid4()),
            call_sid=call_sid,
            direction=direction,
            status=status,
            goal=goal,
            metadata=metadata_dict(metadata),
            contact_id=contact_id,
            created_at=utcnow(),
            started_at=started_at,
        )
        self.calls[call.id] = call
        self.logs[call.id] = []
        return call.model_copy()

    async def get_call(self, call_id: str) -> Optional[Call]:
        call = self.calls.get(call_id)
        return call.model_copy() if call else None

    async def find_call_by_provider_id(self, call_sid: str) -> Optional[Call]:
        call = self._by_sid(call_sid)
        return call.model_copy() if call else None

    async def list_calls(self, limit: int = 50) -> list[Call]:
        ordered = sorted(self.calls.values(), key=lambda c: c.created_at, reverse=True)
        return [c.model_copy() for c in ordered[:limit]]

    async def assign_provider_id(self, call_id: str, call_sid: str) -> Optional[Call]:
        call = self.calls.get(call_id)
        if call is None or call.call_sid:
            return None
        if self._by_sid(call_sid):
            raise ConflictError(f"call_sid {call_sid} already assigned")
        call.call_sid = call_sid
        return call.model_copy()

    async def update_status(
        self,
        status: CallStatus,
        *,
        call_id: Optional[str] = None,
        call_sid: Optional[str] = None,
        started_at: Optional[datetime] = None,
        ended_at: Optional[datetime] = None,
    ) -> Optional[Call]:
        call = self.calls.get(call_id) if call_id else (self._by_sid(call_sid) if call_sid else None)
        if call is None or next_status(call.status, status) == call.status:
            return None
        call.status = status
        if started_at:
            call.started_at = started_at
        if ended_at:
            call.ended_at = ended_at
        return call.model_copy()

    async def claim_finalization(self, call_id: str) -> bool:
        call = self.calls.get(call_id)
        if call is None or call.finalized_at is not None:
            return False
        call.finalized_at = utcnow()
        return True

    async def release_finalization(self, call_id: str) -> None:
        call = self.calls.get(call_id)
        if call is not None:
            call.finalized_at = None

    # -- Conversation log --

    async def append_log_entry(self, call_id: str, role: LogRole, content: str) -> LogEntry:
        now = utcnow()
        if self._last_log_at and now < self._last_log_at:
            now = self._last_log_at
        self._last_log_at = now
        entry = LogEntry(
            id=next(self._log_ids),
            call_id=call_id,
            role=role,
            content=content,
            created_at=now,
        )
        self.logs.setdefault(call_id, []).append(entry)
        return entry

    async def load_call_with_history(self, call_id: str) -> Optional[tuple[Call, list[LogEntry]]]:
        call = self.calls.get(call_id)
        if call is None:
            return None
        return call.model_copy(), list(self.logs.get(call_id, []))

    # -- Summary / intent --

    async def get_summary(self, call_id: str) -> Optional[CallSummary]:
        summary = self.summaries.get(call_id)
        return summary.model_copy() if summary else None

    async def find_recent_summary(
        self, contact_id: str, exclude_call_id: Optional[str] = None
    ) -> Optional[CallSummary]:
        candidates = [
            s for call_id, s in self.summaries.items()
            if call_id != exclude_call_id
            and not s.is_pending
            and (call := self.calls.get(call_id)) is not None
            and call.contact_id == contact_id
        ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda s: self.summary_updated[s.call_id])
        return latest.model_copy()

    async def upsert_summary(
        self,
        call_id: str,
        summary: str,
        next_steps: Optional[str] = None,
        follow_up_by: Optional[datetime] = None,
    ) -> CallSummary:
        current = self.summaries.get(call_id) or CallSummary(call_id=call_id, summary=summary)
        current.summary = summary
        if next_steps is not None:
            current.next_steps = next_steps
        if follow_up_by is not None:
            current.follow_up_by = follow_up_by
        self.summaries[call_id] = current
        self.summary_updated[call_id] = utcnow()
        return current.model_copy()

    async def record_follow_up(
        self,
        call_id: str,
        next_steps: Optional[str] = None,
        follow_up_by: Optional[datetime] = None,
    ) -> CallSummary:
        current = self.summaries.get(call_id) or CallSummary(call_id=call_id, summary=PENDING_SUMMARY)
        if next_steps is not None:
            current.next_steps = next_steps
        if follow_up_by is not None:
            current.follow_up_by = follow_up_by
        self.summaries[call_id] = current
        self.summary_updated[call_id] = utcnow()
        return current.model_copy()

    async def upsert_intent(self, call_id: str, label: str, confidence: float) -> CallIntent:
        intent = CallIntent(call_id=call_id, label=label, confidence=confidence)
        self.intents[call_id] = intent
        return intent.model_copy()

    async def get_intent(self, call_id: str) -> Optional[CallIntent]:
        intent = self.intents.get(call_id)
        return intent.model_copy() if intent else None

    # -- Contacts / instructions --

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        return self.contacts.get(contact_id)

    async def find_contact_by_phone_number(self, phone_number: str) -> Optional[Contact]:
        return next((c for c in self.contacts.values() if c.phone_number == phone_number), None)

    async def get_contact_instruction(self, contact_id: str) -> Optional[str]:
        return self.contact_instructions.get(contact_id)

    async def list_active_instructions(self) -> list[Instruction]:
        return [i for i in self.instructions if i.active]

    def _by_sid(self, call_sid: str) -> Optional[Call]:
        return next((c for c in self.calls.values() if c.call_sid == call_sid), None)
