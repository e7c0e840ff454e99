"""
Contacts and standing instructions, read by the call services when they
assemble generation context. They are managed elsewhere and never written
here.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class Contact(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    phone_number: str
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class Instruction(BaseModel):
    """A globally active behavioral directive."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str = ""
    content: str
    active: bool = True
