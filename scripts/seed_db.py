"""
Database Seeding Script.

Populates `contacts`, `contact_instructions` and `custom_instructions`
with sample data for testing.
"""

import asyncio
import os
import sys

# Add project root to path so we can import callpilot
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dotenv import load_dotenv
load_dotenv(".env.local")

from callpilot.config import get_settings
from callpilot.db import SupabaseCallStore
from callpilot.logging_config import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)

SAMPLE_CONTACTS = [
    {
        "name": "Dana Whitfield",
        "phone_number": "+15550101",
        "notes": "Prefers mornings. Owns the bakery on 5th street.",
        "instruction": "Always confirm the delivery window before ending the call.",
    },
    {
        "name": "Marcus Lee",
        "phone_number": "+15550102",
        "notes": "Property manager for the Oak Street building.",
        "instruction": None,
    },
]

SAMPLE_INSTRUCTIONS = [
    {
        "title": "Identify yourself",
        "content": "Introduce yourself as calling on behalf of the account owner.",
        "active": True,
    },
]


async def seed() -> None:
    store = await SupabaseCallStore.connect(get_settings())
    client = store.client

    logger.info("seeding_started")

    for sample in SAMPLE_CONTACTS:
        existing = await store.find_contact_by_phone_number(sample["phone_number"])
        if existing:
            logger.info("contact_exists", name=sample["name"], id=existing.id)
            continue

        result = await client.table("contacts").insert({
            "name": sample["name"],
            "phone_number": sample["phone_number"],
            "notes": sample["notes"],
        }).execute()
        if not result.data:
            logger.error("contact_insert_failed", name=sample["name"])
            continue

        contact_id = result.data[0]["id"]
        logger.info("contact_created", name=sample["name"], id=contact_id)

        if sample["instruction"]:
            await client.table("contact_instructions").insert({
                "contact_id": contact_id,
                "content": sample["instruction"],
            }).execute()

    for instruction in SAMPLE_INSTRUCTIONS:
        existing = await client.table("custom_instructions").select("id").eq("title", instruction["title"]).execute()
        if existing.data:
            logger.info("instruction_exists", title=instruction["title"])
        else:
            await client.table("custom_instructions").insert(instruction).execute()
            logger.info("instruction_created", title=instruction["title"])

    logger.info("seeding_complete")


if __name__ == "__main__":
    asyncio.run(seed())
