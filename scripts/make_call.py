"""
CLI tool to place an outbound call.

Usage:
    python scripts/make_call.py --phone +15551234567 [--goal "..."]
    python scripts/make_call.py --contact-id <uuid> [--goal "..."]

Examples:
    # Call a saved contact (from the DB)
    python scripts/make_call.py --contact-id abc123-def456 --goal "Confirm Friday's appointment"

    # Quick test call to a phone number
    python scripts/make_call.py --phone +15551234567 --goal "Ask about opening hours"

The API server must be reachable at PUBLIC_BASE_URL so Twilio can deliver
the voice and status webhooks.
"""

import argparse
import asyncio
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dotenv import load_dotenv
load_dotenv(".env.local")

from callpilot.config import get_settings
from callpilot.db import SupabaseCallStore
from callpilot.errors import CallPilotError
from callpilot.logging_config import get_logger, setup_logging
from callpilot.services.call_dispatcher import CallDispatcher
from callpilot.services.telephony import TwilioTelephony

setup_logging()
logger = get_logger(__name__)


async def make_call(
    contact_id: str | None = None,
    phone: str | None = None,
    goal: str | None = None,
) -> bool:
    """Dispatch a single outbound call."""
    settings = get_settings()
    store = await SupabaseCallStore.connect(settings)

    try:
        dispatcher = CallDispatcher(store, TwilioTelephony.from_settings(settings), settings)
        call = await dispatcher.create_outbound_call(
            contact_id=contact_id,
            phone_number=phone,
            goal=goal,
            metadata={"source": "cli"},
        )
    except CallPilotError as e:
        print(f"Call dispatch failed: {e}")
        return False
    finally:
        await store.close()

    print(f"Call dispatched: {call.id} (Twilio SID {call.call_sid})")
    print(f"Follow it with: GET /calls/{call.id}")
    return True


def main() -> None:
    parser = argparse.ArgumentParser(description="Place an outbound call")
    parser.add_argument("--contact-id", help="Contact UUID from DB")
    parser.add_argument("--phone", help="Phone number to dial directly")
    parser.add_argument("--goal", help="What the agent should accomplish on the call")

    args = parser.parse_args()

    if bool(args.contact_id) == bool(args.phone):
        parser.error("Provide exactly one of --contact-id or --phone")

    ok = asyncio.run(make_call(
        contact_id=args.contact_id,
        phone=args.phone,
        goal=args.goal,
    ))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
