"""
API Router — Twilio Webhooks.

The voice webhook answers every delivery with TwiML, including on failure,
so the caller always hears something and the call never hangs on a
transport error. The status webhook always acknowledges. Finalization is
scheduled as a background task so Twilio gets its answer first.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response

from callpilot.api.deps import get_app_settings, get_orchestrator
from callpilot.config import Settings
from callpilot.logging_config import get_logger
from callpilot.schemas.webhook import StatusWebhookEvent, VoiceWebhookEvent
from callpilot.services.call_orchestrator import CallOrchestrator, WebhookReply
from callpilot.services.telephony import signature_is_valid

logger = get_logger(__name__)
router = APIRouter(prefix="/twilio", tags=["Twilio"])

TWIML_MEDIA_TYPE = "application/xml"


def _public_url(request: Request, settings: Settings) -> str:
    """The URL Twilio signed: our public base plus the path and query it called."""
    url = f"{settings.public_base_url.rstrip('/')}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


async def verify_twilio_signature(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> None:
    if not settings.twilio_validate_signatures:
        return

    form = await request.form()
    signature = request.headers.get("X-Twilio-Signature", "")
    if not signature_is_valid(settings.twilio_auth_token, _public_url(request, settings), form, signature):
        logger.warning("twilio_signature_invalid", path=request.url.path)
        raise HTTPException(status_code=403, detail="Invalid signature")


def _schedule_finalization(
    reply: WebhookReply,
    orchestrator: CallOrchestrator,
    background_tasks: BackgroundTasks,
) -> None:
    if reply.finalize_call_id:
        background_tasks.add_task(orchestrator.finalize_call, reply.finalize_call_id)


@router.post("/voice", dependencies=[Depends(verify_twilio_signature)])
async def voice_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    orchestrator: CallOrchestrator = Depends(get_orchestrator),
) -> Response:
    """Call connect and every gathered speech turn."""
    form = await request.form()
    event = VoiceWebhookEvent.from_request(request.query_params, form)
    logger.info(
        "voice_webhook_received",
        call_ref=event.call_id,
        call_sid=event.call_sid,
        turn=event.turn,
        has_speech=bool(event.speech_result),
    )

    reply = await orchestrator.handle_voice_webhook(event)
    _schedule_finalization(reply, orchestrator, background_tasks)
    return Response(content=reply.markup or "", media_type=TWIML_MEDIA_TYPE)


@router.post("/status", dependencies=[Depends(verify_twilio_signature)])
async def status_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    orchestrator: CallOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Call progress events (initiated, ringing, answered, completed)."""
    form = await request.form()
    event = StatusWebhookEvent.from_form(form)
    logger.info("status_webhook_received", call_sid=event.call_sid, call_status=event.call_status)

    reply = await orchestrator.handle_status_webhook(event)
    _schedule_finalization(reply, orchestrator, background_tasks)
    return {"ok": True}
