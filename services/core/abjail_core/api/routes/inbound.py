"""Inbound channel webhooks.

Provides endpoints for:
- POST /api/inbound-email - Mailgun-style forwarded e-mail (form or JSON)
- POST /api/inbound-sms - Twilio SMS/MMS webhook, answered with TwiML

Ingestion runs inline; classification, sender extraction, OCR of MMS media
and landing capture are enqueued on the worker.
"""

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import Response

from abjail_core.api.deps import Dispatcher, IngestConfigDep, IngestServiceDep
from abjail_core.api.schemas import InboundResponse
from abjail_core.channels.email import parse_inbound_email
from abjail_core.channels.sms import EMPTY_TWIML, TWIML_CONTENT_TYPE, parse_twilio_payload
from abjail_core.domain.models import MessageType
from abjail_core.domain.services.pipeline import CeleryPipelineDispatcher
from abjail_core.observability import PipelineContext, get_logger

router = APIRouter(prefix="/api", tags=["inbound"])

logger = get_logger(__name__)


async def read_payload(request: Request) -> dict[str, Any]:
    """Read a webhook body sent as JSON, urlencoded or multipart form."""
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            data = await request.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def enqueue_processing(
    dispatcher: CeleryPipelineDispatcher,
    submission_id: str,
    landing_url: Optional[str],
    context: PipelineContext,
) -> bool:
    """Queue the pipeline; a broker outage must not fail the webhook."""
    try:
        dispatcher.process_submission(submission_id, landing_url)
        return True
    except Exception as e:
        logger.error("inbound:enqueue_failed", context=context, error=str(e), exc_info=True)
        return False


@router.post(
    "/inbound-email",
    response_model=InboundResponse,
    summary="Ingest a forwarded e-mail",
)
async def inbound_email(
    request: Request,
    ingest_service: IngestServiceDep,
    config: IngestConfigDep,
    dispatcher: Dispatcher,
):
    """Ingest a forwarded fundraising e-mail.

    Duplicates answer 200 with duplicate=true and the existing case id.
    """
    payload = await read_payload(request)
    message = parse_inbound_email(payload, config)

    result = await ingest_service.ingest(
        text=message.cleaned_text,
        raw_text=message.raw_text,
        sender_id=message.sender_id,
        message_type=MessageType.EMAIL,
        metadata=message.metadata(),
    )
    context = PipelineContext(submission_id=result.id, stage="inbound", channel="email")

    if result.is_duplicate:
        logger.info("inbound:duplicate", context=context, sender=message.sender_id)
        return InboundResponse(ok=True, id=result.id, duplicate=True)
    if not result.ok or not result.id:
        logger.error("inbound:ingest_failed", context=context, error=result.error)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ingest_failed",
        )

    queued = False
    if result.is_fundraising:
        queued = enqueue_processing(dispatcher, result.id, result.landing_url, context)
    else:
        logger.info("inbound:skipped_non_fundraising", context=context)

    return InboundResponse(
        ok=True,
        id=result.id,
        is_fundraising=result.is_fundraising,
        queued=queued,
    )


@router.post("/inbound-sms", summary="Ingest an SMS/MMS from Twilio")
async def inbound_sms(
    request: Request,
    ingest_service: IngestServiceDep,
    dispatcher: Dispatcher,
):
    """Ingest an SMS or MMS.

    Twilio expects TwiML, so every outcome is an empty <Response/> and
    failures are signalled through the status code only.
    """
    payload = await read_payload(request)
    sms = parse_twilio_payload(payload)

    result = await ingest_service.ingest(
        text=sms.body,
        raw_text=sms.body,
        sender_id=sms.from_number,
        message_type=MessageType.SMS,
        metadata=sms.metadata(),
    )
    context = PipelineContext(submission_id=result.id, stage="inbound", channel="sms")

    if result.is_duplicate:
        logger.info("inbound:duplicate", context=context, sender=sms.from_number)
        return Response(EMPTY_TWIML, media_type=TWIML_CONTENT_TYPE)
    if not result.ok or not result.id:
        logger.error("inbound:ingest_failed", context=context, error=result.error)
        return Response(
            EMPTY_TWIML,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            media_type=TWIML_CONTENT_TYPE,
        )

    if sms.has_media:
        # OCR may reveal fundraising content the body alone does not show
        try:
            dispatcher.ocr_media(result.id, sms.media)
        except Exception as e:
            logger.error("inbound:enqueue_failed", context=context, error=str(e), exc_info=True)
    elif result.is_fundraising:
        enqueue_processing(dispatcher, result.id, result.landing_url, context)
    else:
        logger.info("inbound:skipped_non_fundraising", context=context)

    return Response(EMPTY_TWIML, media_type=TWIML_CONTENT_TYPE)
