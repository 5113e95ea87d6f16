"""Inbound SMS/MMS adapter (Twilio webhook)."""

from dataclasses import dataclass, field
from typing import Mapping, Optional

from abjail_core.domain.services.ingest import ChannelMetadata

SMS_IMAGE_PLACEHOLDER = "sms://no-image"
EMPTY_TWIML = "<Response></Response>"
TWIML_CONTENT_TYPE = "text/xml; charset=utf-8"


@dataclass
class InboundSms:
    """Fields extracted from one Twilio webhook call."""

    from_number: Optional[str]
    body: str
    media: list[dict] = field(default_factory=list)

    @property
    def has_media(self) -> bool:
        return bool(self.media)

    def metadata(self) -> ChannelMetadata:
        return ChannelMetadata(
            image_url=SMS_IMAGE_PLACEHOLDER,
            media_urls=list(self.media),
        )


def _field(fields: Mapping, *names: str) -> str:
    for name in names:
        value = fields.get(name)
        if value:
            return str(value)
    return ""


def parse_twilio_payload(fields: Mapping) -> InboundSms:
    """Read From, Body and the MediaUrlN/MediaContentTypeN pairs.

    A NumMedia value that is missing or not a number counts as zero.
    """
    try:
        num_media = int(_field(fields, "NumMedia", "numMedia") or 0)
    except ValueError:
        num_media = 0

    media = []
    for index in range(max(0, num_media)):
        url = _field(fields, f"MediaUrl{index}")
        if not url:
            continue
        content_type = _field(fields, f"MediaContentType{index}") or "application/octet-stream"
        media.append({"url": url, "content_type": content_type})

    return InboundSms(
        from_number=_field(fields, "From", "from").strip() or None,
        body=_field(fields, "Body", "body"),
        media=media,
    )
