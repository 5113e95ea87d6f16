"""Inbound e-mail adapter.

Turns a forwarded fundraising e-mail (Mailgun webhook fields) into the
arguments of IngestService.ingest(). Subscribers forward messages to us,
so the envelope sender is the forwarder and the real sender has to be
recovered from the forwarded headers in the body.

Usage:
    message = parse_inbound_email(form_fields, config)
    result = await ingest_service.ingest(
        text=message.cleaned_text,
        raw_text=message.raw_text,
        sender_id=message.sender_id,
        message_type=MessageType.EMAIL,
        metadata=message.metadata(),
    )
"""

import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional
from urllib.parse import urlsplit

from bs4 import BeautifulSoup, Comment, NavigableString

from abjail_core.config import IngestConfig
from abjail_core.domain.services.ingest import ChannelMetadata
from abjail_core.domain.services.text_normalizer import (
    clean_text_for_ai,
    host_matches,
    strip_html,
)

# =============================================================================
# CONSTANTS
# =============================================================================

EMAIL_IMAGE_PLACEHOLDER = "email://no-image"
SENDER_SCAN_LINES = 50
REDACTED = "[redacted]"

EMAIL_ADDRESS_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")

# Gmail:   From: Name <addr>            Apple Mail: From: "Name" <addr>
# Outlook: From: Name [mailto:addr]     plain text: *From:* addr
FROM_LINE_RE = re.compile(r"^[\s>*]*From:\**\s*(.*)$", re.IGNORECASE)

FORWARD_MARKER_RE = re.compile(
    r"^\s*(?:-+\s*(?:Forwarded message|Original Message)\s*-+|Begin forwarded message:)\s*$",
    re.IGNORECASE,
)
FORWARD_HEADER_RE = re.compile(r"^[\s>*]*(From|Date|Sent|Subject|To|Cc):\**\s*", re.IGNORECASE)
KEPT_FORWARD_HEADERS = {"from", "date", "sent", "subject"}

UNSUBSCRIBE_TEXT_RE = re.compile(r"click here to unsubscribe[^<\n]*", re.IGNORECASE)


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class InboundEmail:
    """Fields extracted from one inbound e-mail."""

    envelope_sender: Optional[str]
    sender_id: Optional[str]
    subject: Optional[str]
    raw_text: str
    cleaned_text: str
    sanitized_html: Optional[str]
    html: Optional[str] = None

    def metadata(self) -> ChannelMetadata:
        return ChannelMetadata(
            image_url=EMAIL_IMAGE_PLACEHOLDER,
            html=self.html,
            forwarder_email=self.envelope_sender,
            email_subject=self.subject,
            email_body=self.sanitized_html,
        )


# =============================================================================
# FORWARDED HEADERS
# =============================================================================


def extract_original_sender(text: Optional[str]) -> Optional[str]:
    """Find the original sender address in a forwarded body.

    Only the first lines are scanned; the first From: line with an address
    wins.
    """
    if not text:
        return None
    for line in text.splitlines()[:SENDER_SCAN_LINES]:
        match = FROM_LINE_RE.match(line)
        address = EMAIL_ADDRESS_RE.search(match.group(1)) if match else None
        if address:
            return address.group(0).lower()
    return None


def strip_forward_headers(text: Optional[str]) -> str:
    """Remove forwarding wrappers but keep From/Date/Subject metadata.

    Separator lines ("---------- Forwarded message ---------", "Begin
    forwarded message:") are dropped together with the To/Cc lines of the
    header block, which carry the subscriber's address.
    """
    if not text:
        return ""
    out: list[str] = []
    in_header = False
    for line in text.splitlines():
        if FORWARD_MARKER_RE.match(line):
            in_header = True
            continue
        if in_header:
            header = FORWARD_HEADER_RE.match(line)
            if header:
                if header.group(1).lower() in KEPT_FORWARD_HEADERS:
                    out.append(line.strip())
                continue
            if line.strip():
                in_header = False
        out.append(line)
    return "\n".join(out).strip()


def redact_honeytrap(text: Optional[str], patterns: Iterable[str]) -> str:
    """Replace every configured honeytrap address (case-insensitive)."""
    if not text:
        return text or ""
    for pattern in patterns:
        if pattern:
            text = re.sub(re.escape(pattern), REDACTED, text, flags=re.IGNORECASE)
    return text


# =============================================================================
# HTML SANITIZER
# =============================================================================


def mask_email(address: str) -> str:
    """Mask an address keeping only its top-level domain."""
    _, _, domain = address.partition("@")
    tld = domain.rsplit(".", 1)[-1] if "." in domain else ""
    if not tld:
        return "****@****.***"
    return f"{'*' * 7}@{'*' * 7}.{tld}"


def _mask_addresses(value: str) -> str:
    def _replace(match: re.Match) -> str:
        before = value[max(0, match.start() - 30):match.start()]
        if re.search(r"From:\s*[^\n]*$", before, re.IGNORECASE):
            return match.group(0)
        return mask_email(match.group(0))

    return EMAIL_ADDRESS_RE.sub(_replace, value)


def _is_tracking_pixel(tag) -> bool:
    return str(tag.get("width", "")).strip() == "1" or str(tag.get("height", "")).strip() == "1"


def sanitize_email_html(html: Optional[str], platform_domains: Iterable[str]) -> Optional[str]:
    """Sanitize an e-mail HTML body for public display.

    Platform links are kept without their query string; every other link
    is unwrapped to its text so tracking and unsubscribe links cannot reveal
    the honeytrap address. Recipient addresses are masked (From: addresses
    are kept), event handler attributes, scripts and 1x1 pixels removed.
    """
    if not html:
        return None
    domains = list(platform_domains)
    soup = BeautifulSoup(html, "html.parser")

    for tag in soup(["script", "iframe", "object", "embed"]):
        tag.decompose()
    for node in soup.find_all(string=lambda s: isinstance(s, Comment)):
        node.extract()

    for tag in soup.find_all(True):
        for attr in [a for a in tag.attrs if a.lower().startswith("on")]:
            del tag[attr]

    for img in soup.find_all("img"):
        if _is_tracking_pixel(img):
            img.decompose()

    for link in soup.find_all("a"):
        text = link.get_text(strip=True)
        if text.lower() == "unsubscribe":
            link.decompose()
            continue
        href = (link.get("href") or "").strip()
        try:
            parts = urlsplit(href)
        except ValueError:
            link.unwrap()
            continue
        if parts.scheme in ("http", "https") and host_matches(parts.hostname, domains):
            link.attrs = {
                "href": f"{parts.scheme}://{parts.hostname}{parts.path}",
                "target": "_blank",
                "rel": "noopener noreferrer",
            }
        else:
            link.unwrap()

    for node in soup.find_all(string=True):
        if isinstance(node, Comment):
            continue
        original = str(node)
        updated = UNSUBSCRIBE_TEXT_RE.sub("", _mask_addresses(original))
        if updated != original:
            node.replace_with(NavigableString(updated))

    return str(soup)


# =============================================================================
# PAYLOAD PARSING
# =============================================================================


def _first(fields: Mapping, *names: str) -> str:
    for name in names:
        value = fields.get(name)
        if value:
            return str(value)
    return ""


def parse_inbound_email(fields: Mapping, config: IngestConfig) -> InboundEmail:
    """Extract and clean the fields of a Mailgun-style webhook payload."""
    envelope = _first(fields, "sender", "from", "From").strip() or None
    subject = _first(fields, "subject", "Subject").strip() or None
    body_plain = _first(fields, "body-plain", "stripped-text", "text")
    body_html = _first(fields, "body-html", "stripped-html", "html")

    raw_text = body_plain or strip_html(body_html)
    detected = extract_original_sender(raw_text)

    raw_text = redact_honeytrap(strip_forward_headers(raw_text), config.honeytrap_patterns)
    cleaned = clean_text_for_ai(raw_text, config.platform_domains)
    sanitized = sanitize_email_html(body_html, config.platform_domains)
    if sanitized:
        sanitized = redact_honeytrap(sanitized, config.honeytrap_patterns)

    envelope_address = None
    if envelope:
        match = EMAIL_ADDRESS_RE.search(envelope)
        envelope_address = match.group(0).lower() if match else envelope

    return InboundEmail(
        envelope_sender=envelope_address,
        sender_id=detected or envelope_address,
        subject=subject,
        raw_text=raw_text,
        cleaned_text=cleaned,
        sanitized_html=sanitized,
        html=body_html or None,
    )
