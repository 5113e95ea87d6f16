"""Text normalization for fingerprinting and prompt preparation.

normalize() produces the canonical form that dedupe fingerprints are
computed from. The remaining helpers prepare inbound text for the
classifier prompt and for display.

Usage:
    normalize("Chip in $5 now! https://x.example/a")  # "chip in 5 now"

    cleaned = clean_text_for_ai(body, platform_domains=["actblue.com"])
"""

import re
from typing import Iterable, Optional
from urllib.parse import urlsplit

from bs4 import BeautifulSoup


# =============================================================================
# PATTERNS
# =============================================================================

HTML_TAG_RE = re.compile(r"<[^>]+>")
URL_RE = re.compile(r"https?://\S+|www\.\S+")
EMAIL_RE = re.compile(r"[a-z0-9._%+-]+@[a-z0-9.-]+\.[a-z]{2,}", re.IGNORECASE)
NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
WHITESPACE_RE = re.compile(r"\s+")

INVISIBLE_RE = re.compile("[\u200b-\u200d\ufeff\u00a0\u2060\u180e]")
FORWARD_BLOCK_RE = re.compile(
    r"^-+\s*Forwarded message\s*-+.*?\n(?:(?:From|Date|Subject|To):.*?\n)+",
    re.IGNORECASE | re.MULTILINE,
)
PROMPT_URL_RE = re.compile(r"https?://[^\s<>\"')]+")
UNSUBSCRIBE_CLICK_RE = re.compile(
    r"click here to (?:unsubscribe|receive fewer emails).*?(?:\n|$)", re.IGNORECASE
)
UNSUBSCRIBE_LINE_RE = re.compile(r"^unsubscribe.*?$", re.IGNORECASE | re.MULTILINE)
SEPARATOR_LINE_RE = re.compile(r"^-{5,}$", re.MULTILINE)
PO_BOX_RE = re.compile(r"P\.O\. Box \d+.*?\n.*?\d{5}", re.IGNORECASE)
IMAGE_ALT_RE = re.compile(r"\[image:[^\]]+\]", re.IGNORECASE)

MOJIBAKE_RE = re.compile("(?:\u00c3.|\u00c2.|\u00e2\u20ac)")

PUNCTUATION_MAP = {
    "\u2018": "'", "\u2019": "'", "\u201b": "'", "\u2032": "'",
    "\u201c": '"', "\u201d": '"', "\u201f": '"', "\u2033": '"',
    "\u2014": "-", "\u2015": "-", "\u2013": "-",
    "\u2026": "...",
    "\u00a0": " ", "\u202f": " ", "\u2007": " ",
    "\u200b": "", "\u200c": "", "\u200d": "", "\ufeff": "",
}


# =============================================================================
# NORMALIZATION
# =============================================================================


def normalize(raw: Optional[str]) -> str:
    """Canonicalize text for fingerprinting.

    Lowercases, replaces HTML tags, URLs, e-mail addresses and every
    character outside [a-z0-9] and whitespace with spaces, then collapses
    whitespace. The function is pure and idempotent.

    Args:
        raw: Arbitrary inbound text (may be None).

    Returns:
        Normalized text, possibly empty.
    """
    text = (raw or "").lower()
    text = HTML_TAG_RE.sub(" ", text)
    text = URL_RE.sub(" ", text)
    text = EMAIL_RE.sub(" ", text)
    text = NON_ALNUM_RE.sub(" ", text)
    return WHITESPACE_RE.sub(" ", text).strip()


def host_matches(host: Optional[str], domains: Iterable[str]) -> bool:
    """True when host equals one of the domains or is a subdomain of it."""
    if not host:
        return False
    host = host.lower().rstrip(".")
    for domain in domains:
        domain = domain.lower()
        if host == domain or host.endswith("." + domain):
            return True
    return False


def strip_query(url: str) -> str:
    """Drop the query string and fragment from a URL."""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}{parts.path}"


# =============================================================================
# PROMPT PREPARATION
# =============================================================================


def clean_text_for_ai(text: Optional[str], platform_domains: Iterable[str]) -> str:
    """Reduce noise in message text before it is sent to the classifier.

    Platform links are kept without their query string; every other link
    becomes ``[LINK]``. Paid-for-by disclaimers are kept since the sender
    stage relies on them.
    """
    if not text:
        return ""
    domains = list(platform_domains)

    cleaned = INVISIBLE_RE.sub("", text)
    cleaned = FORWARD_BLOCK_RE.sub("", cleaned)

    def _replace_url(match: re.Match) -> str:
        url = match.group(0)
        try:
            parts = urlsplit(url)
        except ValueError:
            return "[LINK]"
        if host_matches(parts.hostname, domains):
            return f"{parts.scheme}://{parts.hostname}{parts.path}"
        return "[LINK]"

    cleaned = PROMPT_URL_RE.sub(_replace_url, cleaned)
    cleaned = UNSUBSCRIBE_CLICK_RE.sub("", cleaned)
    cleaned = UNSUBSCRIBE_LINE_RE.sub("", cleaned)
    cleaned = SEPARATOR_LINE_RE.sub("", cleaned)
    cleaned = PO_BOX_RE.sub("", cleaned)
    cleaned = IMAGE_ALT_RE.sub("", cleaned)

    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    cleaned = re.sub(r"[ \t]{2,}", " ", cleaned)
    cleaned = re.sub(r"^\s+$", "", cleaned, flags=re.MULTILINE)
    return cleaned.strip()


def normalize_punctuation(text: Optional[str]) -> str:
    """Map smart quotes, dashes and odd spaces to plain ASCII."""
    if not text:
        return text or ""
    return text.translate(str.maketrans(PUNCTUATION_MAP))


def repair_mojibake(text: Optional[str]) -> str:
    """Repair UTF-8 text that was decoded as Windows-1252/Latin-1.

    Only attempted when typical mojibake markers are present, to avoid
    double decoding clean text.
    """
    if not text or not MOJIBAKE_RE.search(text):
        return text or ""
    for codec in ("cp1252", "latin-1"):
        try:
            return text.encode(codec).decode("utf-8")
        except UnicodeError:
            continue
    return text


def strip_html(html: Optional[str]) -> str:
    """Extract readable text from an HTML fragment."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    text = soup.get_text("\n")
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in text.splitlines()]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()
