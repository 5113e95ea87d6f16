"""Duplicate detection for inbound submissions.

Fingerprints are computed from normalized text:
1. An exact hash (SHA-256, base64) for identical messages
2. A 64-bit SimHash for near-identical messages (signature lines,
   tracking parameters, small edits)

Near-duplicate lookup splits the simhash into eight one-byte bands stored in
indexed columns. Two fingerprints at most 4 bits apart differ in at most 4
bands, so they share at least 4; the query asks for rows sharing that many
bands and the exact Hamming distance is checked on the candidates. Any bit
may differ, high or low.

Usage:
    detector = DuplicateDetector(repo=repo, threshold=4)

    match = detector.find_duplicate(raw_text)
    if match.is_duplicate:
        print(f"{match.match_kind} duplicate of {match.case_id}")
"""

import base64
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

from abjail_core.domain.services.text_normalizer import normalize
from abjail_core.infra.repository import SubmissionRepository

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

MAX_TOKENS = 512
CANDIDATE_LIMIT = 200
DEFAULT_THRESHOLD = 4
SIMHASH_BANDS = 8
BAND_BITS = 64 // SIMHASH_BANDS

_MASK64 = (1 << 64) - 1
_MAX_SIGNED64 = (1 << 63) - 1


# =============================================================================
# DATA CLASSES
# =============================================================================


class MatchKind(str):
    """Duplicate match kinds."""

    EXACT = "exact"
    NEAR = "near"
    NONE = "none"


@dataclass
class Fingerprint:
    """Dedupe fingerprint of one message.

    hash and simhash are None when the normalized text is empty.
    """

    normalized_text: str
    hash: Optional[str]
    simhash: Optional[int]

    def to_columns(self) -> dict:
        """Submission columns written together from this fingerprint."""
        return {
            "normalized_text": self.normalized_text,
            "normalized_hash": self.hash,
            "simhash64": self.simhash,
            **simhash_band_columns(self.simhash),
        }


@dataclass
class DuplicateMatch:
    """Result of a duplicate lookup."""

    match_kind: str = MatchKind.NONE
    case_id: Optional[str] = None
    distance: Optional[int] = None

    @property
    def is_duplicate(self) -> bool:
        return self.match_kind != MatchKind.NONE

    def to_dict(self) -> dict:
        return {
            "match": self.match_kind,
            "case_id": self.case_id,
            "distance": self.distance,
        }


# =============================================================================
# HASHING
# =============================================================================


def sha256_base64(text: str) -> str:
    return base64.b64encode(hashlib.sha256(text.encode("utf-8")).digest()).decode("ascii")


def _token_hash64(token: str) -> int:
    digest = hashlib.sha256(token.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


def _tokens(text: str) -> list[str]:
    words = text.split()
    tokens: list[str] = []
    for i, word in enumerate(words):
        tokens.append(word)
        if i + 1 < len(words):
            tokens.append(f"{word}_{words[i + 1]}")
    return tokens[:MAX_TOKENS]


def compute_simhash64(text: str) -> int:
    """Compute the unsigned 64-bit SimHash of normalized text.

    Tokens are unigrams plus adjacent bigrams, each weighted equally.
    """
    acc = [0] * 64
    for token in _tokens(text):
        value = _token_hash64(token)
        for bit in range(64):
            acc[bit] += 1 if (value >> bit) & 1 else -1

    out = 0
    for bit in range(64):
        if acc[bit] > 0:
            out |= 1 << bit
    return out


def to_signed64(value: int) -> int:
    """Two's complement view of an unsigned 64-bit value."""
    value &= _MASK64
    return value - (1 << 64) if value > _MAX_SIGNED64 else value


def to_unsigned64(value: int) -> int:
    return value & _MASK64


def hamming_distance64(a: int, b: int) -> int:
    """Bit distance between two 64-bit values (signed or unsigned)."""
    return bin(to_unsigned64(a) ^ to_unsigned64(b)).count("1")


def simhash_bands(simhash: int) -> list[int]:
    """Split a 64-bit simhash into SIMHASH_BANDS byte values, low byte first."""
    unsigned = to_unsigned64(simhash)
    mask = (1 << BAND_BITS) - 1
    return [(unsigned >> (BAND_BITS * i)) & mask for i in range(SIMHASH_BANDS)]


def simhash_band_columns(simhash: Optional[int]) -> dict:
    """simhash_band0..7 column values; all None when there is no simhash."""
    if simhash is None:
        return {f"simhash_band{i}": None for i in range(SIMHASH_BANDS)}
    return {f"simhash_band{i}": band for i, band in enumerate(simhash_bands(simhash))}


def build_fingerprint(raw: Optional[str]) -> Fingerprint:
    """Fingerprint raw text.

    Args:
        raw: Raw message text.

    Returns:
        Fingerprint whose hash and simhash (signed) are derived from the
        same normalized text.
    """
    normalized = normalize(raw)
    if not normalized:
        return Fingerprint(normalized_text="", hash=None, simhash=None)
    return Fingerprint(
        normalized_text=normalized,
        hash=sha256_base64(normalized),
        simhash=to_signed64(compute_simhash64(normalized)),
    )


# =============================================================================
# DETECTOR
# =============================================================================


class DuplicateDetector:
    """Finds existing submissions that match a new message."""

    def __init__(
        self,
        repo: SubmissionRepository,
        threshold: int = DEFAULT_THRESHOLD,
        candidate_limit: int = CANDIDATE_LIMIT,
    ):
        """Initialize the detector.

        Args:
            repo: Submission repository.
            threshold: Maximum Hamming distance counted as a near duplicate.
                Every neighbour within it is found while it stays below
                SIMHASH_BANDS.
            candidate_limit: Maximum rows examined per lookup.
        """
        if threshold < 0:
            threshold = DEFAULT_THRESHOLD
        self.repo = repo
        self.threshold = threshold
        # Rows within threshold share at least this many bands
        self.min_shared_bands = max(1, SIMHASH_BANDS - threshold)
        self.candidate_limit = candidate_limit

    def find_duplicate(self, raw: Optional[str]) -> DuplicateMatch:
        """Look up an exact or near duplicate of raw text.

        Returns:
            DuplicateMatch with match_kind "exact", "near" or "none".
        """
        fingerprint = build_fingerprint(raw)
        return self.find_by_fingerprint(fingerprint)

    def find_by_fingerprint(self, fingerprint: Fingerprint) -> DuplicateMatch:
        if not fingerprint.normalized_text or fingerprint.simhash is None:
            return DuplicateMatch()

        existing_id = self.repo.find_id_by_hash(fingerprint.hash)
        if existing_id:
            return DuplicateMatch(MatchKind.EXACT, existing_id, 0)

        sim = fingerprint.simhash
        candidates = self.repo.find_simhash_candidates(
            simhash_bands(sim),
            min_shared=self.min_shared_bands,
            limit=self.candidate_limit,
        )

        best_id: Optional[str] = None
        best_distance: Optional[int] = None
        for candidate in candidates:
            distance = hamming_distance64(sim, candidate.simhash64)
            if distance > self.threshold:
                continue
            if best_distance is None or distance < best_distance:
                best_id, best_distance = candidate.id, distance
                if distance == 0:
                    break

        if best_id is None:
            return DuplicateMatch()

        kind = MatchKind.EXACT if best_distance == 0 else MatchKind.NEAR
        logger.debug(f"dedupe:match kind={kind} case={best_id} distance={best_distance}")
        return DuplicateMatch(kind, best_id, best_distance)
