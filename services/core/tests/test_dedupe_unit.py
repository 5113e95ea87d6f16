"""Unit tests for duplicate detection.

Tests cover:
1. Fingerprint construction (exact hash, signed simhash)
2. Hamming distance on signed values
3. SimHash sensitivity: small edits stay close, unrelated texts do not
4. DuplicateDetector exact and near lookups against the database, in any
   bit position
"""

from abjail_core.domain.services.dedupe import (
    MAX_TOKENS,
    SIMHASH_BANDS,
    DuplicateDetector,
    MatchKind,
    build_fingerprint,
    compute_simhash64,
    hamming_distance64,
    sha256_base64,
    simhash_band_columns,
    simhash_bands,
    to_signed64,
    to_unsigned64,
)
from tests.factories import create_submission

BASE_MESSAGE = (
    "URGENT: our 5X match expires at midnight. Chip in $5 now to defend democracy "
    "and stop the other side before the deadline. Every dollar counts, friend."
)

# One token short of MAX_TOKENS, so a trailing signature adds a single bigram
LONG_APPEAL = "Chip in " + " ".join(f"reason{i}" for i in range(MAX_TOKENS // 2 - 2))
SIGNATURE = "\n\nPaid for by Friends of Jane. Reply STOP to quit"


def create_neighbour(db_session, fingerprint, flipped_bits, normalized_hash="other-hash"):
    """Store a row whose simhash differs from fingerprint in flipped_bits."""
    return create_submission(
        db_session,
        raw_text="other",
        fingerprint=False,
        normalized_text="other",
        normalized_hash=normalized_hash,
        simhash64=to_signed64(to_unsigned64(fingerprint.simhash) ^ flipped_bits),
    )


class TestFingerprint:
    def test_empty_text_has_no_hashes(self):
        fingerprint = build_fingerprint("  !!!  ")
        assert fingerprint.normalized_text == ""
        assert fingerprint.hash is None
        assert fingerprint.simhash is None

    def test_hash_is_sha256_of_normalized_text(self):
        fingerprint = build_fingerprint("Chip in $5!")
        assert fingerprint.normalized_text == "chip in 5"
        assert fingerprint.hash == sha256_base64("chip in 5")

    def test_formatting_differences_share_fingerprint(self):
        a = build_fingerprint("Chip in $5 NOW: https://x.example/a?ref=1")
        b = build_fingerprint("chip in 5 now https://x.example/b")
        assert a.hash == b.hash
        assert a.simhash == b.simhash

    def test_simhash_is_signed_64_bit(self):
        fingerprint = build_fingerprint(BASE_MESSAGE)
        assert -(1 << 63) <= fingerprint.simhash < (1 << 63)
        assert to_unsigned64(fingerprint.simhash) == compute_simhash64(
            fingerprint.normalized_text
        )

    def test_to_columns_writes_hashes_and_bands(self):
        fingerprint = build_fingerprint("chip in")
        columns = fingerprint.to_columns()

        assert set(columns) == {
            "normalized_text",
            "normalized_hash",
            "simhash64",
            *(f"simhash_band{i}" for i in range(SIMHASH_BANDS)),
        }
        assert [columns[f"simhash_band{i}"] for i in range(SIMHASH_BANDS)] == simhash_bands(
            fingerprint.simhash
        )

    def test_empty_text_has_no_bands(self):
        columns = build_fingerprint("").to_columns()
        assert all(columns[f"simhash_band{i}"] is None for i in range(SIMHASH_BANDS))


class TestBitHelpers:
    def test_signed_round_trip_at_boundaries(self):
        for value in (0, 1, (1 << 63) - 1, 1 << 63, (1 << 64) - 1):
            assert to_unsigned64(to_signed64(value)) == value

    def test_high_bit_becomes_negative(self):
        assert to_signed64(1 << 63) == -(1 << 63)
        assert to_signed64((1 << 64) - 1) == -1

    def test_hamming_distance_ignores_sign_representation(self):
        assert hamming_distance64(-1, (1 << 64) - 1) == 0
        assert hamming_distance64(0, -1) == 64
        assert hamming_distance64(0b1010, 0b0110) == 2

    def test_bands_are_bytes_low_first(self):
        value = to_signed64(0xFF00000000000201)
        assert simhash_bands(value) == [0x01, 0x02, 0, 0, 0, 0, 0, 0xFF]

    def test_band_columns_none_without_simhash(self):
        assert simhash_band_columns(None) == {
            f"simhash_band{i}": None for i in range(SIMHASH_BANDS)
        }

    def test_similar_texts_are_close(self):
        a = compute_simhash64(build_fingerprint(BASE_MESSAGE).normalized_text)
        b = compute_simhash64(
            build_fingerprint(BASE_MESSAGE + " Reply STOP to quit").normalized_text
        )
        unrelated = compute_simhash64(
            build_fingerprint("Weather update for Tuesday: light rain in the afternoon").normalized_text
        )
        assert hamming_distance64(a, b) < hamming_distance64(a, unrelated)


class TestSimhashSensitivity:
    def test_trailing_signature_stays_within_threshold(self):
        base = build_fingerprint(LONG_APPEAL)
        signed = build_fingerprint(LONG_APPEAL + SIGNATURE)

        assert base.hash != signed.hash
        assert hamming_distance64(base.simhash, signed.simhash) <= 4

    def test_unrelated_texts_are_far_apart(self):
        a = build_fingerprint(BASE_MESSAGE)
        b = build_fingerprint(
            "Weather update for Tuesday: light rain in the afternoon, clearing by "
            "evening with a low of 48 and winds from the northwest."
        )
        assert 16 <= hamming_distance64(a.simhash, b.simhash) <= 48


class TestDuplicateDetector:
    def test_no_match_on_empty_corpus(self, repo):
        detector = DuplicateDetector(repo)
        match = detector.find_duplicate(BASE_MESSAGE)
        assert match.match_kind == MatchKind.NONE
        assert not match.is_duplicate

    def test_exact_match_by_hash(self, repo, db_session):
        existing = create_submission(db_session, raw_text=BASE_MESSAGE)
        detector = DuplicateDetector(repo)

        match = detector.find_duplicate(BASE_MESSAGE.upper())

        assert match.match_kind == MatchKind.EXACT
        assert match.case_id == existing.id
        assert match.distance == 0

    def test_near_match_within_threshold(self, repo, db_session):
        fingerprint = build_fingerprint(BASE_MESSAGE)
        # Same simhash family, different exact hash
        near = create_submission(
            db_session,
            raw_text="other",
            fingerprint=False,
            normalized_text="other",
            normalized_hash="other-hash",
            simhash64=to_signed64(to_unsigned64(fingerprint.simhash) ^ 0b11),
        )
        detector = DuplicateDetector(repo, threshold=4)
        match = detector.find_by_fingerprint(fingerprint)

        assert match.match_kind == MatchKind.NEAR
        assert match.case_id == near.id
        assert match.distance == 2

    def test_high_bit_neighbour_is_found(self, repo, db_session):
        fingerprint = build_fingerprint(BASE_MESSAGE)
        near = create_neighbour(db_session, fingerprint, 1 << 63)

        match = DuplicateDetector(repo).find_by_fingerprint(fingerprint)

        assert match.match_kind == MatchKind.NEAR
        assert match.case_id == near.id
        assert match.distance == 1

    def test_flips_spread_over_four_bands_are_found(self, repo, db_session):
        fingerprint = build_fingerprint(BASE_MESSAGE)
        flipped = (1 << 7) | (1 << 23) | (1 << 40) | (1 << 62)
        near = create_neighbour(db_session, fingerprint, flipped)

        match = DuplicateDetector(repo, threshold=4).find_by_fingerprint(fingerprint)

        assert match.case_id == near.id
        assert match.distance == 4

    def test_closest_candidate_wins(self, repo, db_session):
        fingerprint = build_fingerprint(BASE_MESSAGE)
        create_neighbour(db_session, fingerprint, (1 << 50) | (1 << 3) | (1 << 30), "far-hash")
        closest = create_neighbour(db_session, fingerprint, 1 << 44, "close-hash")

        match = DuplicateDetector(repo).find_by_fingerprint(fingerprint)

        assert match.case_id == closest.id
        assert match.distance == 1

    def test_rows_sharing_too_few_bands_are_not_candidates(self, repo, db_session):
        fingerprint = build_fingerprint(BASE_MESSAGE)
        # Every band but the lowest differs
        create_neighbour(db_session, fingerprint, ~0xFF & ((1 << 64) - 1))
        bands = simhash_bands(fingerprint.simhash)

        assert len(repo.find_simhash_candidates(bands, min_shared=1)) == 1
        assert repo.find_simhash_candidates(bands, min_shared=4) == []

    def test_distance_above_threshold_is_not_duplicate(self, repo, db_session):
        fingerprint = build_fingerprint(BASE_MESSAGE)
        create_submission(
            db_session,
            raw_text="other",
            fingerprint=False,
            normalized_text="other",
            normalized_hash="other-hash",
            simhash64=to_signed64(to_unsigned64(fingerprint.simhash) ^ 0b11111),
        )

        detector = DuplicateDetector(repo, threshold=4)
        match = detector.find_by_fingerprint(fingerprint)

        assert match.match_kind == MatchKind.NONE

    def test_empty_text_never_matches(self, repo, db_session):
        create_submission(db_session, raw_text="", fingerprint=False)
        detector = DuplicateDetector(repo)

        match = detector.find_duplicate("")

        assert match.match_kind == MatchKind.NONE

    def test_negative_threshold_falls_back_to_default(self, repo):
        assert DuplicateDetector(repo, threshold=-1).threshold == 4
