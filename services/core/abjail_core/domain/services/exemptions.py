"""Verified exemption check.

Some flagged patterns are sanctioned by the payment platform (for example
a documented matching program). After classification each violation is
compared with the active allowlist and marked exempt when an entry
matches its code and either the sender or the landing URL.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from abjail_core.domain.models import Submission, VerifiedExemption, Violation
from abjail_core.infra.repository import SubmissionRepository

logger = logging.getLogger(__name__)


@dataclass
class ExemptionResult:
    checked: int = 0
    exempted: list[str] = field(default_factory=list)


def exemption_matches(
    exemption: VerifiedExemption,
    violation: Violation,
    submission: Submission,
) -> bool:
    """True when an allowlist entry covers a violation.

    Entries without a sender pattern or URL prefix never match, so an
    empty entry cannot exempt every case.
    """
    if exemption.code != violation.code:
        return False
    if not exemption.sender_pattern and not exemption.landing_url_prefix:
        return False

    if exemption.sender_pattern:
        pattern = exemption.sender_pattern.lower()
        senders = [s.lower() for s in (submission.sender_name, submission.sender_id) if s]
        if not any(pattern in sender for sender in senders):
            return False

    if exemption.landing_url_prefix:
        landing = (submission.landing_url or "").lower()
        if not landing.startswith(exemption.landing_url_prefix.lower()):
            return False

    return True


class ExemptionService:
    """Marks violations covered by a verified exemption."""

    def __init__(self, repo: SubmissionRepository):
        self.repo = repo

    def apply(self, submission_id: str) -> ExemptionResult:
        """Check every violation of a submission against the allowlist.

        Returns:
            ExemptionResult listing the codes marked exempt.
        """
        submission: Optional[Submission] = self.repo.get(submission_id)
        if submission is None:
            return ExemptionResult()

        violations = self.repo.list_violations(submission_id)
        exemptions = self.repo.list_active_exemptions({v.code for v in violations})
        result = ExemptionResult(checked=len(violations))

        for violation in violations:
            for exemption in exemptions:
                if exemption_matches(exemption, violation, submission):
                    self.repo.mark_exempt(violation.id, exemption.reason)
                    result.exempted.append(violation.code)
                    break

        if result.exempted:
            logger.info(f"exemptions:applied submission={submission_id} codes={result.exempted}")
        return result
