"""Confidence score and report derived from a structured verification.

Used when a verifier returns the structured comparison but no score.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from mathlens.domain.enums import VerificationStatus
from mathlens.domain.session import Verification

_MAX_REPORTED_ISSUES = 10


class VerificationScore(BaseModel):
    confidence_score: int = Field(..., ge=0, le=100)
    verification_report: str

    model_config = {"frozen": True}


def _ratio_percent(matched: int, total: int) -> float:
    if total <= 0:
        return 100.0
    return round(100.0 * matched / total)


def confidence_from_verification(verification: Verification) -> int:
    """Score a verification 0..100.

    With coverage counters, symbols weigh 0.75 and terms 0.25.  Without
    them the status sets a ceiling that each reported issue lowers.
    """
    coverage = verification.coverage
    if coverage is not None:
        symbols = _ratio_percent(coverage.symbols_matched, coverage.symbols_total)
        terms = _ratio_percent(coverage.terms_matched, coverage.terms_total)
        combined = round(0.75 * symbols + 0.25 * terms)
        return int(min(max(combined, 0), 100))

    issues = len(verification.issues)
    if verification.status is VerificationStatus.OK:
        return 100
    if verification.status is VerificationStatus.WARNING:
        return 80 - min(issues * 2, 20)
    return 60 - min(issues * 5, 50)


def report_from_verification(verification: Verification) -> str:
    if verification.status is VerificationStatus.OK and not verification.issues:
        return "The LaTeX matches the original formula."

    lines = [
        f"- [{issue.category}] {issue.message}"
        for issue in verification.issues[:_MAX_REPORTED_ISSUES]
    ]
    omitted = len(verification.issues) - _MAX_REPORTED_ISSUES
    if omitted > 0:
        lines.append(f"({omitted} more issue(s) omitted)")

    if not lines:
        if verification.status is VerificationStatus.WARNING:
            return "Layout differs from the image but the mathematical meaning is unchanged."
        return "Content differs from the image; check symbols, sub/superscripts and terms."
    return "Differences found:\n" + "\n".join(lines)


def score_verification(verification: Verification) -> VerificationScore:
    return VerificationScore(
        confidence_score=confidence_from_verification(verification),
        verification_report=report_from_verification(verification),
    )
