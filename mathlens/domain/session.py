"""RecognitionSession and HistoryRecord — the results of a recognition.

A session is built up incrementally: each stage's completion supplies a
subset of fields and nothing else.  Fields no stage has supplied keep
their empty defaults; a partially filled session is a valid state, not
an error.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from mathlens.domain.enums import VerificationStatus


# ── Analysis payload ─────────────────────────────────────────────────────────

class Variable(BaseModel):
    symbol: str
    description: str
    unit: Optional[str] = None


class Term(BaseModel):
    name: str
    description: str


class Suggestion(BaseModel):
    """A severity-tagged remark about the formula (``type`` is the tag)."""

    type: str = Field(..., description="Severity tag, e.g. info / warning / error")
    message: str


class Analysis(BaseModel):
    summary: str = ""
    variables: list[Variable] = Field(default_factory=list)
    terms: list[Term] = Field(default_factory=list)
    suggestions: list[Suggestion] = Field(default_factory=list)


# ── Verification payload ─────────────────────────────────────────────────────

class VerificationIssue(BaseModel):
    category: str = Field(
        ...,
        description="missing_term | extra_term | symbol_mismatch | notation_mismatch | layout_mismatch | other",
    )
    message: str


class VerificationCoverage(BaseModel):
    symbols_matched: int = Field(0, ge=0)
    symbols_total: int = Field(0, ge=0)
    terms_matched: int = Field(0, ge=0)
    terms_total: int = Field(0, ge=0)


class Verification(BaseModel):
    status: VerificationStatus
    issues: list[VerificationIssue] = Field(default_factory=list)
    coverage: Optional[VerificationCoverage] = None


# ── Session ──────────────────────────────────────────────────────────────────

class _SessionFields(BaseModel):
    model_config = {"frozen": True, "protected_namespaces": ()}

    id: str = ""
    latex: str = ""
    title: str = ""
    analysis: Analysis = Field(default_factory=Analysis)
    verification: Optional[Verification] = None
    verification_report: Optional[str] = None
    confidence_score: int = Field(0, ge=0, le=100, description="0 means not yet computed")
    created_at: str = ""
    is_favorite: bool = False
    original_image: str = ""
    model_name: Optional[str] = None
    prompt_version: Optional[str] = None


class RecognitionSession(_SessionFields):
    """The single active (or most recently completed) recognition attempt."""

    @classmethod
    def placeholder(cls) -> "RecognitionSession":
        """Empty session shown while the first stage is still running."""
        return cls()

    def merged(self, partial: dict[str, Any]) -> "RecognitionSession":
        """Return a copy with *partial* shallow-merged over this session.

        Raises:
            ValueError: If *partial* names a field the session does not have.
        """
        unknown = set(partial) - set(type(self).model_fields)
        if unknown:
            raise ValueError(f"unknown session field(s): {sorted(unknown)}")
        return type(self).model_validate({**self.model_dump(), **partial})


class HistoryRecord(_SessionFields):
    """A durably saved session, keyed by ``id``."""

    id: str = Field(..., min_length=1)

    @classmethod
    def from_session(cls, session: RecognitionSession) -> "HistoryRecord":
        return cls.model_validate(session.model_dump())

    def merged(self, partial: dict[str, Any]) -> "HistoryRecord":
        return type(self).model_validate({**self.model_dump(), **partial})
