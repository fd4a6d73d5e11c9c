"""Controlled enumerations for the mathlens domain.

Every categorical field in the domain MUST reference an enum defined here.
"""

from __future__ import annotations

from enum import Enum


class Stage(str, Enum):
    """The three independent recognition operations."""

    LATEX = "latex"
    ANALYSIS = "analysis"
    VERIFY = "verify"


class EventStage(str, Enum):
    """Stage tag carried on a progress event.

    The verification stage reports under the ``confidence`` tag.
    """

    LATEX = "latex"
    ANALYSIS = "analysis"
    CONFIDENCE = "confidence"

    @property
    def stage(self) -> Stage:
        if self is EventStage.CONFIDENCE:
            return Stage.VERIFY
        return Stage(self.value)

    @classmethod
    def for_stage(cls, stage: Stage) -> "EventStage":
        if stage is Stage.VERIFY:
            return cls.CONFIDENCE
        return cls(stage.value)


class PhaseStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    DONE = "done"
    ERROR = "error"


class VerificationStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


class ToastType(str, Enum):
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
