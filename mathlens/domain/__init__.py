from mathlens.domain.enums import EventStage, PhaseStatus, Stage
from mathlens.domain.phase import (
    PhaseState,
    PhaseTrack,
    StageAttempts,
    is_current,
    reduce_phase,
)
from mathlens.domain.session import HistoryRecord, RecognitionSession

__all__ = [
    "EventStage",
    "PhaseStatus",
    "Stage",
    "PhaseState",
    "PhaseTrack",
    "StageAttempts",
    "is_current",
    "reduce_phase",
    "HistoryRecord",
    "RecognitionSession",
]
