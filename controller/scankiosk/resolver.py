"""Turns the service's two completion shapes into one ``AnalysisOutcome``."""
from __future__ import annotations

from typing import Optional

from .protocol import AnalysisComplete, AnalysisError, RecognitionFrame
from .state import AnalysisOutcome, OutcomeKind

CONNECTION_LOST = "Connection lost"


def resolve_recognition(frame: RecognitionFrame) -> AnalysisOutcome:
    result = frame.recognition_result
    if result.succeeded:
        return AnalysisOutcome(kind=OutcomeKind.RECOGNIZED, result=result, image=frame.data)
    # Malformed results (neither or both of class/error) count as a failure
    # with no reason.
    reason = "" if result.malformed else (result.error or "")
    return AnalysisOutcome(kind=OutcomeKind.FAILED, result=result, image=frame.data, reason=reason)


def resolve_detections(message: AnalysisComplete) -> AnalysisOutcome:
    return AnalysisOutcome(
        kind=OutcomeKind.DETECTIONS,
        predictions=tuple(message.predictions),
        image=message.data,
    )


def resolve_analysis_error(message: AnalysisError) -> AnalysisOutcome:
    return AnalysisOutcome(kind=OutcomeKind.FAILED, reason=message.message)


def resolve_connection_lost(detail: Optional[str] = None) -> AnalysisOutcome:
    reason = f"{CONNECTION_LOST}: {detail}" if detail else CONNECTION_LOST
    return AnalysisOutcome(kind=OutcomeKind.FAILED, reason=reason)


__all__ = [
    "CONNECTION_LOST",
    "resolve_recognition",
    "resolve_detections",
    "resolve_analysis_error",
    "resolve_connection_lost",
]
