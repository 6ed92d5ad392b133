"""Shared controller state definitions for the scan kiosk."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .protocol import ConditionsStatus, Detection, RecognitionResult


class SessionPhase(str, enum.Enum):
    """
    Session phases in chronological order:

    1. IDLE              - No channel; waiting for start()
    2. CONNECTING        - Channel being opened
    3. STREAMING         - Frames flowing under credit control
    4. ANALYSIS_PENDING  - Scan passes done, waiting for the service verdict
    5. COMPLETE          - Terminal; outcome available
    6. FAILED            - Terminal; outcome carries the reason
    """
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    ANALYSIS_PENDING = "analysis_pending"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {SessionPhase.COMPLETE, SessionPhase.FAILED}

    @property
    def is_live(self) -> bool:
        return self in {SessionPhase.CONNECTING, SessionPhase.STREAMING, SessionPhase.ANALYSIS_PENDING}


class OutcomeKind(str, enum.Enum):
    RECOGNIZED = "recognized"
    DETECTIONS = "detections"
    FAILED = "failed"


@dataclass(frozen=True)
class AnalysisOutcome:
    """Terminal value a session resolves to. Built once, never mutated."""

    kind: OutcomeKind
    result: Optional[RecognitionResult] = None
    predictions: Tuple[Detection, ...] = ()
    image: Optional[str] = None
    reason: Optional[str] = None

    @property
    def confidence_percent(self) -> Optional[str]:
        """Recognition confidence formatted for display, e.g. ``"93.4%"``."""
        if self.result is None or not self.result.confidence:
            return None
        return f"{self.result.confidence * 100:.1f}%"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "result": self.result.model_dump(by_alias=True) if self.result else None,
            "predictions": [p.model_dump(by_alias=True) for p in self.predictions],
            "image": self.image,
            "reason": self.reason,
            "confidence_percent": self.confidence_percent,
        }


@dataclass(frozen=True)
class SessionView:
    """Read-only projection of the controller handed to renderers."""

    phase: SessionPhase
    session_id: Optional[str]
    connection_status: str
    status_text: str
    conditions: ConditionsStatus
    conditions_met: bool
    scan_pass: int
    scan_percent: float
    overall_percent: float
    analysis_pending: bool
    image: Optional[str] = None
    outcome: Optional[AnalysisOutcome] = None

    @property
    def show_progress_bar(self) -> bool:
        return self.conditions_met or self.analysis_pending

    @property
    def progress_bar_percent(self) -> float:
        return 100.0 if self.analysis_pending else self.scan_percent

    @property
    def show_pass_indicator(self) -> bool:
        return self.scan_percent > 0 and not self.analysis_pending

    def to_dict(self, *, include_image: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "phase": self.phase.value,
            "session_id": self.session_id,
            "connection_status": self.connection_status,
            "status_text": self.status_text,
            "conditions": self.conditions.model_dump(),
            "conditions_met": self.conditions_met,
            "scan_pass": self.scan_pass,
            "scan_percent": self.scan_percent,
            "overall_percent": self.overall_percent,
            "analysis_pending": self.analysis_pending,
            "show_progress_bar": self.show_progress_bar,
            "progress_bar_percent": self.progress_bar_percent,
            "show_pass_indicator": self.show_pass_indicator,
            "outcome": self.outcome.to_dict() if self.outcome else None,
        }
        if include_image:
            payload["image"] = self.image
        return payload


@dataclass
class ControllerEvent:
    """Event payload distributed to UI clients over the local WebSocket."""

    type: str
    phase: SessionPhase
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


__all__ = ["SessionPhase", "OutcomeKind", "AnalysisOutcome", "SessionView", "ControllerEvent"]
