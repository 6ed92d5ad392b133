"""Wire protocol spoken with the remote scan/recognition service.

The client sends a single credit token (``next``) per frame it is ready to
receive. The service answers with JSON messages tagged by ``type``; they are
parsed here into a closed set of message classes so the session manager can
dispatch on type instead of poking at raw dicts.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

CREDIT_TOKEN = "next"

VIDEO_FEED = "video_feed"
ANALYSIS_COMPLETE = "analysis_complete"
ANALYSIS_ERROR = "analysis_error"


class ProtocolError(ValueError):
    """Raised when an inbound payload is not a well-formed protocol message."""


# ============================================================
# Payload models
# ============================================================

class ConditionsStatus(BaseModel):
    """Acquisition-quality flags reported with every frame."""

    model_config = ConfigDict(frozen=True)

    face_straight: bool = False
    distance_ok: bool = False
    lighting_ok: bool = False

    @property
    def all_met(self) -> bool:
        return self.face_straight and self.distance_ok and self.lighting_ok


class RecognitionResult(BaseModel):
    """Inline identification result attached to a terminal ``video_feed`` frame."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    class_name: Optional[str] = Field(None, alias="class")
    confidence: Optional[float] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.class_name is not None and self.error is None

    @property
    def malformed(self) -> bool:
        """Neither or both of ``class``/``error`` set."""
        return (self.class_name is None) == (self.error is None)


class Detection(BaseModel):
    """One bounding box from the multi-object analysis path."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    x: float
    y: float
    width: float
    height: float
    confidence: float
    class_label: str = Field(alias="class")
    class_id: int


# ============================================================
# Inbound messages
# ============================================================

class ScanFrame(BaseModel):
    """Non-terminal ``video_feed`` frame."""

    model_config = ConfigDict(frozen=True)

    type: str = VIDEO_FEED
    data: str
    conditions_status: ConditionsStatus
    conditions_met: bool
    scan_progress: float
    scan_pass: int


class RecognitionFrame(ScanFrame):
    """``video_feed`` frame carrying ``recognition_result``; always terminal."""

    recognition_result: RecognitionResult


class AnalysisComplete(BaseModel):
    """Terminal multi-object detection outcome."""

    model_config = ConfigDict(frozen=True)

    type: str = ANALYSIS_COMPLETE
    data: str
    predictions: List[Detection] = Field(default_factory=list)

    @field_validator("predictions", mode="before")
    @classmethod
    def _unwrap_nested(cls, value: Any) -> Any:
        # The service wraps the list as {"predictions": [...]}.
        if isinstance(value, dict):
            return value.get("predictions", [])
        if value is None:
            return []
        return value


class AnalysisError(BaseModel):
    """Terminal failure reported by the service."""

    model_config = ConfigDict(frozen=True)

    type: str = ANALYSIS_ERROR
    message: str


class UnknownMessage(BaseModel):
    """Any message whose ``type`` this client does not understand."""

    model_config = ConfigDict(frozen=True)

    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)


InboundMessage = Union[ScanFrame, RecognitionFrame, AnalysisComplete, AnalysisError, UnknownMessage]


def parse_message(raw: Union[str, bytes]) -> InboundMessage:
    """Decode one channel message into its message class.

    Raises ``ProtocolError`` for anything that is not JSON, not an object,
    lacks a string ``type`` or fails field validation for a known type.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError("message is not valid UTF-8") from exc

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"invalid JSON: {exc.msg}") from exc

    if not isinstance(payload, dict):
        raise ProtocolError(f"expected a JSON object, got {type(payload).__name__}")

    msg_type = payload.get("type")
    if not isinstance(msg_type, str):
        raise ProtocolError("message has no string 'type' field")

    try:
        if msg_type == VIDEO_FEED:
            result = payload.get("recognition_result")
            # An object (even empty) marks a terminal frame; null, false, "" and 0 do not.
            if isinstance(result, dict) or result:
                return RecognitionFrame.model_validate(payload)
            return ScanFrame.model_validate(payload)
        if msg_type == ANALYSIS_COMPLETE:
            return AnalysisComplete.model_validate(payload)
        if msg_type == ANALYSIS_ERROR:
            return AnalysisError.model_validate(payload)
    except ValidationError as exc:
        raise ProtocolError(f"invalid {msg_type} message: {exc.error_count()} field error(s)") from exc

    return UnknownMessage(type=msg_type, payload=payload)


__all__ = [
    "CREDIT_TOKEN",
    "ProtocolError",
    "ConditionsStatus",
    "RecognitionResult",
    "Detection",
    "ScanFrame",
    "RecognitionFrame",
    "AnalysisComplete",
    "AnalysisError",
    "UnknownMessage",
    "InboundMessage",
    "parse_message",
]
