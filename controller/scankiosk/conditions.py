"""Acquisition-condition gate and operator status messages."""
from __future__ import annotations

import logging
import math

from .protocol import ConditionsStatus

logger = logging.getLogger(__name__)

MSG_ANALYZING = "Analyzing face..."
MSG_FACE_STRAIGHT = "Please face straight ahead"
MSG_DISTANCE = "Please adjust your distance"
MSG_LIGHTING = "Please improve lighting"
MSG_MAINTAIN = "Please maintain position"
MSG_COMPLETE = "Scan Complete!"


def round_percent(percent: float) -> int:
    """Round half up, so 12.5 reads as 13 on screen."""
    return int(math.floor(percent + 0.5))


def status_text(
    conditions: ConditionsStatus,
    conditions_met: bool,
    *,
    analysis_pending: bool = False,
    scan_complete: bool = False,
    percent: float = 0.0,
) -> str:
    """Pick the single message the operator should see.

    Pending analysis wins, then a finished scan; otherwise the first failing
    condition in the order pose, distance, lighting; otherwise progress when
    the gate is open.
    """
    if analysis_pending:
        return MSG_ANALYZING
    if scan_complete:
        return MSG_COMPLETE
    if not conditions.face_straight:
        return MSG_FACE_STRAIGHT
    if not conditions.distance_ok:
        return MSG_DISTANCE
    if not conditions.lighting_ok:
        return MSG_LIGHTING
    if conditions_met:
        return f"Scanning in progress: {round_percent(percent)}%"
    return MSG_MAINTAIN


class ConditionTracker:
    """Holds the latest condition flags reported by the service."""

    def __init__(self) -> None:
        self._conditions = ConditionsStatus()
        self._conditions_met = False

    @property
    def conditions(self) -> ConditionsStatus:
        return self._conditions

    @property
    def conditions_met(self) -> bool:
        return self._conditions_met

    def update(self, conditions: ConditionsStatus, reported_met: bool | None = None) -> bool:
        """Store ``conditions`` and return whether all three hold.

        The gate is always derived from the flags; a disagreeing
        ``conditions_met`` from the service is logged and overridden.
        """
        met = conditions.all_met
        if reported_met is not None and reported_met != met:
            logger.debug("Service conditions_met=%s disagrees with flags %s", reported_met, conditions)
        if conditions != self._conditions:
            logger.debug("Conditions changed: %s", conditions)
        self._conditions = conditions
        self._conditions_met = met
        return met

    def status_text(
        self, *, analysis_pending: bool = False, scan_complete: bool = False, percent: float = 0.0
    ) -> str:
        return status_text(
            self._conditions,
            self._conditions_met,
            analysis_pending=analysis_pending,
            scan_complete=scan_complete,
            percent=percent,
        )

    def reset(self) -> None:
        self._conditions = ConditionsStatus()
        self._conditions_met = False


__all__ = ["ConditionTracker", "status_text", "round_percent"]
