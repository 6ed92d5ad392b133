"""Multi-pass scan progress as reported by the service."""
from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class ScanProgressTracker:
    """Folds per-frame ``(scan_pass, scan_progress)`` into a monotonic view.

    ``observe`` returns True exactly once, on the first frame whose pass
    exceeds ``max_passes``; later frames never re-trigger it.
    """

    def __init__(self, max_passes: int = 2) -> None:
        self.max_passes = max_passes
        self._pass = 1
        self._percent = 0.0
        self._awaiting_analysis = False

    @property
    def scan_pass(self) -> int:
        """Current pass, clamped to the passes the operator is shown."""
        return min(self._pass, self.max_passes)

    @property
    def raw_pass(self) -> int:
        return self._pass

    @property
    def percent(self) -> float:
        return self._percent

    @property
    def awaiting_analysis(self) -> bool:
        return self._awaiting_analysis

    @property
    def overall_percent(self) -> float:
        """Progress across all passes, 0-100."""
        if self._awaiting_analysis:
            return 100.0
        done = (self.scan_pass - 1) * 100.0 + self._percent
        return round(done / self.max_passes, 2)

    def observe(self, scan_pass: int, percent: float, gate_open: bool = True) -> bool:
        """Fold one frame in; returns True when the analysis latch trips.

        With ``gate_open`` False the view holds still, but a pass past
        ``max_passes`` still trips the latch since the service drives it.
        """
        if self._awaiting_analysis:
            if scan_pass > self.max_passes:
                logger.debug("Ignoring frame at pass %s; analysis already pending", scan_pass)
            return False

        if scan_pass > self.max_passes:
            self._pass = scan_pass
            self._awaiting_analysis = True
            self._percent = 100.0
            logger.info("Scan complete after %s passes, awaiting analysis", self.max_passes)
            return True

        if not gate_open:
            return False

        clamped = max(0.0, min(100.0, float(percent)))
        if scan_pass < self._pass:
            logger.debug("Ignoring regressed pass %s (current %s)", scan_pass, self._pass)
        elif scan_pass > self._pass:
            logger.info("Scan pass %s -> %s", self._pass, scan_pass)
            self._pass = scan_pass
            self._percent = clamped
        elif clamped > self._percent:
            self._percent = clamped
        return False

    def reset(self) -> None:
        self._pass = 1
        self._percent = 0.0
        self._awaiting_analysis = False


__all__ = ["ScanProgressTracker"]
