from __future__ import annotations

import logging
import math
from typing import Callable, Optional

from .errors import CompositionCancelled

log = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]
CancelCheck = Callable[[], bool]


class ProgressReporter:
    """
    Monotonic percentage reporter.

    Until complete() is called values are clamped to [0, ceiling], so callers
    never see 100 before the output bytes exist. Values lower than the last
    emitted one are dropped.
    """

    def __init__(
        self,
        on_progress: Optional[ProgressCallback] = None,
        ceiling: float = 90.0,
        should_cancel: Optional[CancelCheck] = None,
    ) -> None:
        self.on_progress = on_progress
        self.ceiling = max(0.0, min(100.0, float(ceiling)))
        self.should_cancel = should_cancel
        self.value = 0.0
        self._emitted = False
        self.completed = False

    def report(self, pct: float) -> None:
        if self.completed:
            return
        try:
            v = float(pct)
        except (TypeError, ValueError):
            return
        if math.isnan(v):
            return
        v = max(0.0, min(self.ceiling, v))
        if self._emitted and v <= self.value:
            return
        self.value = v
        self._emitted = True
        self._emit(v)

    def fraction(self, done: float, total: float) -> None:
        """Report done/total of the pre-finalize range [0, ceiling]."""
        if total <= 0:
            return
        self.report(self.ceiling * max(0.0, min(1.0, done / total)))

    def complete(self) -> None:
        if self.completed:
            return
        self.completed = True
        self.value = 100.0
        self._emit(100.0)

    def check_cancelled(self) -> None:
        """Raise CompositionCancelled if the caller asked to stop."""
        if self.should_cancel is not None and self.should_cancel():
            raise CompositionCancelled("Job cancelled")

    def _emit(self, v: float) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(v)
        except Exception:
            # observer errors are logged, never raised into the job
            log.exception("progress callback failed")
