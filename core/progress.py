"""
Dehazing - Progress Reporting
==============================
Stage labels with fixed progress values, and the per-run tracker that keeps
the reported sequence non-decreasing.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

STAGE_LOADING = ("Loading dehazing model...", 10)
STAGE_PROCESSING = ("Processing image...", 30)
STAGE_TRANSFORMING = ("Applying dehazing algorithm...", 60)
STAGE_FINALIZING = ("Finalizing result...", 90)
STAGE_COMPLETE = ("Complete!", 100)

MODEL_READY_LABEL = "Model loaded successfully"
FALLBACK_READY_LABEL = "Fallback processor ready"


@dataclass(frozen=True)
class ProgressEvent:
    """A stage label paired with a completion percentage."""
    stage: str
    progress: int

    def __post_init__(self):
        if not 0 <= self.progress <= 100:
            raise ValueError(f"progress must be within [0, 100], got {self.progress}")


ProgressCallback = Callable[[ProgressEvent], None]


class ProgressTracker:
    """
    Emits progress events for a single run.

    A value lower than the last one emitted is raised to it, so callers
    always observe a non-decreasing sequence.
    """

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self.callback = callback
        self.events: List[ProgressEvent] = []

    @property
    def last_progress(self) -> int:
        return self.events[-1].progress if self.events else 0

    def emit(self, stage: str, progress: int) -> ProgressEvent:
        event = ProgressEvent(stage=stage, progress=max(progress, self.last_progress))
        self.events.append(event)
        logger.debug("[Pipeline] %3d%% %s", event.progress, event.stage)
        if self.callback is not None:
            self.callback(event)
        return event

    def status(self, stage: str) -> ProgressEvent:
        """Report a new label without advancing progress."""
        return self.emit(stage, self.last_progress)
