"""Ten-step audit trail for one grading run."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from loguru import logger

from .pipeline_types import PipelineStep

STEP_DEFINITIONS = [
    ("cache", "Memory recall"),
    ("upload", "Image upload"),
    ("vision", "Vision ensemble"),
    ("research", "Market research"),
    ("engines", "Engine enrichment"),
    ("debate", "Bull/bear debate"),
    ("trinity", "Trinity council"),
    ("value", "Valuation"),
    ("commentary", "Commentary"),
    ("store", "Store decision"),
]

STEP_IDS = [sid for sid, _ in STEP_DEFINITIONS]

# Only legal moves; complete and error are terminal.
ALLOWED_TRANSITIONS = {
    "pending": {"running"},
    "running": {"complete", "error"},
    "complete": set(),
    "error": set(),
}


class StepTransitionError(RuntimeError):
    """Raised when a step would move backwards or skip running."""


class StepLog:
    """
    Ordered, id-addressable step list owned by a single run.

    All mutation goes through :meth:`update`, which enforces the
    pending -> running -> complete|error state machine and stamps times.
    """

    def __init__(self, on_update: Optional[Callable[[PipelineStep], None]] = None) -> None:
        self._steps: List[PipelineStep] = [PipelineStep(id=sid, label=label) for sid, label in STEP_DEFINITIONS]
        self._index: Dict[str, int] = {s.id: i for i, s in enumerate(self._steps)}
        self._on_update = on_update

    def __getitem__(self, step_id: str) -> PipelineStep:
        return self._steps[self._index[step_id]]

    def __iter__(self):
        return iter(self._steps)

    @property
    def steps(self) -> List[PipelineStep]:
        return list(self._steps)

    def update(self, step_id: str, status: str, detail: Optional[str] = None) -> PipelineStep:
        if step_id not in self._index:
            raise KeyError(f"Unknown pipeline step: {step_id}")
        step = self._steps[self._index[step_id]]
        if status not in ALLOWED_TRANSITIONS.get(step.status, set()):
            raise StepTransitionError(f"Step '{step_id}' cannot move {step.status} -> {status}")

        now = datetime.now(timezone.utc)
        if status == "running":
            step.started_at = now
        else:
            step.ended_at = now
        step.status = status
        step.history.append(status)
        if detail is not None:
            step.detail = detail

        if status == "error":
            logger.warning("Step {} failed: {}", step_id, step.detail)
        else:
            logger.info("Step {} -> {}{}", step_id, status, f" ({step.detail})" if step.detail else "")
        if self._on_update is not None:
            self._on_update(step)
        return step

    def start(self, step_id: str, detail: Optional[str] = None) -> PipelineStep:
        return self.update(step_id, "running", detail)

    def complete(self, step_id: str, detail: Optional[str] = None) -> PipelineStep:
        return self.update(step_id, "complete", detail)

    def fail(self, step_id: str, detail: Optional[str] = None) -> PipelineStep:
        return self.update(step_id, "error", detail)
