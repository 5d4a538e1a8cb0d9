"""Explicit analysis run state passed through the orchestrators.

Classes:
    AnalysisStatus: Lifecycle values of a conversation's analysis.
    AnalysisState: Immutable snapshot of a conversation's analysis state with transition helpers.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional
from uuid import UUID


class AnalysisStatus(str):
    NOT_STARTED = "not_started"
    EMBEDDING = "embedding"
    ANALYZING = "analyzing"
    READY = "ready"
    ERROR = "error"


_ORDER = {
    AnalysisStatus.NOT_STARTED: 0,
    AnalysisStatus.EMBEDDING: 1,
    AnalysisStatus.ANALYZING: 2,
    AnalysisStatus.READY: 3,
}


@dataclass(frozen=True, slots=True)
class AnalysisState:
    conversation_id: UUID
    status: str = AnalysisStatus.NOT_STARTED
    error: Optional[str] = None
    response_count: Optional[int] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in {AnalysisStatus.READY, AnalysisStatus.ERROR}

    def start(self) -> "AnalysisState":
        """Begin a new run from any previous outcome."""

        return replace(self, status=AnalysisStatus.EMBEDDING, error=None)

    def advance(self, status: str) -> "AnalysisState":
        if self.status == AnalysisStatus.ERROR:
            raise ValueError("Cannot advance an analysis that has failed")
        if status not in _ORDER or status == AnalysisStatus.READY:
            raise ValueError(f"Cannot advance analysis to '{status}'")
        if _ORDER[status] < _ORDER[self.status]:
            raise ValueError(f"Cannot move analysis from '{self.status}' back to '{status}'")
        return replace(self, status=status, error=None)

    def fail(self, message: str) -> "AnalysisState":
        return replace(self, status=AnalysisStatus.ERROR, error=message)

    def complete(self, response_count: int, *, at: Optional[datetime] = None) -> "AnalysisState":
        if self.status == AnalysisStatus.ERROR:
            raise ValueError("Cannot complete an analysis that has failed")
        return replace(
            self,
            status=AnalysisStatus.READY,
            error=None,
            response_count=response_count,
            updated_at=at or datetime.utcnow(),
        )

    def staleness(self, current_count: int) -> int:
        """Number of responses submitted since the last successful analysis."""

        return max(0, current_count - (self.response_count or 0))
