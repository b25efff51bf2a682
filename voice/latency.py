"""
Latency Tracker — Per-stage latency measurement for utterances.

Tracks how long each stage of an utterance takes (transcription, time to
first generated token, time to first audio, full durations) with:
- Per-session timing keyed by segment id, so overlapping stages of one
  utterance are measured independently
- Rolling percentile tracking (p50, p90, p99) across sessions
- Latency budget checks with violation logging
"""
from __future__ import annotations

import time
import structlog
from collections import deque
from typing import Any, Optional
from dataclasses import dataclass
from enum import Enum

logger = structlog.get_logger()


class PipelineStage(str, Enum):
    """Stages of one utterance, measured independently."""
    TRANSCRIPTION = "transcription"      # upload received → transcript
    GENERATION_TTFB = "generation_ttfb"  # generation start → first delta
    GENERATION_FULL = "generation_full"  # generation start → stream end
    SYNTHESIS_TTFB = "synthesis_ttfb"    # synthesis start → first audio chunk
    SYNTHESIS_FULL = "synthesis_full"    # synthesis start → last audio chunk
    TOTAL = "total"                      # upload received → first audio chunk


@dataclass
class LatencyBudget:
    transcription_ms: int = 800
    generation_ttfb_ms: int = 600
    synthesis_ttfb_ms: int = 400
    total_ms: int = 1800

    def budget_for(self, stage: PipelineStage) -> Optional[int]:
        return {
            PipelineStage.TRANSCRIPTION: self.transcription_ms,
            PipelineStage.GENERATION_TTFB: self.generation_ttfb_ms,
            PipelineStage.SYNTHESIS_TTFB: self.synthesis_ttfb_ms,
            PipelineStage.TOTAL: self.total_ms,
        }.get(stage)


class StageTracker:
    """Rolling window of measurements for a single stage."""

    def __init__(self, stage: PipelineStage, window_size: int = 200):
        self.stage = stage
        self._measurements: deque[float] = deque(maxlen=window_size)
        self._total: float = 0.0
        self._count: int = 0

    def record(self, duration_ms: float) -> None:
        self._measurements.append(duration_ms)
        self._total += duration_ms
        self._count += 1

    @property
    def count(self) -> int:
        return self._count

    @property
    def avg_ms(self) -> float:
        return self._total / self._count if self._count > 0 else 0.0

    def percentile(self, pct: int) -> float:
        if not self._measurements:
            return 0.0
        sorted_vals = sorted(self._measurements)
        idx = min(int(len(sorted_vals) * pct / 100), len(sorted_vals) - 1)
        return sorted_vals[idx]

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "count": self._count,
            "avg_ms": round(self.avg_ms, 1),
            "p50_ms": round(self.percentile(50), 1),
            "p90_ms": round(self.percentile(90), 1),
            "p99_ms": round(self.percentile(99), 1),
        }


class SessionLatencyTracker:
    """
    Tracks latency for one session.

    Usage:
        tracker.start(segment_id, PipelineStage.TRANSCRIPTION)
        ...
        tracker.end(segment_id, PipelineStage.TRANSCRIPTION)
    """

    def __init__(self, session_id: str, aggregate: AggregateLatencyTracker = None,
                 budget: LatencyBudget = None):
        self.session_id = session_id
        self.aggregate = aggregate
        self.budget = budget or LatencyBudget()
        self._starts: dict[tuple[str, str], float] = {}
        self._violations: list[dict[str, Any]] = []
        self._turns = 0

    def start(self, segment_id: str, stage: PipelineStage) -> None:
        self._starts[(segment_id, stage.value)] = time.monotonic()

    def end(self, segment_id: str, stage: PipelineStage) -> float:
        """Returns the duration in ms, or 0.0 if the stage was never started."""
        start = self._starts.pop((segment_id, stage.value), None)
        if start is None:
            return 0.0
        duration_ms = (time.monotonic() - start) * 1000
        if self.aggregate is not None:
            self.aggregate.record(stage, duration_ms)

        budget = self.budget.budget_for(stage)
        if budget is not None and duration_ms > budget:
            violation = {
                "stage": stage.value,
                "duration_ms": round(duration_ms, 1),
                "budget_ms": budget,
                "segment_id": segment_id,
            }
            self._violations.append(violation)
            logger.warning("latency_budget_exceeded", session_id=self.session_id, **violation)
        return duration_ms

    def discard(self, segment_id: str) -> None:
        """Forget unfinished timers of an utterance that ended early."""
        for key in [k for k in self._starts if k[0] == segment_id]:
            del self._starts[key]

    def record_turn(self) -> None:
        self._turns += 1

    @property
    def violations(self) -> list[dict[str, Any]]:
        return self._violations

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "turns": self._turns,
            "violations": len(self._violations),
            "pending_timers": len(self._starts),
        }


class AggregateLatencyTracker:
    """Per-stage rolling percentiles across all sessions."""

    def __init__(self, budget: LatencyBudget = None):
        self.budget = budget or LatencyBudget()
        self._stages: dict[PipelineStage, StageTracker] = {
            stage: StageTracker(stage) for stage in PipelineStage
        }

    def create_session_tracker(self, session_id: str) -> SessionLatencyTracker:
        return SessionLatencyTracker(session_id, aggregate=self, budget=self.budget)

    def record(self, stage: PipelineStage, duration_ms: float) -> None:
        self._stages[stage].record(duration_ms)

    def get_stage_stats(self, stage: PipelineStage) -> dict[str, Any]:
        return self._stages[stage].to_dict()

    def get_all_stats(self) -> dict[str, Any]:
        stats = {
            stage.value: tracker.to_dict()
            for stage, tracker in self._stages.items()
            if tracker.count > 0
        }
        stats["budget"] = {
            "transcription_ms": self.budget.transcription_ms,
            "generation_ttfb_ms": self.budget.generation_ttfb_ms,
            "synthesis_ttfb_ms": self.budget.synthesis_ttfb_ms,
            "total_ms": self.budget.total_ms,
        }
        return stats
