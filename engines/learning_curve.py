"""Learning-curve analytics over sealed attempts."""

from __future__ import annotations

import math
import statistics
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from engines.attempt_tracker import MAX_SCORE, MIN_SCORE, PASSING_SCORE
from schemas import Attempt, LearningCurve, LearningCurvePoint

TREND_TOLERANCE = 5.0

TIME_RANGES: Dict[str, timedelta] = {
    "last_7_days": timedelta(days=7),
    "last_30_days": timedelta(days=30),
    "last_3_months": timedelta(days=90),
    "last_6_months": timedelta(days=180),
}


def _scored(attempts: Sequence[Attempt]) -> List[Attempt]:
    ordered = sorted(attempts, key=lambda attempt: attempt.attempt_number)
    return [attempt for attempt in ordered if attempt.score is not None]


def filter_by_time_range(
    attempts: Sequence[Attempt],
    time_range: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> List[Attempt]:
    """Keep attempts started inside ``time_range``; ``None`` or ``"all"`` keeps everything."""

    if not time_range or time_range == "all":
        return list(attempts)
    if time_range not in TIME_RANGES:
        raise ValueError(f"Unknown time range '{time_range}'. Expected one of: {', '.join(TIME_RANGES)}")
    cutoff = (now or datetime.now(timezone.utc)) - TIME_RANGES[time_range]
    kept = []
    for attempt in attempts:
        started = attempt.started_at
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        if started >= cutoff:
            kept.append(attempt)
    return kept


class LearningCurveAnalyzer:
    """Trend classification and projection for one student's attempts on one case.

    Attempts without a score (abandoned or still running) are left out of
    every numeric series. Nothing here is stored; each call recomputes from
    the attempts it is given.
    """

    def __init__(self, tolerance: float = TREND_TOLERANCE, passing_score: int = PASSING_SCORE) -> None:
        self.tolerance = tolerance
        self.passing_score = passing_score

    def trend(self, attempts: Sequence[Attempt]) -> str:
        scores = [attempt.score for attempt in _scored(attempts)]
        n = len(scores)
        if n < 2:
            return "stable"
        half = math.ceil(n / 2)
        earliest = statistics.fmean(scores[:half])
        latest = statistics.fmean(scores[-half:])
        if latest - earliest > self.tolerance:
            return "improving"
        if earliest - latest > self.tolerance:
            return "declining"
        return "stable"

    def predicted_next_score(self, attempts: Sequence[Attempt]) -> Optional[int]:
        scores = [attempt.score for attempt in _scored(attempts)]
        if len(scores) < 2:
            return None
        projected = scores[-1] + (scores[-1] - scores[-2])
        return max(MIN_SCORE, min(MAX_SCORE, projected))

    def improvement_rate(self, attempts: Sequence[Attempt]) -> float:
        scores = [attempt.score for attempt in _scored(attempts)]
        if len(scores) < 2:
            return 0.0
        deltas = [later - earlier for earlier, later in zip(scores, scores[1:])]
        return round(statistics.fmean(deltas), 2)

    def points(self, attempts: Sequence[Attempt]) -> List[LearningCurvePoint]:
        return [
            LearningCurvePoint(
                attempt_number=attempt.attempt_number,
                score=attempt.score,
                time_spent_minutes=round(attempt.total_time_seconds / 60.0, 2),
                date=attempt.started_at.date().isoformat(),
            )
            for attempt in _scored(attempts)
        ]

    def curve(
        self,
        attempts: Sequence[Attempt],
        *,
        time_range: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LearningCurve:
        selected = filter_by_time_range(attempts, time_range, now=now)
        return LearningCurve(
            attempts=self.points(selected),
            trend=self.trend(selected),
            improvement_rate=self.improvement_rate(selected),
            predicted_next_score=self.predicted_next_score(selected),
        )

    def score_summary(self, attempts: Sequence[Attempt]) -> Dict[str, Any]:
        scored = _scored(attempts)
        current = scored[-1].score if scored else None
        best = max((attempt.score for attempt in scored), default=None)
        return {
            "current_score": current,
            "best_score": best,
            "attempt_count": len(attempts),
            "scored_attempt_count": len(scored),
            "passing_score": self.passing_score,
            "is_passing": current is not None and current >= self.passing_score,
        }

    def time_usage(self, attempts: Sequence[Attempt]) -> Dict[str, Any]:
        minutes = [attempt.total_time_seconds / 60.0 for attempt in attempts]
        return {
            "total_minutes": round(sum(minutes), 2),
            "average_minutes": round(statistics.fmean(minutes), 2) if minutes else 0.0,
            "longest_minutes": round(max(minutes), 2) if minutes else 0.0,
        }

    def conversation_summary(self, attempts: Sequence[Attempt]) -> Dict[str, Any]:
        counts = [attempt.total_messages for attempt in attempts]
        checkpoints = [len(attempt.checkpoints_reached) for attempt in attempts]
        return {
            "total_messages": sum(counts),
            "average_messages": round(statistics.fmean(counts), 2) if counts else 0.0,
            "average_checkpoints": round(statistics.fmean(checkpoints), 2) if checkpoints else 0.0,
            "completed_attempts": sum(1 for attempt in attempts if attempt.status == "completed"),
            "abandoned_attempts": sum(1 for attempt in attempts if attempt.status == "abandoned"),
        }

    def class_trend(self, attempts: Sequence[Attempt]) -> List[Dict[str, Any]]:
        """Average score per attempt number across every student of a case."""

        by_number: Dict[int, List[int]] = {}
        students: Dict[int, set] = {}
        for attempt in attempts:
            if attempt.score is None:
                continue
            by_number.setdefault(attempt.attempt_number, []).append(attempt.score)
            students.setdefault(attempt.attempt_number, set()).add(attempt.student_id)
        return [
            {
                "attempt_number": number,
                "average_score": round(statistics.fmean(scores), 2),
                "student_count": len(students[number]),
            }
            for number, scores in sorted(by_number.items())
        ]
