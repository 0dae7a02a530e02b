"""Attempt-level score aggregation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel

from .grader import GradeResult


@dataclass
class GradedItem:
    """One answer's contribution to the attempt.

    Exactly one of `result` / `error` is set, except for manually resolved items
    which carry `manual_score`.
    """
    question_id: str
    points: float
    result: Optional[GradeResult] = None
    error: Optional[str] = None
    manual_score: Optional[float] = None


class GradingSummary(BaseModel):
    total_score: float = 0.0
    max_score: float = 0.0
    percentage: float = 0.0
    passed: Optional[bool] = None
    final: bool = False
    graded_count: int = 0
    pending_question_ids: List[str] = []
    failures: Dict[str, str] = {}


def aggregate(items: Sequence[GradedItem], passing_score: float) -> GradingSummary:
    """Combine per-question outcomes.

    Manual scores and gradable results count toward both numerator and denominator.
    Deferred (`gradable=False`) and failed items are excluded from the interim
    percentage and keep the summary non-final, so `passed` stays None.
    """
    total = 0.0
    maximum = 0.0
    graded = 0
    pending: List[str] = []
    failures: Dict[str, str] = {}

    for item in items:
        if item.manual_score is not None:
            total += item.manual_score
            maximum += item.points
            graded += 1
        elif item.error is not None:
            failures[item.question_id] = item.error
            pending.append(item.question_id)
        elif item.result is not None and item.result.gradable:
            total += item.result.score
            maximum += item.points
            graded += 1
        else:
            pending.append(item.question_id)

    percentage = round(total / maximum * 100.0, 2) if maximum > 0 else 0.0
    final = not pending
    return GradingSummary(
        total_score=round(total, 2),
        max_score=round(maximum, 2),
        percentage=percentage,
        passed=(percentage >= passing_score) if final else None,
        final=final,
        graded_count=graded,
        pending_question_ids=pending,
        failures=failures,
    )
