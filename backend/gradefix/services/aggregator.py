from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from numbers import Number
from typing import Any, Iterable

from ..config import settings
from ..models import ResolvedAnswer

DEFAULT_WEIGHT = 1.0


@dataclass(frozen=True)
class GradeSummary:
    score: int
    correct_count: int
    error_count: int
    correct_weight: float
    total_weight: float
    passed: bool


def normalize_weight(value: Any) -> float:
    if value is None or isinstance(value, bool) or not isinstance(value, Number):
        return DEFAULT_WEIGHT
    weight = float(value)
    if not math.isfinite(weight) or weight <= 0:
        return DEFAULT_WEIGHT
    return weight


def _round_half_up(value: float) -> int:
    return int(Decimal(repr(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def weighted_score(correct_weight: float, total_weight: float) -> int:
    if total_weight <= 0:
        return 0
    score = _round_half_up(100.0 * correct_weight / total_weight)
    return max(0, min(100, score))


def aggregate(answers: Iterable[ResolvedAnswer], passing_score: int | None = None) -> GradeSummary:
    threshold = settings.passing_score if passing_score is None else passing_score
    correct_count = 0
    error_count = 0
    correct_weight = 0.0
    total_weight = 0.0
    for answer in answers:
        weight = normalize_weight(answer.weight)
        total_weight += weight
        if answer.is_correct:
            correct_count += 1
            correct_weight += weight
        else:
            error_count += 1

    score = weighted_score(correct_weight, total_weight)
    return GradeSummary(
        score=score,
        correct_count=correct_count,
        error_count=error_count,
        correct_weight=correct_weight,
        total_weight=total_weight,
        passed=score >= threshold,
    )
