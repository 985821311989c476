from __future__ import annotations
import math
from collections import Counter
from statistics import fmean, pstdev
from typing import Dict, List, Optional, Tuple

from . import config
from .types import Answer, Assignment, InstrumentDefinition


def straight_lining(values: List[int], ratio: float = config.STRAIGHT_LINE_RATIO) -> Optional[Tuple[int, float]]:
    """Return (value, share) when one value dominates more than ``ratio`` of answers."""

    if not values:
        return None
    value, count = Counter(values).most_common(1)[0]
    share = count / len(values)
    if share > ratio:
        return value, round(share, 3)
    return None


def consistency(answers: List[Answer], scale_min: int, scale_max: int) -> Dict[str, object]:
    if not answers:
        return {"is_consistent": False, "time_consistency": False, "confidence": 0.0, "metrics": {}}

    values = [a.value for a in answers]
    times = [float(a.time_spent_ms) for a in answers]
    avg_time = fmean(times)
    time_std = pstdev(times)

    unique = set(values)
    has_variation = len(unique) > 1
    extremes_only = all(v in (scale_min, scale_max) for v in values)
    midpoint = (scale_min + scale_max) / 2.0
    midpoint_only = all(v == midpoint for v in values)

    value_consistency = has_variation and not extremes_only and not midpoint_only
    time_consistency = time_std < avg_time * config.TIME_CONSISTENCY_RATIO

    confidence = 0.5
    if value_consistency: confidence += 0.25
    if time_consistency: confidence += 0.25
    if midpoint_only: confidence -= 0.3
    if extremes_only: confidence -= 0.3
    confidence = max(0.0, min(1.0, confidence))

    return {
        "is_consistent": value_consistency,
        "time_consistency": time_consistency,
        "extremes_only": extremes_only,
        "midpoint_only": midpoint_only,
        "confidence": round(confidence, 2),
        "metrics": {
            "unique_values": len(unique),
            "total_answers": len(values),
            "avg_time_ms": int(round(avg_time)),
            "time_std_ms": int(round(time_std)),
        },
    }


def time_pattern(answers: List[Answer], min_time_ms: int) -> Dict[str, object]:
    """Response-time summary: too-fast share and answers far slower than the median."""

    if not answers:
        return {
            "average_time_ms": 0, "median_time_ms": 0, "too_fast_responses": 0,
            "outlier_responses": 0, "suspicious": False, "warnings": [],
        }

    times = [a.time_spent_ms for a in answers]
    n = len(times)
    median = sorted(times)[n // 2]
    too_fast = sum(1 for t in times if t < min_time_ms)
    outliers = sum(1 for t in times if t > median * config.TIME_OUTLIER_FACTOR)

    warnings: List[str] = []
    if too_fast > n * config.FAST_RATIO_LIMIT:
        warnings.append("fast-answer-ratio")
    if outliers:
        warnings.append("time-outliers")

    return {
        "average_time_ms": int(round(fmean(times))),
        "median_time_ms": median,
        "too_fast_responses": too_fast,
        "outlier_responses": outliers,
        "suspicious": too_fast > min(config.FAST_RATIO_CAP, n * config.FAST_RATIO_LIMIT),
        "warnings": warnings,
    }


def dimensional_variance(scores: Dict[str, float]) -> Dict[str, object]:
    vals = list(scores.values())
    if len(vals) < 2:
        return {"average": vals[0] if vals else 0.0, "std_dev": 0.0, "has_significant_variance": True}
    std = pstdev(vals)
    return {
        "average": round(math.fsum(vals) / len(vals), 2),
        "std_dev": round(std, 2),
        "has_significant_variance": std >= config.FLAT_PROFILE_STD,
    }


def analyze_pattern(assignment: Assignment, defn: InstrumentDefinition, scores: Dict[str, float]) -> Dict[str, object]:
    """Response-pattern analysis attached to every score.

    Warnings annotate the result for analytics only; nothing here blocks
    completion.
    """

    cfg = defn.config
    answers = assignment.ordered_answers()
    values = [a.value for a in answers]
    warnings: List[str] = []

    cons = consistency(answers, cfg.scale_min, cfg.scale_max)
    if len(values) >= config.PATTERN_MIN_ANSWERS:
        if straight_lining(values) is not None:
            warnings.append("straight-lining")
        if cons.get("extremes_only"):
            warnings.append("extremes-only")
        if cons.get("midpoint_only"):
            warnings.append("midpoint-only")

    timing = time_pattern(answers, cfg.min_time_per_question_ms)
    warnings.extend(timing["warnings"])  # type: ignore[arg-type]

    variance = dimensional_variance(scores)
    if not variance["has_significant_variance"]:
        warnings.append("flat-profile")

    return {
        "is_valid": not warnings,
        "consistency": cons,
        "dimensional_variance": variance,
        "time_pattern": timing,
        "fast_answers": assignment.fast_answer_count,
        "warnings": warnings,
    }


__all__ = ["analyze_pattern", "consistency", "dimensional_variance", "straight_lining", "time_pattern"]
