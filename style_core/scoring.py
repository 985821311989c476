from __future__ import annotations
import math
from typing import Dict, List, Optional, Tuple

from . import config
from .errors import InvalidState
from .types import Assignment, AssignmentStatus, InstrumentDefinition, Polarity, ScoreResult
from .validators import analyze_pattern


def invert(value: int, scale_min: int, scale_max: int) -> int:
    return (scale_max + scale_min) - value


def normalize(mean: float, scale_min: int, scale_max: int) -> float:
    """Map a mean on the ordinal scale onto 0..100."""

    span = float(scale_max - scale_min)
    norm = (mean - scale_min) / span * (config.NORM_MAX - config.NORM_MIN) + config.NORM_MIN
    return max(config.NORM_MIN, min(config.NORM_MAX, norm))


def level_for(score: float) -> str:
    s = float(score)
    for floor, label in config.LEVEL_THRESHOLDS:
        if s >= floor:
            return label
    return config.LEVEL_FLOOR


def _answered_by_question(assignment: Assignment) -> List[Tuple[int, int]]:
    """(catalog question index, value) pairs, in catalog order."""

    pairs = [(assignment.question_order[pos], ans.value) for pos, ans in assignment.answers.items()]
    pairs.sort()
    return pairs


def category_scores(assignment: Assignment, defn: InstrumentDefinition) -> Dict[str, float]:
    cfg = defn.config
    weighted: Dict[str, List[float]] = {}
    weights: Dict[str, List[float]] = {}
    for q_idx, value in _answered_by_question(assignment):
        q = defn.questions[q_idx]
        v = invert(value, cfg.scale_min, cfg.scale_max) if q.polarity == Polarity.NEGATIVE else value
        weighted.setdefault(q.category, []).append(q.weight * v)
        weights.setdefault(q.category, []).append(q.weight)

    out: Dict[str, float] = {}
    for cat in defn.categories:
        if cat not in weights:
            continue
        mean = math.fsum(weighted[cat]) / math.fsum(weights[cat])
        out[cat] = round(normalize(mean, cfg.scale_min, cfg.scale_max), config.SCORE_DECIMALS)
    return out


def dominant_category(scores: Dict[str, float], defn: InstrumentDefinition) -> Optional[str]:
    # strict comparison keeps the earliest declared category on ties
    best: Optional[str] = None
    best_dev = -1.0
    for cat in defn.categories:
        if cat not in scores:
            continue
        dev = abs(scores[cat] - config.SCALE_MIDPOINT)
        if dev > best_dev:
            best, best_dev = cat, dev
    return best


def score_assignment(assignment: Assignment, defn: InstrumentDefinition) -> ScoreResult:
    """Score a completed assignment.

    Pure function of the stored answers and the instrument version: answer
    order and presentation order do not affect the result, and ``computed_at``
    is the completion time, so re-scoring yields an identical value.
    """

    if assignment.status != AssignmentStatus.COMPLETED or assignment.completed_at is None:
        raise InvalidState(f"assignment {assignment.id} is {assignment.status.value}, not completed")

    scores = category_scores(assignment, defn)
    pattern = analyze_pattern(assignment, defn, scores)

    data_quality: List[str] = []
    if assignment.suspicious_pattern:
        data_quality.append("suspicious-pattern")
    for flag in assignment.flags:
        if flag != config.FLAG_FAST_ANSWER and flag not in data_quality:
            data_quality.append(flag)
    for warning in pattern.get("warnings", []):  # type: ignore[union-attr]
        if warning not in data_quality:
            data_quality.append(str(warning))

    return ScoreResult(
        assignment_id=assignment.id,
        student_id=assignment.student_id,
        instrument_type=assignment.instrument_type,
        instrument_version=assignment.instrument_version,
        per_category_score=scores,
        dominant_category=dominant_category(scores, defn),
        levels={cat: level_for(val) for cat, val in scores.items()},
        computed_at=assignment.completed_at,
        scoring_version=config.SCORING_VERSION,
        pattern=pattern,
        data_quality=data_quality,
    )


__all__ = [
    "category_scores",
    "dominant_category",
    "invert",
    "level_for",
    "normalize",
    "score_assignment",
]
