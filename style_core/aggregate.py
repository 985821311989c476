"""Cohort-level statistics over completed results.

``aggregate`` is a pure recomputation over a set of ScoreResults: no state
is carried between calls. ``CohortAggregator`` adds the store read (one
snapshot query) and an in-process cache holding one profile per cohort,
instrument and time window, reused while the completed count is unchanged.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from . import config
from .catalog import InstrumentCatalog
from .errors import InsufficientData
from .types import AggregateProfile, CategoryStats, InstrumentDefinition, ScoreResult

log = logging.getLogger(__name__)

BUCKETS = ("low", "medium", "high")


def bucket_for(score: float) -> str:
    if score < config.BUCKET_LOW_MAX:
        return "low"
    if score <= config.BUCKET_MEDIUM_MAX:
        return "medium"
    return "high"


def _mean_std(values: List[float]) -> tuple[float, float]:
    n = len(values)
    mean = math.fsum(values) / n
    var = math.fsum((v - mean) ** 2 for v in values) / n
    return mean, math.sqrt(var)


def diversity_index(counts: Dict[str, int], n_categories: int) -> float:
    """Normalized Shannon entropy of dominant styles, on a 0..DIVERSITY_SCALE range."""

    total = sum(counts.values())
    if total <= 0 or n_categories < 2:
        return 0.0
    h = 0.0
    for c in counts.values():
        if c <= 0:
            continue
        p = c / total
        h -= p * math.log(p)
    return round(h / math.log(n_categories) * config.DIVERSITY_SCALE, config.SCORE_DECIMALS)


def most_common_style(counts: Dict[str, int], categories: Iterable[str]) -> Optional[str]:
    best: Optional[str] = None
    best_n = 0
    for cat in categories:
        n = counts.get(cat, 0)
        if n > best_n:
            best, best_n = cat, n
    return best


def aggregate(
    results: List[ScoreResult],
    defn: InstrumentDefinition,
    cohort_id: Optional[str] = None,
) -> AggregateProfile:
    if len(results) < config.MIN_COHORT_RESULTS:
        raise InsufficientData(
            f"{len(results)} completed result(s); at least {config.MIN_COHORT_RESULTS} needed"
        )

    categories = list(defn.categories)
    for res in results:
        for cat in res.per_category_score:
            if cat not in categories:
                categories.append(cat)

    per_category: Dict[str, CategoryStats] = {}
    for cat in categories:
        values = [r.per_category_score[cat] for r in results if cat in r.per_category_score]
        if not values:
            continue
        mean, std = _mean_std(values)
        dist = {b: 0 for b in BUCKETS}
        for v in values:
            dist[bucket_for(v)] += 1
        per_category[cat] = CategoryStats(
            mean=round(mean, config.SCORE_DECIMALS),
            std_dev=round(std, config.SCORE_DECIMALS),
            distribution=dist,
        )

    counts: Dict[str, int] = {cat: 0 for cat in categories}
    for res in results:
        if res.dominant_category is not None:
            counts[res.dominant_category] = counts.get(res.dominant_category, 0) + 1

    return AggregateProfile(
        cohort_id=cohort_id,
        instrument_type=defn.type,
        total_students=len({r.student_id for r in results}),
        total_completed_tests=len(results),
        per_category=per_category,
        dominant_style_counts=counts,
        most_common_style=most_common_style(counts, categories),
        diversity_index=diversity_index(counts, len(defn.categories)),
        flagged_results=sum(1 for r in results if r.flagged),
    )


class CohortAggregator:
    def __init__(self, store, catalog: InstrumentCatalog, cache_enabled: Optional[bool] = None):
        self.store = store
        self.catalog = catalog
        self.cache_enabled = config.AGGREGATE_CACHE_ENABLED if cache_enabled is None else cache_enabled
        # one slot per (cohort, instrument, window); a slot is stale once the completed count moves
        self._cache: Dict[Tuple[str, str, Optional[datetime], Optional[datetime]], AggregateProfile] = {}

    @staticmethod
    def cache_key(
        cohort_id: str,
        instrument_type: str,
        completed: int,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> str:
        key = f"{cohort_id}:{instrument_type}:{completed}"
        if since is not None or until is not None:
            key += f":{since.isoformat() if since else ''}..{until.isoformat() if until else ''}"
        return key

    def profile(
        self,
        cohort_id: str,
        instrument_type: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> AggregateProfile:
        defn = self.catalog.get(instrument_type)
        slot = (cohort_id, defn.type, since, until)
        if self.cache_enabled:
            n = self.store.count_completed(cohort_id, defn.type, since=since, until=until)
            hit = self._cache.get(slot)
            if hit is not None and hit.total_completed_tests == n:
                log.debug("aggregate cache hit %s", hit.cache_key)
                return hit

        results = self.store.completed_scores(cohort_id, defn.type, since=since, until=until)
        try:
            prof = aggregate(results, defn, cohort_id=cohort_id)
        except InsufficientData:
            self._cache.pop(slot, None)
            raise
        prof.cache_key = self.cache_key(cohort_id, defn.type, len(results), since, until)
        if self.cache_enabled:
            self._cache[slot] = prof
        return prof
