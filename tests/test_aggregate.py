from __future__ import annotations

import math

import pytest

from style_core.aggregate import CohortAggregator, aggregate, bucket_for, diversity_index
from style_core.answers import AnswerCollector
from style_core.errors import InsufficientData
from style_core.lifecycle import AssignmentManager
from style_core.types import ScoreResult

from tests.conftest import T0, build_synthetic_instrument


def _result(student, scores, dominant, data_quality=()):
    return ScoreResult(
        assignment_id=f"a-{student}-{dominant}",
        student_id=student,
        instrument_type="SYN",
        instrument_version="1.0.0",
        per_category_score=dict(scores),
        dominant_category=dominant,
        levels={},
        computed_at=T0,
        scoring_version="1.0.0",
        data_quality=list(data_quality),
    )


def test_bucket_boundaries():
    assert bucket_for(0) == "low"
    assert bucket_for(39.99) == "low"
    assert bucket_for(40) == "medium"
    assert bucket_for(70) == "medium"
    assert bucket_for(70.01) == "high"
    assert bucket_for(100) == "high"


def test_diversity_index():
    assert diversity_index({"A": 2, "B": 2}, 2) == 10.0
    assert diversity_index({"A": 4, "B": 0}, 2) == 0.0
    assert diversity_index({"A": 3}, 1) == 0.0
    assert diversity_index({}, 3) == 0.0
    # H = ln 2 over max ln 3
    assert diversity_index({"A": 1, "B": 1, "C": 0}, 3) == round(math.log(2) / math.log(3) * 10, 2)


def test_aggregate_statistics():
    defn = build_synthetic_instrument(categories=("Alpha", "Beta", "Gamma"))
    results = [
        _result("s1", {"Alpha": 100.0, "Beta": 40.0, "Gamma": 50.0}, "Alpha"),
        _result("s2", {"Alpha": 20.0, "Beta": 70.0, "Gamma": 50.0}, "Alpha"),
        _result("s3", {"Alpha": 60.0, "Beta": 90.0, "Gamma": 50.0}, "Beta", ["suspicious-pattern"]),
        _result("s3", {"Alpha": 60.0, "Beta": 10.0, "Gamma": 50.0}, "Beta", ["flat-profile"]),
    ]
    prof = aggregate(results, defn, cohort_id="3B")

    assert prof.cohort_id == "3B"
    assert prof.total_students == 3
    assert prof.total_completed_tests == 4
    alpha = prof.per_category["Alpha"]
    assert alpha.mean == 60.0
    assert alpha.std_dev == round(math.sqrt((1600 + 1600 + 0 + 0) / 4), 2)
    assert alpha.distribution == {"low": 1, "medium": 2, "high": 1}
    assert prof.per_category["Beta"].distribution == {"low": 1, "medium": 2, "high": 1}
    assert prof.per_category["Gamma"].std_dev == 0.0

    assert prof.dominant_style_counts == {"Alpha": 2, "Beta": 2, "Gamma": 0}
    assert list(prof.dominant_style_counts) == ["Alpha", "Beta", "Gamma"]
    assert prof.most_common_style == "Alpha"
    assert prof.diversity_index == round(math.log(2) / math.log(3) * 10, 2)
    assert prof.flagged_results == 1


def test_distribution_counts_sum_to_total():
    defn = build_synthetic_instrument()
    results = [
        _result(f"s{i}", {"Alpha": float(i * 9), "Beta": float(100 - i * 9)}, "Alpha") for i in range(12)
    ]
    prof = aggregate(results, defn)
    for stats in prof.per_category.values():
        assert sum(stats.distribution.values()) == prof.total_completed_tests


def test_below_minimum_results_is_insufficient():
    defn = build_synthetic_instrument()
    with pytest.raises(InsufficientData):
        aggregate([], defn)
    with pytest.raises(InsufficientData):
        aggregate([_result("s1", {"Alpha": 50.0}, "Alpha")], defn)


def _complete(mgr, collector, student, values, cohort="3B"):
    a = mgr.assign(student, "SYN", cohort_id=cohort)
    mgr.start(a.id)
    for pos, v in enumerate(values):
        collector.submit(a.id, pos, v, 4000)
    return mgr.complete(a.id)


def test_cohort_aggregator_reads_completed_results_and_caches(store, catalog, clock):
    mgr = AssignmentManager(store, catalog, clock=clock)
    collector = AnswerCollector(store, catalog, clock=clock)
    agg = CohortAggregator(store, catalog, cache_enabled=True)

    _complete(mgr, collector, "s1", (5, 1, 3, 3))
    with pytest.raises(InsufficientData):
        agg.profile("3B", "SYN")

    clock.advance(hours=1)
    _complete(mgr, collector, "s2", (3, 3, 1, 5))
    # still-active and other-cohort assignments are ignored
    mgr.assign("s3", "SYN", cohort_id="3B")
    _complete(mgr, collector, "x1", (1, 5, 1, 5), cohort="4A")

    first = agg.profile("3B", "SYN")
    assert first.total_completed_tests == 2
    assert first.cache_key == "3B:SYN:2"
    assert first.dominant_style_counts == {"Alpha": 1, "Beta": 1}
    assert first.per_category["Alpha"].mean == 75.0
    assert agg.profile("3B", "SYN") is first

    clock.advance(hours=1)
    _complete(mgr, collector, "s4", (4, 2, 4, 2))
    second = agg.profile("3B", "SYN")
    assert second is not first
    assert second.cache_key == "3B:SYN:3"
    assert second.total_completed_tests == 3


def test_cohort_aggregator_time_window(store, catalog, clock):
    mgr = AssignmentManager(store, catalog, clock=clock)
    collector = AnswerCollector(store, catalog, clock=clock)
    agg = CohortAggregator(store, catalog, cache_enabled=False)
    for student in ("s1", "s2", "s3"):
        _complete(mgr, collector, student, (4, 2, 2, 4))
        clock.advance(days=1)

    assert agg.profile("3B", "SYN").total_completed_tests == 3
    windowed = agg.profile("3B", "SYN", since=T0.replace(hour=12))
    assert windowed.total_completed_tests == 2
    assert windowed.cache_key.startswith("3B:SYN:2:")
    with pytest.raises(InsufficientData):
        agg.profile("3B", "SYN", since=T0.replace(hour=12), until=T0.replace(day=5, hour=8))


def test_cohort_aggregator_keeps_one_cached_profile_per_window(store, catalog, clock):
    mgr = AssignmentManager(store, catalog, clock=clock)
    collector = AnswerCollector(store, catalog, clock=clock)
    agg = CohortAggregator(store, catalog, cache_enabled=True)

    for i in range(6):
        _complete(mgr, collector, f"s{i}", (5, 1, 3, 3) if i % 2 else (3, 3, 1, 5))
        clock.advance(hours=1)
        if i >= 1:
            prof = agg.profile("3B", "SYN")
            assert prof.cache_key == f"3B:SYN:{i + 1}"
            assert len(agg._cache) == 1

    agg.profile("3B", "SYN", since=T0)
    assert len(agg._cache) == 2
    assert agg.profile("3B", "SYN") is prof
