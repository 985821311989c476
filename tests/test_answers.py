from __future__ import annotations

import logging

import pytest

from style_core import config
from style_core.answers import AnswerCollector
from style_core.catalog import InstrumentCatalog
from style_core.errors import AnswerAlreadyRecorded, InvalidQuestionIndex, InvalidState, InvalidValue
from style_core.lifecycle import AssignmentManager

from tests.conftest import build_synthetic_instrument


def _setup(store, clock, **cfg):
    catalog = InstrumentCatalog([build_synthetic_instrument(**cfg)])
    mgr = AssignmentManager(store, catalog, clock=clock)
    collector = AnswerCollector(store, catalog, clock=clock)
    a = mgr.assign("stu-1", "SYN")
    mgr.start(a.id)
    return mgr, collector, a


def test_answer_recorded_against_presentation_position(store, clock):
    mgr, collector, a = _setup(store, clock)
    out = collector.submit(a.id, 2, 4, 3500)
    assert out.accepted and out.flags == [] and out.revision == 0

    stored = mgr.get(a.id).answers[2]
    assert stored.value == 4
    assert stored.time_spent_ms == 3500
    assert stored.submitted_at == clock.now


@pytest.mark.parametrize("value", [0, 6, -1, True, "3", 2.5, None])
def test_out_of_scale_values_rejected(store, clock, value):
    mgr, collector, a = _setup(store, clock)
    with pytest.raises(InvalidValue):
        collector.submit(a.id, 0, value, 3000)
    assert mgr.get(a.id).answers == {}


@pytest.mark.parametrize("index", [-1, 4, 99, "0", 1.0])
def test_bad_question_index_rejected(store, clock, index):
    _, collector, a = _setup(store, clock)
    with pytest.raises(InvalidQuestionIndex):
        collector.submit(a.id, index, 3, 3000)


def test_negative_time_rejected(store, clock):
    _, collector, a = _setup(store, clock)
    with pytest.raises(InvalidValue):
        collector.submit(a.id, 0, 3, -5)


def test_answers_need_in_progress(store, clock):
    mgr, collector, a = _setup(store, clock)
    mgr.revoke(a.id)
    with pytest.raises(InvalidState):
        collector.submit(a.id, 0, 3, 3000)

    pending = mgr.assign("stu-2", "SYN")
    with pytest.raises(InvalidState):
        collector.submit(pending.id, 0, 3, 3000)


def test_resubmission_without_backtrack_rejected(store, clock):
    mgr, collector, a = _setup(store, clock)
    collector.submit(a.id, 0, 2, 3000)
    with pytest.raises(AnswerAlreadyRecorded):
        collector.submit(a.id, 0, 5, 3000)
    assert mgr.get(a.id).answers[0].value == 2


def test_backtrack_overwrites_and_counts_revisions(store, clock):
    mgr, collector, a = _setup(store, clock, allow_backtrack=True)
    collector.submit(a.id, 0, 1, 3000)
    out = collector.submit(a.id, 0, 5, 3000)
    assert out.revision == 1
    assert collector.submit(a.id, 0, 5, 3000).revision == 2

    for pos, v in ((1, 1), (2, 3), (3, 3)):
        collector.submit(a.id, pos, v, 3000)
    _, score = mgr.complete(a.id)
    assert score.per_category_score["Alpha"] == 100.0

    with pytest.raises(InvalidState):
        collector.submit(a.id, 0, 1, 3000)


def test_fast_answers_flagged_and_mark_suspicious_at_threshold(store, clock):
    mgr, collector, a = _setup(store, clock)
    outs = [collector.submit(a.id, pos, 3, 200) for pos in range(3)]
    assert all(config.FLAG_FAST_ANSWER in o.flags for o in outs)
    assert [o.suspicious_pattern for o in outs] == [False, False, True]

    stored = mgr.get(a.id)
    assert stored.fast_answer_count == 3
    assert stored.suspicious_pattern is True

    collector.submit(a.id, 3, 3, 5000)
    _, score = mgr.complete(a.id)
    assert "suspicious-pattern" in score.data_quality
    assert config.FLAG_FAST_ANSWER not in score.data_quality
    assert score.flagged


def test_slow_answer_is_logged_not_flagged(store, clock, caplog):
    _, collector, a = _setup(store, clock)
    with caplog.at_level(logging.WARNING, logger="style_core.answers"):
        out = collector.submit(a.id, 0, 3, 120000)
    assert out.flags == []
    assert any("slow answer" in r.getMessage() for r in caplog.records)


def test_answers_after_time_limit_are_flagged(store, clock):
    mgr, collector, a = _setup(store, clock)
    clock.advance(minutes=9)
    assert collector.submit(a.id, 0, 3, 3000).flags == []
    clock.advance(minutes=2)
    out = collector.submit(a.id, 1, 3, 3000)
    assert out.flags == [config.FLAG_TIME_LIMIT]

    for pos in (2, 3):
        collector.submit(a.id, pos, 3, 3000)
    _, score = mgr.complete(a.id)
    assert config.FLAG_TIME_LIMIT in score.data_quality


def test_revising_a_fast_answer_counts_the_position_once(store, clock):
    mgr, collector, a = _setup(store, clock, allow_backtrack=True)
    outs = [collector.submit(a.id, 0, v, 200) for v in (1, 2, 3)]
    assert [o.revision for o in outs] == [0, 1, 2]
    assert not any(o.suspicious_pattern for o in outs)

    stored = mgr.get(a.id)
    assert len(stored.answers) == 1
    assert stored.fast_answer_count == 1
    assert stored.suspicious_pattern is False

    # a slower revision clears the position from the count
    collector.submit(a.id, 0, 4, 3000)
    assert mgr.get(a.id).fast_answer_count == 0
    collector.submit(a.id, 1, 2, 200)
    collector.submit(a.id, 2, 2, 200)
    assert mgr.get(a.id).fast_answer_count == 2
    assert collector.submit(a.id, 3, 2, 200).suspicious_pattern is True
