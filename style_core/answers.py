from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from . import config
from .catalog import InstrumentCatalog
from .errors import AnswerAlreadyRecorded, InvalidQuestionIndex, InvalidState, InvalidValue
from .lifecycle import Clock, utcnow
from .types import Answer, Assignment, AssignmentStatus, InstrumentDefinition, SubmitOutcome

log = logging.getLogger(__name__)


def _is_int(x: object) -> bool:
    return isinstance(x, int) and not isinstance(x, bool)


def check_answer(
    assignment: Assignment,
    defn: InstrumentDefinition,
    question_index: int,
    value: int,
    time_spent_ms: int,
    now: datetime,
) -> List[str]:
    """Validate one answer and return its data-quality flags.

    Raises for hard failures (state, index, value). Timing problems are
    returned as flags or logged, never raised.
    """

    cfg = defn.config
    if assignment.status != AssignmentStatus.IN_PROGRESS:
        raise InvalidState(f"assignment is {assignment.status.value}, answers need in_progress")
    if not _is_int(question_index) or not (0 <= question_index < len(assignment.question_order)):
        raise InvalidQuestionIndex(
            f"question index {question_index!r} outside 0..{len(assignment.question_order) - 1}"
        )
    if not _is_int(value) or not (cfg.scale_min <= value <= cfg.scale_max):
        raise InvalidValue(f"value {value!r} outside {cfg.scale_min}..{cfg.scale_max}")
    if not _is_int(time_spent_ms) or time_spent_ms < 0:
        raise InvalidValue(f"timeSpentMs must be a non-negative integer (got {time_spent_ms!r})")
    if question_index in assignment.answers and not cfg.allow_backtrack:
        raise AnswerAlreadyRecorded(f"question {question_index} already answered")

    flags: List[str] = []
    if time_spent_ms < cfg.min_time_per_question_ms:
        flags.append(config.FLAG_FAST_ANSWER)
        log.info(
            "fast answer on %s q=%d: %dms < %dms",
            assignment.id, question_index, time_spent_ms, cfg.min_time_per_question_ms,
        )
    elif time_spent_ms > cfg.max_time_per_question_ms:
        log.warning(
            "slow answer on %s q=%d: %dms > %dms",
            assignment.id, question_index, time_spent_ms, cfg.max_time_per_question_ms,
        )

    if assignment.started_at is not None:
        deadline = assignment.started_at + timedelta(minutes=cfg.time_limit_minutes)
        if now > deadline:
            flags.append(config.FLAG_TIME_LIMIT)
    return flags


class AnswerCollector:
    def __init__(self, store, catalog: InstrumentCatalog, clock: Optional[Clock] = None):
        self.store = store
        self.catalog = catalog
        self.clock: Clock = clock or utcnow

    def submit(self, assignment_id: str, question_index: int, value: int, time_spent_ms: int) -> SubmitOutcome:
        assignment = self.store.get_assignment(assignment_id)
        defn = self.catalog.get(assignment.instrument_type, assignment.instrument_version)
        now = self.clock()
        flags = check_answer(assignment, defn, question_index, value, time_spent_ms, now)

        answer = Answer(
            question_index=question_index,
            value=value,
            submitted_at=now,
            time_spent_ms=time_spent_ms,
            flags=flags,
        )
        revision, fast_count, suspicious = self.store.record_answer(
            assignment_id,
            answer,
            allow_backtrack=defn.config.allow_backtrack,
            fast_threshold=defn.config.fast_answer_threshold,
        )
        if suspicious and not assignment.suspicious_pattern:
            log.warning(
                "assignment %s marked suspicious: %d fast answers (threshold %d)",
                assignment_id, fast_count, defn.config.fast_answer_threshold,
            )
        return SubmitOutcome(accepted=True, flags=flags, revision=revision, suspicious_pattern=suspicious)
