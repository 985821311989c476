"""Assignment lifecycle: the state machine and the manager that drives it.

The manager never holds state of its own. Every operation reads the current
record from the store, applies one transition from ``TRANSITIONS`` and writes
it back with a conditional update, so a concurrent writer surfaces as
``StatePrecondition`` instead of a lost update. The single-active-attempt
rule is enforced by the store's unique index; the history check in
``assign`` only produces a friendlier error in the common case.
"""
from __future__ import annotations

import hashlib
import logging
import math
import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple, Union

from . import config
from .catalog import InstrumentCatalog
from .errors import (
    AlreadyTerminal,
    AssignmentNotFound,
    CohortNotFound,
    CooldownActive,
    DuplicateActiveAssignment,
    IncompleteAnswers,
    InvalidState,
    InvalidValue,
    StatePrecondition,
)
from .scoring import score_assignment
from .types import Assignment, AssignmentStatus, InstrumentConfig, InstrumentDefinition, Question, ScoreResult

log = logging.getLogger(__name__)

Clock = Callable[[], datetime]

EVENT_START = "start"
EVENT_COMPLETE = "complete"
EVENT_REVOKE = "revoke"

TRANSITIONS: Dict[Tuple[AssignmentStatus, str], AssignmentStatus] = {
    (AssignmentStatus.PENDING, EVENT_START): AssignmentStatus.IN_PROGRESS,
    (AssignmentStatus.IN_PROGRESS, EVENT_COMPLETE): AssignmentStatus.COMPLETED,
    (AssignmentStatus.PENDING, EVENT_REVOKE): AssignmentStatus.REVOKED,
    (AssignmentStatus.IN_PROGRESS, EVENT_REVOKE): AssignmentStatus.REVOKED,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def transition(status: AssignmentStatus, event: str) -> AssignmentStatus:
    nxt = TRANSITIONS.get((status, event))
    if nxt is not None:
        return nxt
    if event == EVENT_REVOKE and status.is_terminal:
        raise AlreadyTerminal(f"assignment is already {status.value}")
    raise InvalidState(f"cannot {event} an assignment that is {status.value}")


def question_order(assignment_id: str, n_questions: int, randomize: bool) -> List[int]:
    """Presentation order for an assignment.

    The shuffle is seeded from the assignment id, so a resumed or retried
    attempt always replays the same order.
    """

    order = list(range(n_questions))
    if randomize and n_questions > 1:
        digest = hashlib.sha256(assignment_id.encode("utf-8")).digest()
        random.Random(int.from_bytes(digest[:8], "big")).shuffle(order)
    return order


def missing_positions(assignment: Assignment, defn: InstrumentDefinition) -> List[int]:
    out: List[int] = []
    for pos, q_idx in enumerate(assignment.question_order):
        if defn.questions[q_idx].required and pos not in assignment.answers:
            out.append(pos)
    return out


def presented_questions(assignment: Assignment, defn: InstrumentDefinition) -> List[Question]:
    return [defn.questions[i] for i in assignment.question_order]


def _parse_expected(expected: Union[str, AssignmentStatus, None]) -> Optional[AssignmentStatus]:
    if expected is None or isinstance(expected, AssignmentStatus):
        return expected
    try:
        return AssignmentStatus(str(expected))
    except ValueError as exc:
        raise InvalidValue(f"unknown status {expected!r}") from exc


def _check_expected(assignment: Assignment, expected: Union[str, AssignmentStatus, None]) -> None:
    want = _parse_expected(expected)
    if want is not None and want != assignment.status:
        log.info(
            "stale status for %s: caller saw %s, stored %s",
            assignment.id, want.value, assignment.status.value,
        )
        raise StatePrecondition(
            f"assignment is {assignment.status.value}, caller expected {want.value}",
            currentStatus=assignment.status.value,
        )


class AssignmentManager:
    """Assign, start, complete and revoke assignments against a store."""

    def __init__(self, store, catalog: InstrumentCatalog, clock: Optional[Clock] = None):
        self.store = store
        self.catalog = catalog
        self.clock: Clock = clock or utcnow

    # ---- commands ----
    def assign(
        self,
        student_id: str,
        instrument_type: str,
        assigned_by: str = config.DEFAULT_ASSIGNER,
        cohort_id: Optional[str] = None,
        version: Optional[str] = None,
    ) -> Assignment:
        defn = self.catalog.get(instrument_type, version)
        now = self.clock()
        history = self.store.attempt_history(student_id, defn.type)

        if any(a.status.is_active for a in history):
            log.info("duplicate assign rejected: student=%s instrument=%s", student_id, defn.type)
            raise DuplicateActiveAssignment(
                f"student {student_id} already has an active {defn.type} assignment"
            )
        self._check_cooldown(history, defn.config, now)

        aid = str(uuid.uuid4())
        assignment = Assignment(
            id=aid,
            student_id=student_id,
            instrument_type=defn.type,
            instrument_version=defn.version,
            status=AssignmentStatus.PENDING,
            assigned_at=now,
            assigned_by=assigned_by or config.DEFAULT_ASSIGNER,
            question_order=question_order(aid, len(defn.questions), defn.config.randomize),
            attempt_number=sum(1 for a in history if a.status != AssignmentStatus.REVOKED) + 1,
            cohort_id=cohort_id,
        )
        self.store.insert_assignment(assignment)
        log.info(
            "assigned %s %s to student=%s (attempt %d) id=%s",
            defn.type, defn.version, student_id, assignment.attempt_number, aid,
        )
        return assignment

    def start(self, assignment_id: str, expected_status: Union[str, AssignmentStatus, None] = None) -> Assignment:
        assignment = self.store.get_assignment(assignment_id)
        if assignment.status == AssignmentStatus.IN_PROGRESS:
            return assignment
        _check_expected(assignment, expected_status)
        assignment.status = transition(assignment.status, EVENT_START)
        assignment.started_at = self.clock()
        self.store.update_assignment(assignment)
        log.info("started assignment %s", assignment_id)
        return assignment

    def complete(
        self, assignment_id: str, expected_status: Union[str, AssignmentStatus, None] = None
    ) -> Tuple[Assignment, ScoreResult]:
        assignment = self.store.get_assignment(assignment_id)
        _check_expected(assignment, expected_status)
        new_status = transition(assignment.status, EVENT_COMPLETE)

        defn = self.catalog.get(assignment.instrument_type, assignment.instrument_version)
        missing = missing_positions(assignment, defn)
        if len(assignment.answers) < defn.config.min_questions or missing:
            raise IncompleteAnswers(
                f"{len(assignment.answers)} answers stored, {defn.config.min_questions} required",
                missing=missing,
            )

        assignment.status = new_status
        assignment.completed_at = self.clock()
        score = score_assignment(assignment, defn)
        self.store.complete_assignment(assignment, score)
        log.info(
            "completed assignment %s dominant=%s suspicious=%s",
            assignment_id, score.dominant_category, assignment.suspicious_pattern,
        )
        return assignment, score

    def revoke(self, assignment_id: str, expected_status: Union[str, AssignmentStatus, None] = None) -> Assignment:
        assignment = self.store.get_assignment(assignment_id)
        _check_expected(assignment, expected_status)
        assignment.status = transition(assignment.status, EVENT_REVOKE)
        assignment.revoked_at = self.clock()
        self.store.update_assignment(assignment)
        log.info("revoked assignment %s (%d answers retained)", assignment_id, len(assignment.answers))
        return assignment

    def assign_cohort(
        self, cohort_id: str, instrument_type: str, assigned_by: str = config.DEFAULT_ASSIGNER
    ) -> Tuple[List[Assignment], List[Dict[str, str]]]:
        """Assign to every rostered student; per-student failures are reported, not raised."""

        roster = self.store.get_roster(cohort_id)
        if not roster:
            raise CohortNotFound(f"cohort {cohort_id} has no roster")
        self.catalog.get(instrument_type)

        created: List[Assignment] = []
        skipped: List[Dict[str, str]] = []
        for student_id in roster:
            try:
                created.append(self.assign(student_id, instrument_type, assigned_by, cohort_id=cohort_id))
            except (DuplicateActiveAssignment, CooldownActive) as exc:
                skipped.append({"studentId": student_id, "reason": exc.code, "detail": exc.detail})
        log.info("cohort %s: %d assigned, %d skipped", cohort_id, len(created), len(skipped))
        return created, skipped

    # ---- reads ----
    def get(self, assignment_id: str) -> Assignment:
        return self.store.get_assignment(assignment_id)

    def get_for_student(self, assignment_id: str) -> Assignment:
        assignment = self.store.get_assignment(assignment_id)
        if assignment.status == AssignmentStatus.REVOKED:
            raise AssignmentNotFound(f"assignment {assignment_id} not found")
        return assignment

    def list_for_student(self, student_id: str, include_revoked: bool = False) -> List[Assignment]:
        items = self.store.list_for_student(student_id)
        if include_revoked:
            return items
        return [a for a in items if a.status != AssignmentStatus.REVOKED]

    def list_for_cohort(self, cohort_id: str, instrument_type: Optional[str] = None) -> List[Assignment]:
        return self.store.list_for_cohort(cohort_id, instrument_type)

    def questions_for(self, assignment_id: str) -> Tuple[Assignment, List[Question]]:
        assignment = self.get_for_student(assignment_id)
        defn = self.catalog.get(assignment.instrument_type, assignment.instrument_version)
        return assignment, presented_questions(assignment, defn)

    def score_for(self, assignment_id: str, rescore: bool = False) -> ScoreResult:
        assignment = self.store.get_assignment(assignment_id)
        if assignment.status != AssignmentStatus.COMPLETED:
            raise InvalidState(f"assignment is {assignment.status.value}, not completed")
        if assignment.score_id and not rescore:
            return self.store.get_score(assignment.score_id)
        defn = self.catalog.get(assignment.instrument_type, assignment.instrument_version)
        return score_assignment(assignment, defn)

    # ---- policy ----
    def _check_cooldown(self, history: List[Assignment], cfg: InstrumentConfig, now: datetime) -> None:
        if cfg.cooldown_hours <= 0:
            return
        counted = {AssignmentStatus.COMPLETED}
        if config.COOLDOWN_COUNTS_REVOKED:
            counted.add(AssignmentStatus.REVOKED)
        window = timedelta(hours=cfg.cooldown_hours)
        recent = sorted(
            a.terminal_at for a in history
            if a.status in counted and a.terminal_at is not None and a.terminal_at > now - window
        )
        if len(recent) < cfg.max_attempts:
            return
        # the window reopens once enough counted attempts have aged out
        release = recent[len(recent) - cfg.max_attempts] + window
        retry_after = max(1, int(math.ceil((release - now).total_seconds())))
        log.info("cooldown active: %d attempts in last %dh, retry in %ds", len(recent), cfg.cooldown_hours, retry_after)
        raise CooldownActive(
            f"{len(recent)} attempt(s) in the last {cfg.cooldown_hours}h (limit {cfg.max_attempts})",
            retry_after_seconds=retry_after,
        )


__all__ = [
    "TRANSITIONS",
    "AssignmentManager",
    "missing_positions",
    "presented_questions",
    "question_order",
    "transition",
    "utcnow",
]
