"""Database-backed persistence for assignments, answers, scores and rosters.

SQLite by default (any SQLAlchemy URL works). Two rules live here rather than
in the engine because only the database can make them atomic:

* at most one pending/in_progress assignment per (student, instrument) is a
  partial unique index, so concurrent ``assign`` calls cannot both win;
* assignment rows carry a ``version`` column and every write is a
  conditional ``UPDATE ... WHERE version = ?``, so a stale writer fails with
  ``StatePrecondition`` instead of overwriting newer state.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    case,
    create_engine,
    delete,
    func,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from style_core import config
from style_core.errors import (
    AnswerAlreadyRecorded,
    AssignmentNotFound,
    DuplicateActiveAssignment,
    InvalidState,
    StatePrecondition,
)
from style_core.types import ACTIVE_STATUSES, Answer, Assignment, AssignmentStatus, ScoreResult

log = logging.getLogger(__name__)

Base = declarative_base()

_ACTIVE_WHERE = text("status IN ({})".format(", ".join(f"'{s}'" for s in ACTIVE_STATUSES)))


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns aware UTC (SQLite drops tzinfo)."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class AssignmentRow(Base):
    __tablename__ = "assignments"

    id = Column(String(36), primary_key=True)
    student_id = Column(String(128), nullable=False, index=True)
    instrument_type = Column(String(64), nullable=False)
    instrument_version = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False)
    assigned_at = Column(UTCDateTime(), nullable=False)
    assigned_by = Column(String(128), nullable=False)
    question_order = Column(JSON, nullable=False)
    attempt_number = Column(Integer, nullable=False, default=1)
    cohort_id = Column(String(128), nullable=True)
    started_at = Column(UTCDateTime(), nullable=True)
    completed_at = Column(UTCDateTime(), nullable=True)
    revoked_at = Column(UTCDateTime(), nullable=True)
    fast_answer_count = Column(Integer, nullable=False, default=0)
    suspicious_pattern = Column(Boolean, nullable=False, default=False)
    score_id = Column(String(36), nullable=True)
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index(
            "uq_active_assignment",
            "student_id",
            "instrument_type",
            unique=True,
            sqlite_where=_ACTIVE_WHERE,
            postgresql_where=_ACTIVE_WHERE,
        ),
        Index("ix_assignments_cohort", "cohort_id", "instrument_type", "status"),
    )


class AnswerRow(Base):
    __tablename__ = "answers"

    assignment_id = Column(String(36), ForeignKey("assignments.id"), primary_key=True)
    question_index = Column(Integer, primary_key=True)
    value = Column(Integer, nullable=False)
    submitted_at = Column(UTCDateTime(), nullable=False)
    time_spent_ms = Column(Integer, nullable=False)
    revision_count = Column(Integer, nullable=False, default=0)
    flags = Column(JSON, nullable=False)


class ScoreRow(Base):
    __tablename__ = "score_results"

    id = Column(String(36), primary_key=True)
    assignment_id = Column(String(36), ForeignKey("assignments.id"), nullable=False)
    scoring_version = Column(String(16), nullable=False)
    computed_at = Column(UTCDateTime(), nullable=False)
    payload = Column(JSON, nullable=False)

    __table_args__ = (UniqueConstraint("assignment_id", "scoring_version", name="uq_score_version"),)


class CohortMemberRow(Base):
    __tablename__ = "cohort_members"

    cohort_id = Column(String(128), primary_key=True)
    student_id = Column(String(128), primary_key=True)


# ---- row <-> dataclass ----
def _answer_from_row(row: AnswerRow) -> Answer:
    return Answer(
        question_index=row.question_index,
        value=row.value,
        submitted_at=row.submitted_at,
        time_spent_ms=row.time_spent_ms,
        revision_count=row.revision_count,
        flags=list(row.flags or []),
    )


def _assignment_from_row(row: AssignmentRow, answers: Iterable[AnswerRow] = ()) -> Assignment:
    return Assignment(
        id=row.id,
        student_id=row.student_id,
        instrument_type=row.instrument_type,
        instrument_version=row.instrument_version,
        status=AssignmentStatus(row.status),
        assigned_at=row.assigned_at,
        assigned_by=row.assigned_by,
        question_order=[int(i) for i in row.question_order],
        attempt_number=row.attempt_number,
        cohort_id=row.cohort_id,
        started_at=row.started_at,
        completed_at=row.completed_at,
        revoked_at=row.revoked_at,
        answers={a.question_index: _answer_from_row(a) for a in answers},
        fast_answer_count=row.fast_answer_count,
        suspicious_pattern=bool(row.suspicious_pattern),
        score_id=row.score_id,
        version=row.version,
    )


def _mutable_fields(a: Assignment) -> Dict[str, Any]:
    return {
        "status": a.status.value,
        "started_at": a.started_at,
        "completed_at": a.completed_at,
        "revoked_at": a.revoked_at,
    }


def _make_engine(url: str) -> Engine:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_engine(url, future=True, pool_pre_ping=True)

    connect_args = {"check_same_thread": False, "timeout": 30}
    if parsed.database in (None, "", ":memory:"):
        return create_engine(url, future=True, connect_args=connect_args, poolclass=StaticPool)
    Path(parsed.database).resolve().parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, future=True, connect_args=connect_args)


class AssignmentStore:
    """All reads and writes the engine needs, one short transaction each."""

    def __init__(self, url: Optional[str] = None, engine: Optional[Engine] = None):
        self.url = url or config.DATABASE_URL
        self.engine = engine or _make_engine(self.url)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False, future=True)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as exc:  # reported through /health
            log.warning("database ping failed: %s", exc)
            return False
        return True

    # ---- assignments ----
    def insert_assignment(self, a: Assignment) -> None:
        row = AssignmentRow(
            id=a.id,
            student_id=a.student_id,
            instrument_type=a.instrument_type,
            instrument_version=a.instrument_version,
            assigned_at=a.assigned_at,
            assigned_by=a.assigned_by,
            question_order=list(a.question_order),
            attempt_number=a.attempt_number,
            cohort_id=a.cohort_id,
            fast_answer_count=a.fast_answer_count,
            suspicious_pattern=a.suspicious_pattern,
            score_id=a.score_id,
            version=a.version,
            **_mutable_fields(a),
        )
        with self.Session() as s:
            s.add(row)
            try:
                s.commit()
            except IntegrityError as exc:
                s.rollback()
                log.info("unique index rejected assignment for student=%s %s", a.student_id, a.instrument_type)
                raise DuplicateActiveAssignment(
                    f"student {a.student_id} already has an active {a.instrument_type} assignment"
                ) from exc

    def get_assignment(self, assignment_id: str) -> Assignment:
        with self.Session() as s:
            row = s.get(AssignmentRow, assignment_id)
            if row is None:
                raise AssignmentNotFound(f"assignment {assignment_id} not found")
            answers = s.scalars(select(AnswerRow).where(AnswerRow.assignment_id == assignment_id)).all()
            return _assignment_from_row(row, answers)

    def _status_of(self, assignment_id: str) -> Optional[str]:
        with self.Session() as s:
            return s.scalar(select(AssignmentRow.status).where(AssignmentRow.id == assignment_id))

    def _conflict(self, a: Assignment) -> StatePrecondition:
        current = self._status_of(a.id)
        if current is None:
            raise AssignmentNotFound(f"assignment {a.id} not found")
        log.info("version conflict on %s (had v%d, stored status %s)", a.id, a.version, current)
        return StatePrecondition(
            f"assignment {a.id} was modified concurrently", currentStatus=current
        )

    def _guarded_update(self, a: Assignment, **values: Any):
        return (
            update(AssignmentRow)
            .where(AssignmentRow.id == a.id, AssignmentRow.version == a.version)
            .values(version=AssignmentRow.version + 1, **values)
            .execution_options(synchronize_session=False)
        )

    def update_assignment(self, a: Assignment) -> None:
        with self.Session.begin() as s:
            updated = s.execute(self._guarded_update(a, **_mutable_fields(a))).rowcount
        if updated != 1:
            raise self._conflict(a)
        a.version += 1

    def complete_assignment(self, a: Assignment, score: ScoreResult) -> str:
        """Mark completed and store the score in one transaction."""

        score_id = str(uuid.uuid4())
        with self.Session.begin() as s:
            updated = s.execute(
                self._guarded_update(a, score_id=score_id, **_mutable_fields(a))
            ).rowcount
            if updated == 1:
                s.add(
                    ScoreRow(
                        id=score_id,
                        assignment_id=a.id,
                        scoring_version=score.scoring_version,
                        computed_at=score.computed_at,
                        payload=score.to_dict(),
                    )
                )
        if updated != 1:
            raise self._conflict(a)
        a.version += 1
        a.score_id = score_id
        return score_id

    def record_answer(
        self, assignment_id: str, answer: Answer, *, allow_backtrack: bool, fast_threshold: int
    ) -> Tuple[int, int, bool]:
        """Insert or revise one answer; returns (revision, fast_answer_count, suspicious).

        The fast-answer count tracks answered positions currently flagged
        fast, so revising a position moves it by at most one either way.
        """

        claim = (
            update(AssignmentRow)
            .where(
                AssignmentRow.id == assignment_id,
                AssignmentRow.status == AssignmentStatus.IN_PROGRESS.value,
            )
            .values(version=AssignmentRow.version + 1)
            .execution_options(synchronize_session=False)
        )
        is_fast = config.FLAG_FAST_ANSWER in answer.flags
        with self.Session.begin() as s:
            updated = s.execute(claim).rowcount
            if updated == 1:
                existing = s.get(AnswerRow, (assignment_id, answer.question_index))
                if existing is None:
                    revision = 0
                    delta = 1 if is_fast else 0
                    s.add(
                        AnswerRow(
                            assignment_id=assignment_id,
                            question_index=answer.question_index,
                            value=answer.value,
                            submitted_at=answer.submitted_at,
                            time_spent_ms=answer.time_spent_ms,
                            revision_count=0,
                            flags=list(answer.flags),
                        )
                    )
                elif not allow_backtrack:
                    raise AnswerAlreadyRecorded(f"question {answer.question_index} already answered")
                else:
                    was_fast = config.FLAG_FAST_ANSWER in (existing.flags or [])
                    delta = int(is_fast) - int(was_fast)
                    existing.value = answer.value
                    existing.submitted_at = answer.submitted_at
                    existing.time_spent_ms = answer.time_spent_ms
                    existing.flags = list(answer.flags)
                    existing.revision_count = existing.revision_count + 1
                    revision = existing.revision_count
                if delta:
                    new_count = AssignmentRow.fast_answer_count + delta
                    s.execute(
                        update(AssignmentRow)
                        .where(AssignmentRow.id == assignment_id)
                        .values(
                            fast_answer_count=new_count,
                            suspicious_pattern=case(
                                (new_count >= fast_threshold, True), else_=AssignmentRow.suspicious_pattern
                            ),
                        )
                        .execution_options(synchronize_session=False)
                    )
                s.flush()
                count, suspicious = s.execute(
                    select(AssignmentRow.fast_answer_count, AssignmentRow.suspicious_pattern).where(
                        AssignmentRow.id == assignment_id
                    )
                ).one()

        if updated != 1:
            current = self._status_of(assignment_id)
            if current is None:
                raise AssignmentNotFound(f"assignment {assignment_id} not found")
            raise InvalidState(f"assignment is {current}, answers need in_progress")
        answer.revision_count = revision
        return revision, int(count), bool(suspicious)

    def attempt_history(self, student_id: str, instrument_type: str) -> List[Assignment]:
        with self.Session() as s:
            rows = s.scalars(
                select(AssignmentRow)
                .where(AssignmentRow.student_id == student_id, AssignmentRow.instrument_type == instrument_type)
                .order_by(AssignmentRow.assigned_at)
            ).all()
            return [_assignment_from_row(r) for r in rows]

    def _with_answers(self, s, rows: List[AssignmentRow]) -> List[Assignment]:
        if not rows:
            return []
        by_id: Dict[str, List[AnswerRow]] = {r.id: [] for r in rows}
        for ans in s.scalars(select(AnswerRow).where(AnswerRow.assignment_id.in_(list(by_id)))):
            by_id[ans.assignment_id].append(ans)
        return [_assignment_from_row(r, by_id[r.id]) for r in rows]

    def list_for_student(self, student_id: str) -> List[Assignment]:
        with self.Session() as s:
            rows = s.scalars(
                select(AssignmentRow)
                .where(AssignmentRow.student_id == student_id)
                .order_by(AssignmentRow.assigned_at.desc())
            ).all()
            return self._with_answers(s, list(rows))

    def list_for_cohort(self, cohort_id: str, instrument_type: Optional[str] = None) -> List[Assignment]:
        stmt = select(AssignmentRow).where(AssignmentRow.cohort_id == cohort_id)
        if instrument_type:
            stmt = stmt.where(AssignmentRow.instrument_type == instrument_type)
        with self.Session() as s:
            rows = s.scalars(stmt.order_by(AssignmentRow.assigned_at, AssignmentRow.student_id)).all()
            return self._with_answers(s, list(rows))

    # ---- rosters ----
    def set_roster(self, cohort_id: str, student_ids: Iterable[str]) -> List[str]:
        members = sorted({str(sid) for sid in student_ids if str(sid).strip()})
        with self.Session.begin() as s:
            s.execute(delete(CohortMemberRow).where(CohortMemberRow.cohort_id == cohort_id))
            s.add_all(CohortMemberRow(cohort_id=cohort_id, student_id=sid) for sid in members)
        log.info("roster %s set: %d students", cohort_id, len(members))
        return members

    def get_roster(self, cohort_id: str) -> List[str]:
        with self.Session() as s:
            return list(
                s.scalars(
                    select(CohortMemberRow.student_id)
                    .where(CohortMemberRow.cohort_id == cohort_id)
                    .order_by(CohortMemberRow.student_id)
                )
            )

    # ---- scores ----
    def get_score(self, score_id: str) -> ScoreResult:
        with self.Session() as s:
            row = s.get(ScoreRow, score_id)
            if row is None:
                raise AssignmentNotFound(f"score {score_id} not found")
            return ScoreResult.from_dict(row.payload)

    def _completed_filter(self, stmt, cohort_id: str, instrument_type: str,
                          since: Optional[datetime], until: Optional[datetime]):
        stmt = stmt.where(
            AssignmentRow.cohort_id == cohort_id,
            AssignmentRow.instrument_type == instrument_type,
            AssignmentRow.status == AssignmentStatus.COMPLETED.value,
        )
        if since is not None:
            stmt = stmt.where(AssignmentRow.completed_at >= since)
        if until is not None:
            stmt = stmt.where(AssignmentRow.completed_at <= until)
        return stmt

    def count_completed(
        self, cohort_id: str, instrument_type: str,
        since: Optional[datetime] = None, until: Optional[datetime] = None,
    ) -> int:
        stmt = self._completed_filter(
            select(func.count()).select_from(AssignmentRow), cohort_id, instrument_type, since, until
        )
        with self.Session() as s:
            return int(s.scalar(stmt) or 0)

    def completed_scores(
        self, cohort_id: str, instrument_type: str,
        since: Optional[datetime] = None, until: Optional[datetime] = None,
    ) -> List[ScoreResult]:
        """Score payloads of completed assignments, read in one statement."""

        stmt = self._completed_filter(
            select(ScoreRow.payload).join(AssignmentRow, AssignmentRow.score_id == ScoreRow.id),
            cohort_id, instrument_type, since, until,
        ).order_by(AssignmentRow.completed_at, AssignmentRow.student_id)
        with self.Session() as s:
            return [ScoreResult.from_dict(p) for p in s.scalars(stmt)]


__all__ = ["AssignmentStore", "Base", "UTCDateTime"]
