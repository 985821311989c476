from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple


class Polarity(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"

    @classmethod
    def parse(cls, raw: object) -> "Polarity":
        if isinstance(raw, Polarity):
            return raw
        txt = str(raw or "").strip().lower()
        if txt in ("+", "pos", "positive"):
            return cls.POSITIVE
        if txt in ("-", "neg", "negative"):
            return cls.NEGATIVE
        raise ValueError(f"unknown polarity {raw!r}")


class AssignmentStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REVOKED = "revoked"

    @property
    def is_active(self) -> bool:
        return self in (AssignmentStatus.PENDING, AssignmentStatus.IN_PROGRESS)

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


ACTIVE_STATUSES: Tuple[str, ...] = (AssignmentStatus.PENDING.value, AssignmentStatus.IN_PROGRESS.value)


@dataclass(frozen=True)
class Question:
    id: str; text: str; category: str
    weight: float = 1.0
    polarity: Polarity = Polarity.POSITIVE
    required: bool = True


@dataclass(frozen=True)
class InstrumentConfig:
    min_questions: int
    time_limit_minutes: int
    min_time_per_question_ms: int
    max_time_per_question_ms: int
    max_attempts: int
    cooldown_hours: int
    scale_min: int = 1
    scale_max: int = 5
    randomize: bool = True
    allow_backtrack: bool = False
    fast_answer_threshold: int = 5


@dataclass(frozen=True)
class InstrumentDefinition:
    type: str
    version: str
    name: str
    categories: Tuple[str, ...]
    questions: Tuple[Question, ...]
    config: InstrumentConfig


@dataclass
class Answer:
    question_index: int
    value: int
    submitted_at: datetime
    time_spent_ms: int
    revision_count: int = 0
    flags: List[str] = field(default_factory=list)


@dataclass
class Assignment:
    id: str
    student_id: str
    instrument_type: str
    instrument_version: str
    status: AssignmentStatus
    assigned_at: datetime
    assigned_by: str
    question_order: List[int]
    attempt_number: int
    cohort_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    answers: Dict[int, Answer] = field(default_factory=dict)
    fast_answer_count: int = 0
    suspicious_pattern: bool = False
    score_id: Optional[str] = None
    version: int = 0

    @property
    def terminal_at(self) -> Optional[datetime]:
        return self.completed_at or self.revoked_at

    @property
    def flags(self) -> List[str]:
        out: List[str] = []
        for ans in self.ordered_answers():
            for flag in ans.flags:
                if flag not in out:
                    out.append(flag)
        return out

    def ordered_answers(self) -> List[Answer]:
        return [self.answers[k] for k in sorted(self.answers)]


@dataclass
class ScoreResult:
    assignment_id: str
    student_id: str
    instrument_type: str
    instrument_version: str
    per_category_score: Dict[str, float]
    dominant_category: Optional[str]
    levels: Dict[str, str]
    computed_at: datetime
    scoring_version: str
    pattern: Dict[str, object] = field(default_factory=dict)
    data_quality: List[str] = field(default_factory=list)

    @property
    def flagged(self) -> bool:
        return "suspicious-pattern" in self.data_quality or "straight-lining" in self.data_quality

    def to_dict(self) -> Dict[str, object]:
        return {
            "assignment_id": self.assignment_id,
            "student_id": self.student_id,
            "instrument_type": self.instrument_type,
            "instrument_version": self.instrument_version,
            "per_category_score": dict(self.per_category_score),
            "dominant_category": self.dominant_category,
            "levels": dict(self.levels),
            "computed_at": self.computed_at.isoformat(),
            "scoring_version": self.scoring_version,
            "pattern": dict(self.pattern),
            "data_quality": list(self.data_quality),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, object]) -> "ScoreResult":
        return cls(
            assignment_id=str(raw["assignment_id"]),
            student_id=str(raw["student_id"]),
            instrument_type=str(raw["instrument_type"]),
            instrument_version=str(raw["instrument_version"]),
            per_category_score={str(k): float(v) for k, v in dict(raw.get("per_category_score") or {}).items()},
            dominant_category=raw.get("dominant_category"),  # type: ignore[arg-type]
            levels={str(k): str(v) for k, v in dict(raw.get("levels") or {}).items()},
            computed_at=datetime.fromisoformat(str(raw["computed_at"])),
            scoring_version=str(raw["scoring_version"]),
            pattern=dict(raw.get("pattern") or {}),
            data_quality=[str(x) for x in (raw.get("data_quality") or [])],
        )


@dataclass
class CategoryStats:
    mean: float
    std_dev: float
    distribution: Dict[str, int]


@dataclass
class AggregateProfile:
    cohort_id: Optional[str]
    instrument_type: str
    total_students: int
    total_completed_tests: int
    per_category: Dict[str, CategoryStats]
    dominant_style_counts: Dict[str, int]
    most_common_style: Optional[str]
    diversity_index: float
    flagged_results: int = 0
    cache_key: str = ""


@dataclass
class SubmitOutcome:
    accepted: bool
    flags: List[str] = field(default_factory=list)
    revision: int = 0
    suspicious_pattern: bool = False
