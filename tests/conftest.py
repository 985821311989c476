from __future__ import annotations

import os

# keep module-level app/services off the default on-disk database
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone

import pytest

from api.storage import AssignmentStore
from style_core.catalog import InstrumentCatalog
from style_core.types import InstrumentConfig, InstrumentDefinition, Polarity, Question

T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


def build_synthetic_instrument(
    *,
    instrument_type: str = "SYN",
    version: str = "1.0.0",
    categories: tuple[str, ...] = ("Alpha", "Beta"),
    per_category: int = 2,
    **config_overrides,
) -> InstrumentDefinition:
    """Small deterministic instrument for tests.

    Per category: question 1 is positive with weight 1, question 2 is
    reverse-keyed, any further ones are positive with weight 2.
    """

    questions: list[Question] = []
    for cat in categories:
        for i in range(per_category):
            questions.append(
                Question(
                    id=f"{cat.lower()}-{i + 1}",
                    text=f"{cat} statement {i + 1}",
                    category=cat,
                    weight=1.0 if i < 2 else 2.0,
                    polarity=Polarity.NEGATIVE if i == 1 else Polarity.POSITIVE,
                )
            )
    cfg = dict(
        min_questions=len(questions),
        time_limit_minutes=10,
        min_time_per_question_ms=1000,
        max_time_per_question_ms=60000,
        max_attempts=1,
        cooldown_hours=24,
        randomize=False,
        allow_backtrack=False,
        fast_answer_threshold=3,
    )
    cfg.update(config_overrides)
    return InstrumentDefinition(
        type=instrument_type,
        version=version,
        name=f"Synthetic {instrument_type}",
        categories=tuple(categories),
        questions=tuple(questions),
        config=InstrumentConfig(**cfg),
    )


class FrozenClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def synthetic_instrument() -> InstrumentDefinition:
    return build_synthetic_instrument()


@pytest.fixture
def catalog(synthetic_instrument) -> InstrumentCatalog:
    return InstrumentCatalog([synthetic_instrument])


@pytest.fixture
def store(tmp_path) -> AssignmentStore:
    return AssignmentStore(f"sqlite:///{tmp_path / 'assessments.db'}")
