"""Error taxonomy for the assessment engine.

Every failure the engine surfaces carries a stable ``code`` (used verbatim in
API error bodies) and the HTTP ``status`` it maps to. Data-quality signals such
as fast answers are not errors and never appear here.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional


class EngineError(Exception):
    code: str = "EngineError"
    status: int = 500

    def __init__(self, detail: str = "", **extra: Any) -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "detail": self.detail}
        body.update(self.extra)
        return body


# ---- precondition violations ----
class PreconditionError(EngineError):
    status = 409


class DuplicateActiveAssignment(PreconditionError):
    code = "DuplicateActiveAssignment"


class CooldownActive(PreconditionError):
    code = "CooldownActive"
    status = 429

    def __init__(self, detail: str = "", retry_after_seconds: int = 0) -> None:
        super().__init__(detail, retryAfterSeconds=int(retry_after_seconds))
        self.retry_after_seconds = int(retry_after_seconds)


class InvalidState(PreconditionError):
    code = "InvalidState"


class AlreadyTerminal(PreconditionError):
    code = "AlreadyTerminal"


class StatePrecondition(PreconditionError):
    code = "StatePrecondition"


class AnswerAlreadyRecorded(PreconditionError):
    code = "AnswerAlreadyRecorded"


# ---- validation errors ----
class ValidationError(EngineError):
    status = 400


class InvalidValue(ValidationError):
    code = "InvalidValue"


class InvalidQuestionIndex(ValidationError):
    code = "InvalidQuestionIndex"


class IncompleteAnswers(ValidationError):
    code = "IncompleteAnswers"
    status = 422

    def __init__(self, detail: str = "", missing: Optional[List[int]] = None) -> None:
        missing = list(missing or [])
        super().__init__(detail, missing=missing)
        self.missing = missing


# ---- resource state ----
class ResourceStateError(EngineError):
    status = 422


class InsufficientData(ResourceStateError):
    code = "InsufficientData"


class NotFound(EngineError):
    status = 404


class AssignmentNotFound(NotFound):
    code = "AssignmentNotFound"


class UnknownInstrument(NotFound):
    code = "UnknownInstrument"


class CohortNotFound(NotFound):
    code = "CohortNotFound"


class ExportDisabled(NotFound):
    code = "ExportDisabled"


class CatalogError(EngineError):
    code = "CatalogError"


__all__ = [
    "EngineError",
    "PreconditionError",
    "DuplicateActiveAssignment",
    "CooldownActive",
    "InvalidState",
    "AlreadyTerminal",
    "StatePrecondition",
    "AnswerAlreadyRecorded",
    "ValidationError",
    "InvalidValue",
    "InvalidQuestionIndex",
    "IncompleteAnswers",
    "ResourceStateError",
    "InsufficientData",
    "NotFound",
    "AssignmentNotFound",
    "UnknownInstrument",
    "CohortNotFound",
    "ExportDisabled",
    "CatalogError",
]
