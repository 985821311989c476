from __future__ import annotations
import json, importlib.resources as ir
import logging
import re
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import CatalogError, UnknownInstrument
from .types import InstrumentConfig, InstrumentDefinition, Polarity, Question

log = logging.getLogger(__name__)

_SEMVER_RX = re.compile(r"^\d+\.\d+\.\d+$")
_MAX_WEIGHT = 10.0


def _semver_key(version: str) -> Tuple[int, ...]:
    return tuple(int(p) for p in version.split("."))


def validate_config(cfg: InstrumentConfig, n_questions: int) -> None:
    """Reject configurations outside their typed bounds."""

    problems: List[str] = []
    for name in ("min_questions", "time_limit_minutes", "min_time_per_question_ms",
                 "max_time_per_question_ms", "max_attempts", "fast_answer_threshold"):
        val = getattr(cfg, name)
        if not isinstance(val, int) or isinstance(val, bool) or val <= 0:
            problems.append(f"{name} must be a positive integer (got {val!r})")
    if not isinstance(cfg.cooldown_hours, int) or cfg.cooldown_hours < 0:
        problems.append(f"cooldown_hours must be >= 0 (got {cfg.cooldown_hours!r})")
    if cfg.min_time_per_question_ms >= cfg.max_time_per_question_ms:
        problems.append("min_time_per_question_ms must be below max_time_per_question_ms")
    if cfg.scale_min >= cfg.scale_max:
        problems.append("scale_min must be below scale_max")
    if isinstance(cfg.min_questions, int) and cfg.min_questions > n_questions:
        problems.append(f"min_questions={cfg.min_questions} exceeds question count {n_questions}")
    if problems:
        raise CatalogError("; ".join(problems))


def validate_definition(defn: InstrumentDefinition) -> None:
    if not defn.type:
        raise CatalogError("instrument type is required")
    if not _SEMVER_RX.match(defn.version or ""):
        raise CatalogError(f"{defn.version!r} is not a valid version (use x.y.z)")
    if not defn.questions:
        raise CatalogError(f"{defn.type} {defn.version} has no questions")
    seen: set[str] = set()
    for q in defn.questions:
        if q.id in seen:
            raise CatalogError(f"duplicate question id {q.id}")
        seen.add(q.id)
        if not (0.0 < float(q.weight) <= _MAX_WEIGHT):
            raise CatalogError(f"question {q.id}: weight {q.weight} outside (0, {_MAX_WEIGHT:g}]")
        if q.category not in defn.categories:
            raise CatalogError(f"question {q.id}: category {q.category!r} is not declared")
    validate_config(defn.config, len(defn.questions))


def definition_from_dict(raw: Dict[str, object]) -> InstrumentDefinition:
    try:
        questions = tuple(
            Question(
                id=str(q["id"]),
                text=str(q.get("text", "")),
                category=str(q["category"]),
                weight=float(q.get("weight", 1.0)),
                polarity=Polarity.parse(q.get("polarity", "positive")),
                required=bool(q.get("required", True)),
            )
            for q in raw["questions"]  # type: ignore[union-attr]
        )
        declared = raw.get("categories") or []
        categories: List[str] = [str(c) for c in declared]  # type: ignore[union-attr]
        for q in questions:
            if not declared and q.category not in categories:
                categories.append(q.category)
        cfg_raw = dict(raw.get("config") or {})  # type: ignore[arg-type]
        config = InstrumentConfig(**cfg_raw)
    except (KeyError, TypeError, ValueError) as exc:
        raise CatalogError(f"malformed instrument definition: {exc}") from exc
    defn = InstrumentDefinition(
        type=str(raw.get("type", "")),
        version=str(raw.get("version", "")),
        name=str(raw.get("name") or raw.get("type", "")),
        categories=tuple(categories),
        questions=questions,
        config=config,
    )
    validate_definition(defn)
    return defn


def load_definitions() -> List[InstrumentDefinition]:
    data = ir.files("style_core").joinpath("data/instruments.json").read_text(encoding="utf-8")
    raw = json.loads(data)
    return [definition_from_dict(r) for r in raw]


class InstrumentCatalog:
    """Read-only registry of instrument versions."""

    def __init__(self, definitions: Iterable[InstrumentDefinition]):
        self._by_type: Dict[str, Dict[str, InstrumentDefinition]] = {}
        for d in definitions:
            versions = self._by_type.setdefault(d.type, {})
            if d.version in versions:
                raise CatalogError(f"{d.type} {d.version} defined twice")
            versions[d.version] = d
        log.debug("catalog loaded: %s", {t: sorted(v) for t, v in self._by_type.items()})

    @classmethod
    def bundled(cls) -> "InstrumentCatalog":
        return cls(load_definitions())

    def types(self) -> List[str]:
        return sorted(self._by_type)

    def versions(self, instrument_type: str) -> List[str]:
        return sorted(self._by_type.get(instrument_type, {}), key=_semver_key)

    def get(self, instrument_type: str, version: Optional[str] = None) -> InstrumentDefinition:
        versions = self._by_type.get(instrument_type)
        if not versions:
            raise UnknownInstrument(f"unknown instrument type {instrument_type!r}")
        if version is None:
            return versions[max(versions, key=_semver_key)]
        defn = versions.get(version)
        if defn is None:
            raise UnknownInstrument(f"{instrument_type} has no version {version!r}")
        return defn
