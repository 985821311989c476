"""Helpers to export cohort score results in JSON/CSV formats."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Sequence
import csv
import io

from .types import ScoreResult

_BASE_FIELDS: tuple[str, ...] = (
    "assignment_id",
    "student_id",
    "instrument_type",
    "instrument_version",
    "dominant_category",
    "computed_at",
    "scoring_version",
    "flagged",
    "data_quality",
)


def _row(res: ScoreResult, categories: Sequence[str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "assignment_id": res.assignment_id,
        "student_id": res.student_id,
        "instrument_type": res.instrument_type,
        "instrument_version": res.instrument_version,
        "dominant_category": res.dominant_category or "",
        "computed_at": res.computed_at.isoformat(),
        "scoring_version": res.scoring_version,
        "flagged": int(res.flagged),
        "data_quality": ";".join(res.data_quality),
    }
    for cat in categories:
        score = res.per_category_score.get(cat)
        out[cat] = "" if score is None else f"{score:.2f}"
    return out


def to_json(results: Iterable[ScoreResult]) -> Dict[str, Any]:
    """Return a JSON-safe payload, one entry per completed result."""

    return {"results": [r.to_dict() for r in results]}


def to_csv(results: Iterable[ScoreResult], categories: Sequence[str]) -> str:
    """Render results as CSV: fixed columns, then one column per category in ``categories`` order."""

    rows: List[Dict[str, Any]] = [_row(r, categories) for r in results]
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=list(_BASE_FIELDS) + list(categories))
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buf.getvalue()
