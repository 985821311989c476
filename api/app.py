from __future__ import annotations
from datetime import datetime
from fastapi import FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
import logging, typing as t

from style_core import config
from style_core.aggregate import CohortAggregator
from style_core.answers import AnswerCollector
from style_core.catalog import InstrumentCatalog
from style_core.errors import CooldownActive, EngineError, ExportDisabled
from style_core.export import to_csv as export_to_csv, to_json as export_to_json
from style_core.lifecycle import AssignmentManager, Clock
from style_core.types import AggregateProfile, Assignment, InstrumentDefinition, Question, ScoreResult
from .storage import AssignmentStore

logging.basicConfig(level=config.LOG_LEVEL, format="[%(levelname)s] %(name)s: %(message)s")
log = logging.getLogger(__name__)

STORE: AssignmentStore
CATALOG: InstrumentCatalog
MANAGER: AssignmentManager
ANSWERS: AnswerCollector
AGGREGATOR: CohortAggregator


def init_services(
    store: AssignmentStore | None = None,
    catalog: InstrumentCatalog | None = None,
    clock: Clock | None = None,
) -> None:
    """(Re)build the module-level services; tests call this with a temp store or frozen clock."""

    global STORE, CATALOG, MANAGER, ANSWERS, AGGREGATOR
    STORE = store or AssignmentStore()
    CATALOG = catalog or InstrumentCatalog.bundled()
    MANAGER = AssignmentManager(STORE, CATALOG, clock=clock)
    ANSWERS = AnswerCollector(STORE, CATALOG, clock=clock)
    AGGREGATOR = CohortAggregator(STORE, CATALOG)
    log.info("services ready: db=%s instruments=%s", STORE.url, CATALOG.types())


init_services()

app = FastAPI(title="Cognitive Style Assessment API")

ALLOWED_ORIGINS = [o.strip() for o in config.CORS_ORIGINS.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    headers = None
    if isinstance(exc, CooldownActive):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    if exc.status >= 500:
        log.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status, content=exc.to_dict(), headers=headers)


# ---- Schemas ----
class _Req(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AssignReq(_Req):
    student_id: str = Field(alias="studentId", min_length=1)
    instrument_type: str = Field(alias="instrumentType", min_length=1)
    assigned_by: str | None = Field(None, alias="assignedBy")
    cohort_id: str | None = Field(None, alias="cohortId")
    version: str | None = None


class TransitionReq(_Req):
    expected_status: str | None = Field(None, alias="expectedStatus")


class AnswerReq(_Req):
    # range and type checks belong to the engine so they map to InvalidValue / InvalidQuestionIndex
    question_index: t.Any = Field(alias="questionIndex")
    value: t.Any
    time_spent_ms: t.Any = Field(alias="timeSpentMs")


class RosterReq(_Req):
    student_ids: list[str] = Field(alias="studentIds")


class CohortAssignReq(_Req):
    instrument_type: str = Field(alias="instrumentType", min_length=1)
    assigned_by: str | None = Field(None, alias="assignedBy")


# ---- Helpers ----
def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


def _serialize_assignment(a: Assignment) -> dict[str, t.Any]:
    return {
        "id": a.id,
        "studentId": a.student_id,
        "instrumentType": a.instrument_type,
        "instrumentVersion": a.instrument_version,
        "status": a.status.value,
        "assignedAt": _iso(a.assigned_at),
        "assignedBy": a.assigned_by,
        "cohortId": a.cohort_id,
        "attemptNumber": a.attempt_number,
        "startedAt": _iso(a.started_at),
        "completedAt": _iso(a.completed_at),
        "revokedAt": _iso(a.revoked_at),
        "questionCount": len(a.question_order),
        "answeredCount": len(a.answers),
        "fastAnswerCount": a.fast_answer_count,
        "suspiciousPattern": a.suspicious_pattern,
        "scoreId": a.score_id,
        "version": a.version,
    }


def _serialize_score(s: ScoreResult) -> dict[str, t.Any]:
    return {
        "assignmentId": s.assignment_id,
        "studentId": s.student_id,
        "instrumentType": s.instrument_type,
        "instrumentVersion": s.instrument_version,
        "perCategoryScore": dict(s.per_category_score),
        "dominantCategory": s.dominant_category,
        "levels": dict(s.levels),
        "computedAt": _iso(s.computed_at),
        "scoringVersion": s.scoring_version,
        "pattern": s.pattern,
        "dataQuality": list(s.data_quality),
        "flagged": s.flagged,
    }


def _serialize_profile(p: AggregateProfile) -> dict[str, t.Any]:
    return {
        "cohortId": p.cohort_id,
        "instrumentType": p.instrument_type,
        "totalStudents": p.total_students,
        "totalCompletedTests": p.total_completed_tests,
        "perCategory": {
            cat: {"mean": st.mean, "stdDev": st.std_dev, "distribution": dict(st.distribution)}
            for cat, st in p.per_category.items()
        },
        "dominantStyleCounts": dict(p.dominant_style_counts),
        "mostCommonStyle": p.most_common_style,
        "diversityIndex": p.diversity_index,
        "flaggedResults": p.flagged_results,
        "cacheKey": p.cache_key,
    }


def _serialize_question(pos: int, q: Question) -> dict[str, t.Any]:
    # weight, polarity and category stay server-side
    return {"index": pos, "id": q.id, "text": q.text, "required": q.required}


def _serialize_instrument(d: InstrumentDefinition, versions: list[str]) -> dict[str, t.Any]:
    c = d.config
    return {
        "type": d.type,
        "version": d.version,
        "versions": versions,
        "name": d.name,
        "categories": list(d.categories),
        "questionCount": len(d.questions),
        "config": {
            "minQuestions": c.min_questions,
            "timeLimitMinutes": c.time_limit_minutes,
            "minTimePerQuestionMs": c.min_time_per_question_ms,
            "maxTimePerQuestionMs": c.max_time_per_question_ms,
            "maxAttempts": c.max_attempts,
            "cooldownHours": c.cooldown_hours,
            "scaleMin": c.scale_min,
            "scaleMax": c.scale_max,
            "randomize": c.randomize,
            "allowBacktrack": c.allow_backtrack,
            "fastAnswerThreshold": c.fast_answer_threshold,
        },
    }


# ---- Health ----
@app.get("/")
def root():
    return {"status": "ok", "service": "style-assessment-api"}


@app.get("/health")
def health():
    db_ok = STORE.ping()
    return {"status": "ok" if db_ok else "degraded", "database": "ok" if db_ok else "unavailable"}


# ---- Catalog ----
@app.get("/instruments")
def list_instruments():
    return {
        "instruments": [
            _serialize_instrument(CATALOG.get(typ), CATALOG.versions(typ)) for typ in CATALOG.types()
        ]
    }


@app.get("/instruments/{instrument_type}")
def get_instrument(instrument_type: str, version: str | None = None):
    defn = CATALOG.get(instrument_type, version)
    return {"instrument": _serialize_instrument(defn, CATALOG.versions(defn.type))}


# ---- Assignment lifecycle ----
@app.post("/assignments", status_code=201)
def create_assignment(req: AssignReq):
    a = MANAGER.assign(
        req.student_id,
        req.instrument_type,
        assigned_by=req.assigned_by or config.DEFAULT_ASSIGNER,
        cohort_id=req.cohort_id,
        version=req.version,
    )
    return {"assignment": _serialize_assignment(a)}


@app.get("/assignments/{assignment_id}")
def get_assignment(assignment_id: str):
    return {"assignment": _serialize_assignment(MANAGER.get(assignment_id))}


@app.post("/assignments/{assignment_id}/start")
def start_assignment(assignment_id: str, req: TransitionReq | None = None):
    a = MANAGER.start(assignment_id, expected_status=req.expected_status if req else None)
    return {"assignment": _serialize_assignment(a)}


@app.post("/assignments/{assignment_id}/answers")
def submit_answer(assignment_id: str, req: AnswerReq):
    out = ANSWERS.submit(assignment_id, req.question_index, req.value, req.time_spent_ms)
    return {
        "accepted": out.accepted,
        "flags": out.flags,
        "revision": out.revision,
        "suspiciousPattern": out.suspicious_pattern,
    }


@app.post("/assignments/{assignment_id}/complete")
def complete_assignment(assignment_id: str, req: TransitionReq | None = None):
    a, score = MANAGER.complete(assignment_id, expected_status=req.expected_status if req else None)
    return {"assignment": _serialize_assignment(a), "score": _serialize_score(score)}


@app.post("/assignments/{assignment_id}/revoke")
def revoke_assignment(assignment_id: str, req: TransitionReq | None = None):
    a = MANAGER.revoke(assignment_id, expected_status=req.expected_status if req else None)
    return {"assignment": _serialize_assignment(a)}


@app.get("/assignments/{assignment_id}/score")
def get_score(assignment_id: str, rescore: bool = Query(False, description="Recompute from stored answers")):
    return {"score": _serialize_score(MANAGER.score_for(assignment_id, rescore=rescore))}


@app.get("/assignments/{assignment_id}/questions")
def get_questions(assignment_id: str):
    a, questions = MANAGER.questions_for(assignment_id)
    return {
        "assignmentId": a.id,
        "questions": [_serialize_question(pos, q) for pos, q in enumerate(questions)],
    }


@app.get("/students/{student_id}/assignments")
def list_student_assignments(student_id: str):
    return {"assignments": [_serialize_assignment(a) for a in MANAGER.list_for_student(student_id)]}


# ---- Cohorts ----
@app.put("/cohorts/{cohort_id}/roster")
def put_roster(cohort_id: str, req: RosterReq):
    members = STORE.set_roster(cohort_id, req.student_ids)
    return {"cohortId": cohort_id, "studentIds": members}


@app.post("/cohorts/{cohort_id}/assignments")
def assign_cohort(cohort_id: str, req: CohortAssignReq):
    created, skipped = MANAGER.assign_cohort(
        cohort_id, req.instrument_type, assigned_by=req.assigned_by or config.DEFAULT_ASSIGNER
    )
    return {"created": [_serialize_assignment(a) for a in created], "skipped": skipped}


@app.get("/cohorts/{cohort_id}/assignments")
def list_cohort_assignments(cohort_id: str, instrument_type: str | None = Query(None, alias="instrumentType")):
    return {"assignments": [_serialize_assignment(a) for a in MANAGER.list_for_cohort(cohort_id, instrument_type)]}


@app.get("/cohorts/{cohort_id}/aggregate")
def cohort_aggregate(
    cohort_id: str,
    instrument_type: str = Query(..., alias="instrumentType"),
    since: datetime | None = None,
    until: datetime | None = None,
):
    prof = AGGREGATOR.profile(cohort_id, instrument_type, since=since, until=until)
    return {"aggregateProfile": _serialize_profile(prof)}


@app.get("/cohorts/{cohort_id}/results.json")
def cohort_results_json(cohort_id: str, instrument_type: str = Query(..., alias="instrumentType")):
    if not config.EXPORT_ENABLED:
        raise ExportDisabled("result export disabled")
    defn = CATALOG.get(instrument_type)
    results = STORE.completed_scores(cohort_id, defn.type)
    return {"cohortId": cohort_id, **export_to_json(results)}


@app.get("/cohorts/{cohort_id}/results.csv")
def cohort_results_csv(cohort_id: str, instrument_type: str = Query(..., alias="instrumentType")):
    if not config.EXPORT_ENABLED:
        raise ExportDisabled("result export disabled")
    defn = CATALOG.get(instrument_type)
    body = export_to_csv(STORE.completed_scores(cohort_id, defn.type), defn.categories)
    filename = f"{cohort_id}_{defn.type}_results.csv"
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename=\"{filename}\""},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000, log_level=config.LOG_LEVEL.lower())
