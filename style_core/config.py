from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


SCORING_VERSION: str = "1.0.0"

SCALE_MIDPOINT: float = 50.0
NORM_MIN: float = 0.0
NORM_MAX: float = 100.0
SCORE_DECIMALS: int = 2

# low = [0, 40), medium = [40, 70], high = (70, 100]
BUCKET_LOW_MAX: float = 40.0
BUCKET_MEDIUM_MAX: float = 70.0

DIVERSITY_SCALE: float = 10.0
MIN_COHORT_RESULTS: int = 2

LEVEL_THRESHOLDS: tuple[tuple[float, str], ...] = (
    (80.0, "high"),
    (65.0, "medium_high"),
    (55.0, "medium"),
    (45.0, "medium_low"),
    (20.0, "low"),
)
LEVEL_FLOOR: str = "very_low"

STRAIGHT_LINE_RATIO: float = 0.7
TIME_CONSISTENCY_RATIO: float = 0.7
FLAT_PROFILE_STD: float = 5.0
PATTERN_MIN_ANSWERS: int = 5
FAST_RATIO_LIMIT: float = 0.2
FAST_RATIO_CAP: int = 5
TIME_OUTLIER_FACTOR: float = 3.0

FLAG_FAST_ANSWER: str = "fast-answer"
FLAG_TIME_LIMIT: str = "time-limit-exceeded"

COOLDOWN_COUNTS_REVOKED: bool = False
AGGREGATE_CACHE_ENABLED: bool = True
EXPORT_ENABLED: bool = True

DATABASE_URL: str = "sqlite:///./data/assessments.db"
LOG_LEVEL: str = "INFO"
DEFAULT_ASSIGNER: str = "system"
CORS_ORIGINS: str = "http://localhost:3000"

# // env overrides for staging/ops; defaults remain conservative.
COOLDOWN_COUNTS_REVOKED = _env_bool("COOLDOWN_COUNTS_REVOKED", COOLDOWN_COUNTS_REVOKED)
AGGREGATE_CACHE_ENABLED = _env_bool("AGGREGATE_CACHE_ENABLED", AGGREGATE_CACHE_ENABLED)
EXPORT_ENABLED = _env_bool("EXPORT_ENABLED", EXPORT_ENABLED)
MIN_COHORT_RESULTS = max(2, _env_int("MIN_COHORT_RESULTS", MIN_COHORT_RESULTS))
STRAIGHT_LINE_RATIO = _env_float("STRAIGHT_LINE_RATIO", STRAIGHT_LINE_RATIO)
DATABASE_URL = _env_str("DATABASE_URL", DATABASE_URL)
LOG_LEVEL = _env_str("LOG_LEVEL", LOG_LEVEL).upper()
CORS_ORIGINS = _env_str("CORS_ORIGINS", CORS_ORIGINS)
