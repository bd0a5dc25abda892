from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------
# Paths
# ---------------------------

PROJECT_ROOT = Path(__file__).resolve().parents[1]

DATA_DIR = PROJECT_ROOT / "data"
MODELS_DIR = PROJECT_ROOT / "models"  # for HF cache if you want to mount it
LOG_DIR = PROJECT_ROOT / "logs"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# ---------------------------
# Pipeline controls
# ---------------------------

CONCURRENCY = int(os.getenv("CONCURRENCY", "2"))
DELAY_PER_CALL_SECONDS = float(os.getenv("DELAY_PER_CALL_SECONDS", "1.5"))  # keeps us clear of 429s
MAX_FETCH_PAGES = int(os.getenv("MAX_FETCH_PAGES", "1000"))
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))
RESPAWN_FAILED_WORKERS = _env_bool("RESPAWN_FAILED_WORKERS", True)

DEFAULT_DURATION_DAYS = 365
MAX_DURATION_DAYS = 3650

STATUS_OK = 200
STATUS_UNREACHABLE = -1


# ---------------------------
# Review source / HTTP hardening
# ---------------------------

REVIEWS_URL = os.getenv(
    "REVIEWS_URL",
    "https://www.glassdoor.com/Reviews/Example-Reviews-E000000.htm",
)

HTTP_CONNECT_TIMEOUT = 5.0
HTTP_READ_TIMEOUT = 15.0
HTTP_MAX_REDIRECTS = 3
HTTP_MAX_BYTES = 5_000_000  # 5 MB cap

HTTP_USER_AGENT = (
    "review-pulse/1.0 (+https://example.com; contact=reviews@placeholder.com)"
)


# ---------------------------
# Sentiment model (pinned)
# ---------------------------

SENTIMENT_MODEL_CANDIDATES: List[str] = [
    "distilbert-base-uncased-finetuned-sst-2-english",
    "cardiffnlp/twitter-roberta-base-sentiment-latest",
]

MAX_INPUT_CHARS = 4_000
NEUTRAL_SCORE = 0.5
SCORE_SCALE = 5.0

HF_ENV_VARS = {
    "HF_HUB_ENABLE_HF_TRANSFER": "1",
    "TRANSFORMERS_CACHE": str(MODELS_DIR),
}


# ---------------------------
# Charts
# ---------------------------

CHART_WIDTH = 250
CHART_MERGED_WIDTH = 750
CHART_HEIGHT = 250
CHART_DPI = 100
WEEKLY_BUCKET_AFTER_DAYS = 90  # longer windows are averaged per week
SERIES_COLORS = {
    "pro_score": "green",
    "con_score": "red",
    "avg_score": "blue",
}
SERIES_TITLES = {
    "pro_score": "Pro Score",
    "con_score": "Con Score",
    "avg_score": "Avg Score",
}


# ---------------------------
# Pydantic models shared around the app
# ---------------------------

class Review(BaseModel):
    """
    One raw review as extracted from a page.

    ``pros`` and ``cons`` are the two free-text fields we score; every other
    field (including unknown extras) is passed through untouched.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    pros: str = ""
    cons: str = ""
    date: Optional[str] = None
    position: str = ""
    location: str = ""
    is_current_employee: bool = False
    tenure: Optional[int] = None
    recommend: bool = False


class ScoredReview(Review):
    """
    A review plus its sentiment scores on a 0..5 scale.
    """

    pro_score: float = Field(ge=0.0, le=SCORE_SCALE)
    con_score: float = Field(ge=0.0, le=SCORE_SCALE)
    avg_score: float = Field(ge=0.0, le=SCORE_SCALE)

    @classmethod
    def from_review(cls, review: Review, pro_score: float, con_score: float) -> "ScoredReview":
        return cls(
            **review.model_dump(),
            pro_score=pro_score,
            con_score=con_score,
            avg_score=(pro_score + con_score) / 2,
        )


class PipelineSettings(BaseModel):
    concurrency: int = Field(default=CONCURRENCY, ge=1)
    delay_seconds: float = Field(default=DELAY_PER_CALL_SECONDS, ge=0.0)
    max_pages: int = Field(default=MAX_FETCH_PAGES, ge=1)
    request_timeout: float = Field(default=REQUEST_TIMEOUT_SECONDS, gt=0.0)
    respawn_failed_workers: bool = RESPAWN_FAILED_WORKERS


class StartRequest(BaseModel):
    duration_in_days: int = Field(default=DEFAULT_DURATION_DAYS, ge=1, le=MAX_DURATION_DAYS)
    concurrency: Optional[int] = Field(default=None, ge=1)


class MergeRequest(BaseModel):
    merge: bool


class DurationRequest(BaseModel):
    duration_in_days: int = Field(ge=1, le=MAX_DURATION_DAYS)


class StatusResponse(BaseModel):
    """
    Response body for GET /status.
    """

    running: bool
    terminated: bool
    fetching_pages: List[int]
    analyzing_pages: List[int]
    failures: dict[int, int]
    result_count: int
    duration_in_days: int
    merge_charts: bool


class HealthResponse(BaseModel):
    """
    Response body for GET /health.
    """

    status: str
