from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# ---------------------------
# Paths
# ---------------------------

PROJECT_ROOT = Path(__file__).resolve().parents[1]

DATA_DIR = PROJECT_ROOT / "data"
COLLECTION_PATH = DATA_DIR / "collection.csv"
GRADED_OUTPUT_PATH = DATA_DIR / "graded_collection.csv"


# ---------------------------
# Remote collaborators
# ---------------------------

# Base URL of the grading services gateway (vision, research, debate, ...).
# Empty string = no remote services configured.
GRADING_SERVICES_URL = os.getenv("GRADING_SERVICES_URL", "").rstrip("/")
GRADING_SERVICES_TOKEN = os.getenv("GRADING_SERVICES_TOKEN", "")

HTTP_CONNECT_TIMEOUT = 3.0
HTTP_READ_TIMEOUT = float(os.getenv("HTTP_READ_TIMEOUT", "30"))

# Hard upper bound for any single collaborator call, network or not.
CALL_TIMEOUT_SECONDS = float(os.getenv("CALL_TIMEOUT_SECONDS", "20"))

HTTP_USER_AGENT = "comicgrade/1.0 (+consensus grading pipeline)"


# ---------------------------
# Image metrics
# ---------------------------

LUMA_WEIGHTS = (0.299, 0.587, 0.114)

EDGE_PERCENTILE = 0.90
BORDER_MIN_FRACTION = 0.20      # box must span >= 20% of width and height
BORDER_ASPECT_MIN = 0.5         # comics are taller than wide
BORDER_ASPECT_MAX = 0.9
BORDER_MIN_CONFIDENCE = 30

QUALITY_WEIGHTS = {"sharpness": 0.4, "brightness": 0.3, "contrast": 0.3}
QUALITY_GATE_MIN = int(os.getenv("QUALITY_GATE_MIN", "40"))

# Decoded captures are downscaled so the longest side is at most this.
IMAGE_MAX_SIDE = 1600


# ---------------------------
# Consensus
# ---------------------------

GRADE_MIN = 0.5
GRADE_MAX = 10.0

NEUTRAL_GRADE = 7.0
NEUTRAL_CONFIDENCE = 50

DEFECT_CONFIRM_MIN_SOURCES = 2

# Weight for a source identifier missing from every weight table.
DEFAULT_SOURCE_WEIGHT = 10.0

# Vision ensemble models; weights sum to 100 across the canonical set.
ENSEMBLE_WEIGHTS: Dict[str, float] = {
    "claude": 35.0,
    "gemini": 25.0,
    "gpt-4": 20.0,
    "groq": 15.0,
    "deepseek": 5.0,
}

DISSENT_SPREAD = 0.3


# ---------------------------
# Valuation
# ---------------------------

KEY_ISSUE_MULTIPLIER = 3.0

# (year strictly below, base value) - first match wins; older = pricier.
AGE_BUCKETS: List[tuple] = [
    (1956, 50_000),   # Golden Age
    (1970, 25_000),   # Silver Age
    (1985, 10_000),   # Bronze Age
    (1992, 1_000),    # Copper Age
]
MODERN_BASE_VALUE = 100

GRADE_MULTIPLIERS: Dict[float, float] = {
    10.0: 5.0,
    9.8: 3.5,
    9.6: 2.5,
    9.4: 2.0,
    9.2: 1.7,
    9.0: 1.5,
    8.5: 1.2,
    8.0: 1.0,
    7.0: 0.7,
    6.0: 0.5,
    5.0: 0.35,
    4.0: 0.25,
    3.0: 0.15,
    2.0: 0.1,
    1.0: 0.05,
    0.5: 0.03,
}


# ---------------------------
# Pipeline
# ---------------------------

ENGINE_IDS: List[str] = ["pricing", "census", "key_issue", "restoration"]
VALUATION_ENGINE_ID = "pricing"

MAX_RESEARCH_CHARS = 6_000

BATCH_PAUSE_SECONDS = float(os.getenv("BATCH_PAUSE_SECONDS", "1.5"))


# ---------------------------
# Logging / observability
# ---------------------------

LOG_DIR = PROJECT_ROOT / "logs"


# ---------------------------
# Pydantic models shared around the app
# ---------------------------

class StepModel(BaseModel):
    id: str
    label: str
    status: str
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    detail: str = ""


class GradeRequest(BaseModel):
    """
    Request body for POST /grade.
    Images are base64 strings (optionally data-URL prefixed).
    """

    item_id: Optional[str] = None
    title: str
    issue: str
    publisher: str = ""
    year: Optional[int] = None
    key_issue: bool = False
    known_defects: List[str] = Field(default_factory=list)
    front_image: Optional[str] = None
    back_image: Optional[str] = None


class GradeResponse(BaseModel):
    """
    Response body for POST /grade.
    """

    item_id: str
    status: str
    cache_hit: bool
    grade: Optional[float] = None
    grade_label: Optional[str] = None
    confidence: Optional[int] = None
    defects: List[str] = Field(default_factory=list)
    estimated_value: Optional[int] = None
    decision: Optional[dict] = None
    steps: List[StepModel]


class QualityRequest(BaseModel):
    image: str = Field(..., min_length=1)


class QualityResponse(BaseModel):
    detected: bool
    border_confidence: int
    bounds: Optional[Dict[str, int]] = None
    sharpness: float = Field(ge=0, le=100)
    brightness: float = Field(ge=0, le=100)
    contrast: float = Field(ge=0, le=100)
    overall: int = Field(ge=0, le=100)
    cropped: bool
    usable: bool


class CollectionItemModel(BaseModel):
    title: str
    issue: str
    publisher: str = ""
    year: Optional[int] = None
    grade: Optional[float] = None
    estimated_value: Optional[int] = None
    consensus_confidence: Optional[int] = None
    status: str = "ungraded"


class CollectionStatsRequest(BaseModel):
    items: List[CollectionItemModel]


class CollectionStatsResponse(BaseModel):
    total: int
    graded: int
    ungraded: int
    pending: int
    total_value: int
    avg_grade: float
    avg_grade_label: str
    avg_confidence: float


class HealthResponse(BaseModel):
    """
    Response body for GET /health.
    """

    status: str
