"""Typed containers shared across pipeline modules."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

import numpy as np

from .config import LUMA_WEIGHTS
from .voices import Voice


@dataclass(frozen=True)
class Bounds:
    x: int
    y: int
    w: int
    h: int

    @property
    def area(self) -> int:
        return self.w * self.h

    def as_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}


@dataclass
class PixelBuffer:
    """One captured photograph as RGBA samples, shape (height, width, 4)."""

    width: int
    height: int
    rgba: np.ndarray

    def __post_init__(self) -> None:
        arr = np.asarray(self.rgba)
        if arr.ndim == 2:
            # grayscale -> RGBA
            arr = np.stack([arr, arr, arr, np.full_like(arr, 255)], axis=-1)
        elif arr.ndim == 3 and arr.shape[2] == 3:
            alpha = np.full(arr.shape[:2] + (1,), 255, dtype=arr.dtype)
            arr = np.concatenate([arr, alpha], axis=-1)
        if arr.ndim != 3 or arr.shape[2] != 4:
            raise ValueError(f"PixelBuffer expects (H, W, 4) samples, got {arr.shape}")
        if arr.shape[0] != self.height or arr.shape[1] != self.width:
            raise ValueError(
                f"PixelBuffer size mismatch: declared {self.width}x{self.height}, "
                f"samples {arr.shape[1]}x{arr.shape[0]}"
            )
        self.rgba = arr

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "PixelBuffer":
        arr = np.asarray(arr)
        return cls(width=int(arr.shape[1]), height=int(arr.shape[0]), rgba=arr)

    def luminance(self) -> np.ndarray:
        rgb = self.rgba[..., :3].astype("float64")
        r, g, b = LUMA_WEIGHTS
        return rgb[..., 0] * r + rgb[..., 1] * g + rgb[..., 2] * b

    def crop(self, bounds: Bounds) -> "PixelBuffer":
        region = self.rgba[bounds.y:bounds.y + bounds.h, bounds.x:bounds.x + bounds.w]
        return PixelBuffer.from_array(region)


@dataclass
class CapturedImage:
    side: str  # "front" | "back" | "detail"
    data: bytes
    pixels: Optional[PixelBuffer] = None


@dataclass(frozen=True)
class QualityScore:
    sharpness: float
    brightness: float
    contrast: float
    overall: int


@dataclass(frozen=True)
class BorderDetectionResult:
    detected: bool
    confidence: int
    bounds: Optional[Bounds] = None


@dataclass(frozen=True)
class CaptureAssessment:
    border: BorderDetectionResult
    quality: QualityScore
    cropped: bool
    usable: bool


@dataclass
class SourceGradeResult:
    """One source's opinion on the item."""

    source: str
    grade: Optional[float]
    confidence: float = 0.0
    defects: List[str] = field(default_factory=list)
    rationale: str = ""


@dataclass(frozen=True)
class ConsensusResult:
    grade: float
    confidence: int
    confirmed_defects: FrozenSet[str]
    participants: int = 0


@dataclass(frozen=True)
class CouncilResult:
    voice_grades: Dict[Voice, float]
    final_grade: float
    stated: bool
    dissent: bool


@dataclass
class PipelineStep:
    id: str
    label: str
    status: str = "pending"
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    detail: str = ""
    history: List[str] = field(default_factory=lambda: ["pending"])

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "detail": self.detail,
        }


def identity_key(title: str, issue: str) -> str:
    """Recall key: case- and whitespace-insensitive title, issue without "#"."""
    norm_title = " ".join(str(title or "").lower().split())
    norm_issue = str(issue or "").strip().lstrip("#").strip().lower()
    return f"{norm_title}|{norm_issue}"


@dataclass
class GradableItem:
    item_id: str
    title: str
    issue: str
    publisher: str = ""
    year: Optional[int] = None
    key_issue: bool = False
    known_defects: List[str] = field(default_factory=list)
    grade: Optional[float] = None
    consensus_confidence: Optional[int] = None
    defects: List[str] = field(default_factory=list)
    estimated_value: Optional[int] = None
    status: str = "ungraded"
    graded_at: Optional[datetime] = None
    decision: Optional[Dict[str, Any]] = None

    def has_identity(self) -> bool:
        return bool(str(self.title or "").strip()) and bool(str(self.issue or "").strip())

    def identity_key(self) -> str:
        return identity_key(self.title, self.issue)

    def context(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "issue": self.issue,
            "publisher": self.publisher,
            "year": self.year,
            "key_issue": self.key_issue,
            "known_defects": list(self.known_defects),
        }


@dataclass
class GradingDecision:
    grade: float
    grade_label: str
    confidence: int
    defects: List[str]
    estimated_value: int
    value_source: str
    sources: List[SourceGradeResult] = field(default_factory=list)
    ensemble_grade: Optional[float] = None
    debate_grade: Optional[float] = None
    debate_rounds: List[Dict[str, str]] = field(default_factory=list)
    council: Optional[CouncilResult] = None
    commentary: str = ""
    emotion: str = "neutral"
    research: str = ""
    engines: Dict[str, str] = field(default_factory=dict)
    capture_quality: Optional[int] = None
    legacy_path: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        if self.council is not None:
            out["council"] = {
                "voice_grades": {v.value: g for v, g in self.council.voice_grades.items()},
                "final_grade": self.council.final_grade,
                "stated": self.council.stated,
                "dissent": self.council.dissent,
            }
        return out


@dataclass
class GradingRun:
    item: GradableItem
    steps: List[PipelineStep]
    decision: Optional[GradingDecision] = None
    cache_hit: bool = False
