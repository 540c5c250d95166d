"""
Parsers for what the remote reasoning services send back.

Models answer in JSON, in JSON wrapped in prose, or in plain prose. Every
function here is total: malformed input yields "no grade / zero confidence /
no defects" (or None for single values) instead of raising.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, Dict, Mapping, Optional

from .normalize import basic_clean, normalize_defects
from .pipeline_types import SourceGradeResult

GRADE_PATTERNS = [
    r"\b(?:final\s+|overall\s+|adjusted\s+)?grade\s*(?:is|of|:|=)?\s*(?:a\s+)?(?:cgc\s*)?(\d{1,2}(?:\.\d+)?)",
    r"\bcgc\s*(\d{1,2}(?:\.\d+)?)",
    r"(\d{1,2}(?:\.\d+)?)\s*/\s*10\b",
]
CONFIDENCE_RE = re.compile(
    r"confidence\s*(?:level|score)?\s*(?:is|of|:|=)?\s*(\d{1,3}(?:\.\d+)?)\s*(%)?",
    re.I,
)
DEFECTS_RE = re.compile(r"defects?\s*(?:found|noted|observed)?\s*[:=]\s*([^\n]+)", re.I)

_AMOUNT = r"(\d[\d,]*(?:\.\d+)?)(?:\s*(million|thousand|mil|mm|k|m)\b)?"
_CURRENCY_RE = re.compile(r"\$\s*" + _AMOUNT, re.I)
_NUMBER_RE = re.compile(_AMOUNT, re.I)
_VALUE_WORD_RE = re.compile(r"\b(?:value|worth|fmv|price|usd|dollars)\b", re.I)
# numbers that quote the grade back ("CGC 9.4", "grade: 8", "9.2/10")
_GRADE_PREFIX_RE = re.compile(r"(?:cgc|grade|graded)\s*(?:is|of|at|:|#)?\s*$", re.I)
_OUT_OF_TEN_RE = re.compile(r"\s*/\s*10\b")
_YEAR_RE = re.compile(r"(?:18|19|20)\d\d")
_UNIT_RE = re.compile(r"\s*(?:usd|dollars)\b", re.I)
_SUFFIX_SCALE = {"k": 1_000, "thousand": 1_000, "m": 1_000_000, "mm": 1_000_000, "mil": 1_000_000,
                 "million": 1_000_000}

_GRADE_KEYS = ("grade", "final_grade", "finalGrade", "adjusted_grade", "adjustedGrade")
_TEXT_KEYS = ("analysisText", "analysis_text", "analysis", "rationale", "text", "response")


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        f = float(value)
    else:
        m = re.search(r"-?\d+(?:\.\d+)?", str(value))
        if not m:
            return None
        f = float(m.group(0))
    if math.isnan(f) or math.isinf(f):
        return None
    return f


def parse_grade(value: Any) -> Optional[float]:
    """Numeric grade from a structured field ("9.4", 9.4, "CGC 9.4") or None."""
    return _to_float(value)


def parse_confidence(value: Any) -> float:
    """Confidence in [0, 100]; fractions like 0.87 are read as 87%."""
    f = _to_float(value)
    if f is None:
        return 0.0
    if 0.0 < f < 1.0:
        f *= 100.0
    return max(0.0, min(100.0, f))


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """First JSON object embedded in ``text`` (code fences allowed)."""
    if not text or "{" not in text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    while start != -1 and end > start:
        try:
            obj = json.loads(text[start:end + 1])
        except ValueError:
            start = text.find("{", start + 1)
            continue
        return obj if isinstance(obj, dict) else None
    return None


def _first_key(data: Mapping[str, Any], keys) -> Any:
    lowered = {str(k).lower(): v for k, v in data.items()}
    for k in keys:
        if k in data:
            return data[k]
        if k.lower() in lowered:
            return lowered[k.lower()]
    return None


def _in_scale(grade: Optional[float]) -> Optional[float]:
    return grade if grade is not None and 0.5 <= grade <= 10.0 else None


def _parse_mapping(data: Mapping[str, Any], source: str) -> SourceGradeResult:
    grade = _in_scale(parse_grade(_first_key(data, _GRADE_KEYS)))
    confidence = parse_confidence(_first_key(data, ("confidence", "consensus_confidence")))
    defects = normalize_defects(_first_key(data, ("defects", "defect_tags", "defectTags")) or [])
    rationale = basic_clean(_first_key(data, _TEXT_KEYS))

    if grade is None and rationale:
        # structured envelope around a prose answer
        inner = _parse_text(rationale, source)
        return SourceGradeResult(
            source=source,
            grade=inner.grade,
            confidence=confidence or inner.confidence,
            defects=defects or inner.defects,
            rationale=rationale,
        )
    return SourceGradeResult(source=source, grade=grade, confidence=confidence, defects=defects, rationale=rationale)


def _parse_text(text: str, source: str) -> SourceGradeResult:
    grade: Optional[float] = None
    for pat in GRADE_PATTERNS:
        m = re.search(pat, text, re.I)
        if m:
            grade = _in_scale(parse_grade(m.group(1)))
            break

    confidence = 0.0
    m = CONFIDENCE_RE.search(text)
    if m:
        confidence = parse_confidence(m.group(1))

    defects = []
    m = DEFECTS_RE.search(text)
    if m:
        defects = normalize_defects(m.group(1))

    return SourceGradeResult(
        source=source,
        grade=grade,
        confidence=confidence,
        defects=defects,
        rationale=basic_clean(text),
    )


def parse_source_response(payload: Any, source: str = "") -> SourceGradeResult:
    """
    Turn one service answer into a SourceGradeResult.

    Accepts a mapping (already-decoded JSON) or raw text. Text is sniffed for
    an embedded JSON object first, then scanned with the grade / confidence /
    defects patterns. Never raises.
    """
    try:
        if isinstance(payload, Mapping):
            src = source or str(_first_key(payload, ("model", "source", "voice")) or "")
            return _parse_mapping(payload, src)
        text = "" if payload is None else str(payload)
        obj = extract_json_object(text)
        if obj is not None:
            return _parse_mapping(obj, source or str(obj.get("model") or ""))
        return _parse_text(text, source)
    except Exception:  # noqa: BLE001 - parsing must stay total
        return SourceGradeResult(source=source, grade=None, confidence=0.0, defects=[], rationale="")


def parse_currency(text: Any) -> Optional[int]:
    """
    First money amount in text: "$12,500", "$1.2 million", "worth about 1.2M",
    "value at CGC 9.4: 12,000 USD".

    A "$" amount wins. Without one, the first number after a value word is
    used, skipping grades and years quoted alongside it. Returns whole
    currency units, or None when nothing parses.
    """
    if text is None:
        return None
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        return int(round(float(text))) if text > 0 else None
    s = str(text)
    m = _CURRENCY_RE.search(s)
    if m:
        return _scaled(m)

    word = _VALUE_WORD_RE.search(s)
    if not word:
        return None
    for m in _NUMBER_RE.finditer(s, word.start()):
        if not _is_grade_or_year(s, m):
            return _scaled(m)
    return None


def _scaled(m: re.Match) -> int:
    amount = float(m.group(1).replace(",", ""))
    amount *= _SUFFIX_SCALE.get((m.group(2) or "").lower(), 1)
    return int(round(amount))


def _is_grade_or_year(s: str, m: re.Match) -> bool:
    if m.group(2):
        return False
    raw = m.group(1).rstrip(",")
    before = s[max(0, m.start() - 12):m.start()]
    after = s[m.end():m.end() + 10]
    if before.endswith("/") or _GRADE_PREFIX_RE.search(before) or _OUT_OF_TEN_RE.match(after):
        return True
    if "." in raw and "," not in raw and float(raw) <= 10.0:
        return True
    return bool(_YEAR_RE.fullmatch(raw)) and not _UNIT_RE.match(after)
