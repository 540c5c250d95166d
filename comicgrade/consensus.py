from __future__ import annotations

"""
Consensus aggregation over per-source grading opinions.

The aggregator is deliberately small and pure:

* aggregate(results, weights) folds a list of SourceGradeResult into a
  weighted grade / weighted confidence / confirmed-defect set.
* confirm_defects(results) is the "two or more sources agree" rule, which
  ignores weights entirely.
* council_verdict(voice_grades, stated_final) is the final-authority blend
  used by the trinity stage.

Grades are rounded once, to the nearest 0.1, and are NOT snapped to the CGC
increment ladder (9.2, 9.4, ...); labels are derived separately.
"""

from collections import Counter
from typing import Dict, Iterable, Mapping, Optional, Sequence

from loguru import logger

from .config import (
    DEFECT_CONFIRM_MIN_SOURCES,
    DISSENT_SPREAD,
    GRADE_MAX,
    GRADE_MIN,
    NEUTRAL_CONFIDENCE,
    NEUTRAL_GRADE,
)
from .normalize import normalize_defects
from .pipeline_types import ConsensusResult, CouncilResult, SourceGradeResult
from .text_utils import parse_grade
from .utils.numbers import clamp, round_half_up, round_to_tenth
from .voices import COUNCIL_ORDER, Voice, source_weight


def is_valid_grade(grade: Optional[float]) -> bool:
    return grade is not None and GRADE_MIN <= float(grade) <= GRADE_MAX


def neutral_consensus() -> ConsensusResult:
    """Unknown condition: assume the median grade."""
    return ConsensusResult(
        grade=NEUTRAL_GRADE,
        confidence=NEUTRAL_CONFIDENCE,
        confirmed_defects=frozenset(),
        participants=0,
    )


def confirm_defects(results: Iterable[SourceGradeResult]) -> frozenset:
    """
    Defects reported by at least two sources.

    Each source counts once per tag no matter how often it repeats it, and
    source weights play no part.
    """
    counts: Counter = Counter()
    for r in results:
        for tag in set(normalize_defects(r.defects)):
            counts[tag] += 1
    return frozenset(tag for tag, n in counts.items() if n >= DEFECT_CONFIRM_MIN_SOURCES)


def aggregate(
    results: Sequence[SourceGradeResult],
    weights: Optional[Mapping[str, float]] = None,
) -> ConsensusResult:
    """
    Weighted consensus over the sources that returned a usable grade.

    Parameters
    ----------
    results :
        One SourceGradeResult per participating source.
    weights :
        Optional table keyed by source id. When omitted, the voice table and
        the ensemble-model table are consulted (see ``voices.source_weight``).
        Only the weights of sources present are summed, so partial
        participation is normalised automatically.

    Returns
    -------
    ConsensusResult
        The neutral default (7.0 / 50 / no defects) when no source produced
        a grade in [0.5, 10.0].
    """
    valid = [r for r in results if is_valid_grade(r.grade)]
    if not valid:
        logger.info("Consensus: no valid grades from {} sources; using neutral default", len(results))
        return neutral_consensus()

    pairs = [(r, source_weight(r.source, weights)) for r in valid]
    total_weight = sum(w for _, w in pairs)
    if total_weight <= 0:
        # every weight zeroed out; fall back to equal weighting
        pairs = [(r, 1.0) for r, _ in pairs]
        total_weight = float(len(pairs))

    weighted_grade = sum(float(r.grade) * w for r, w in pairs) / total_weight
    weighted_conf = sum(float(r.confidence) * w for r, w in pairs) / total_weight

    grade = clamp(round_to_tenth(weighted_grade), GRADE_MIN, GRADE_MAX)
    confidence = int(clamp(round_half_up(weighted_conf), 0, 100))
    confirmed = confirm_defects(valid)

    logger.info(
        "Consensus over {} sources: grade={} confidence={} confirmed={}",
        len(valid), grade, confidence, sorted(confirmed),
    )
    return ConsensusResult(
        grade=grade,
        confidence=confidence,
        confirmed_defects=confirmed,
        participants=len(valid),
    )


def council_verdict(
    voice_grades: Mapping[Voice, Optional[float]],
    stated_final: Optional[float] = None,
    fallback_grade: float = NEUTRAL_GRADE,
) -> CouncilResult:
    """
    Final-authority grade from the three council seats.

    The service's own final grade wins when valid. Otherwise the seats are
    blended 40/35/25 (SAGE/NYX/THORNE), normalised over the seats that voted.
    With no valid seat and no stated grade, ``fallback_grade`` is carried.
    Dissent is flagged when the seat spread exceeds 0.3.
    """
    grades: Dict[Voice, float] = {
        v: float(voice_grades[v]) for v in COUNCIL_ORDER if is_valid_grade(voice_grades.get(v))
    }

    dissent = False
    if len(grades) >= 2:
        spread = max(grades.values()) - min(grades.values())
        dissent = round(spread, 6) > DISSENT_SPREAD

    if is_valid_grade(stated_final):
        final = clamp(round_to_tenth(float(stated_final)), GRADE_MIN, GRADE_MAX)
        return CouncilResult(voice_grades=grades, final_grade=final, stated=True, dissent=dissent)

    if grades:
        total = sum(v.weight for v in grades)
        blended = sum(g * v.weight for v, g in grades.items()) / total
        final = clamp(round_to_tenth(blended), GRADE_MIN, GRADE_MAX)
    else:
        final = clamp(float(fallback_grade), GRADE_MIN, GRADE_MAX)
    return CouncilResult(voice_grades=grades, final_grade=final, stated=False, dissent=dissent)


def voice_grades_from_list(values: Sequence[object]) -> Dict[Voice, Optional[float]]:
    """Positional per-voice grades (SAGE, NYX, THORNE) -> mapping."""
    out: Dict[Voice, Optional[float]] = {}
    for voice, raw in zip(COUNCIL_ORDER, list(values or [])):
        out[voice] = parse_grade(raw)
    return out

