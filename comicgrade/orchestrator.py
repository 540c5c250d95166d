from __future__ import annotations

"""
Grading pipeline for one collection item.

- Ten ordered steps (see steps.STEP_DEFINITIONS), each visible to the caller
- Every collaborator call is best-effort: failures degrade to defaults and
  mark the step as error, they never stop the run before `store`
- Only a missing title/issue aborts, and it does so before any step starts
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from loguru import logger

from .collaborators import GradingServices, RecallStore, best_effort
from .collection import grade_label
from .config import (
    BATCH_PAUSE_SECONDS,
    CALL_TIMEOUT_SECONDS,
    ENGINE_IDS,
    ENSEMBLE_WEIGHTS,
    MAX_RESEARCH_CHARS,
    VALUATION_ENGINE_ID,
)
from .consensus import aggregate, council_verdict, is_valid_grade, neutral_consensus, voice_grades_from_list
from .constants import CANNED_COMMENTARY, COMMENTARY_HIGH_MIN, COMMENTARY_MID_MIN
from .image_metrics import assess_capture
from .memory_store import InMemoryRecallStore
from .normalize import basic_clean, normalize_defects
from .pipeline_types import (
    CapturedImage,
    ConsensusResult,
    CouncilResult,
    GradableItem,
    GradingDecision,
    GradingRun,
    PipelineStep,
    SourceGradeResult,
)
from .steps import StepLog
from .text_utils import parse_confidence, parse_currency, parse_grade, parse_source_response
from .utils.images import ImageDecodeError, decode_image
from .utils.numbers import round_half_up
from .valuation import estimate_value
from .voices import COUNCIL_ORDER, VOICE_WEIGHTS, Voice


class ItemIdentityError(ValueError):
    """Item lacks the title or issue number needed to grade it."""


@dataclass
class _RunState:
    """Working values one run threads from step to step."""

    item: GradableItem
    log: StepLog
    captures: List[CapturedImage]
    consensus: ConsensusResult = field(default_factory=neutral_consensus)
    sources: List[SourceGradeResult] = field(default_factory=list)
    legacy_path: bool = False
    capture_quality: Optional[int] = None
    research: str = ""
    engines: Dict[str, str] = field(default_factory=dict)
    enrichment_value: Optional[int] = None
    debate_grade: float = 0.0
    debate_rounds: List[Dict[str, str]] = field(default_factory=list)
    council: Optional[CouncilResult] = None
    value: int = 0
    value_source: str = "estimator"
    commentary: str = ""
    emotion: str = "neutral"

    @property
    def defects(self) -> List[str]:
        return sorted(self.consensus.confirmed_defects)

    def capture(self, side: str) -> Optional[CapturedImage]:
        for c in self.captures:
            if c.side == side:
                return c
        return None


def build_engine_prompt(engine_id: str, item: GradableItem, grade: float, defects: List[str]) -> str:
    name = f"{item.title} #{str(item.issue).lstrip('#')}"
    if item.publisher or item.year:
        name += f" ({', '.join(str(p) for p in (item.publisher, item.year) if p)})"
    key = "yes" if item.key_issue else "no"
    if engine_id == "pricing":
        return (
            f"Estimate the current fair market value in USD of {name} at CGC {grade}. "
            f"Key issue: {key}. Answer with one dollar amount and a one-line rationale."
        )
    if engine_id == "census":
        return f"Summarize the CGC census population for {name} at and above {grade}."
    if engine_id == "key_issue":
        return f"Explain the collector significance of {name}: first appearances, origins, notable covers."
    if engine_id == "restoration":
        listed = ", ".join(defects) if defects else "none reported"
        return f"Assess restoration or conservation risk for {name}. Confirmed defects: {listed}."
    return f"Provide collector notes for {name} at grade {grade}."


def _canned_commentary(grade: float) -> str:
    if grade >= COMMENTARY_HIGH_MIN:
        return CANNED_COMMENTARY["high"]
    if grade >= COMMENTARY_MID_MIN:
        return CANNED_COMMENTARY["mid"]
    return CANNED_COMMENTARY["low"]


def _parse_recalled_at(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


def _council_voice_grades(data: Mapping[str, Any]) -> Dict[Voice, Optional[float]]:
    raw = data.get("perVoiceGrades", data.get("per_voice_grades", data.get("voices")))
    if isinstance(raw, Mapping):
        out: Dict[Voice, Optional[float]] = {}
        for k, v in raw.items():
            voice = Voice.parse(k)
            if voice is not None:
                out[voice] = parse_grade(v)
        return out
    if isinstance(raw, (list, tuple)):
        return voice_grades_from_list(raw)
    return {}


class GradingOrchestrator:
    """
    Drives one item (or a batch) through the ten grading steps.

    Parameters
    ----------
    services :
        Vision, research, debate, council and commentary collaborators.
    memory :
        Recall store for prior grades; an in-process store when omitted.
    on_step :
        Called with every PipelineStep update, in order.
    """

    def __init__(
        self,
        services: GradingServices,
        memory: Optional[RecallStore] = None,
        on_step: Optional[Callable[[PipelineStep], None]] = None,
        call_timeout: float = CALL_TIMEOUT_SECONDS,
        batch_pause: float = BATCH_PAUSE_SECONDS,
    ) -> None:
        self.services = services
        self.memory = memory if memory is not None else InMemoryRecallStore()
        self.on_step = on_step
        self.call_timeout = call_timeout
        self.batch_pause = batch_pause

    async def _call(self, awaitable, fallback: Any, label: str):
        return await best_effort(awaitable, fallback, label, timeout=self.call_timeout)

    # -----------------------
    # Public entry points
    # -----------------------

    async def run(self, item: GradableItem, captures: Optional[Iterable[CapturedImage]] = None) -> GradingRun:
        if not item.has_identity():
            raise ItemIdentityError(f"Item {item.item_id!r} needs both a title and an issue number")

        state = _RunState(item=item, log=StepLog(on_update=self.on_step), captures=list(captures or []))
        logger.info("Grading {} #{} ({} captures)", item.title, item.issue, len(state.captures))

        # --- 1) Memory recall; a hit ends the run here ---
        if await self._step_cache(state):
            return GradingRun(item=item, steps=state.log.steps, decision=None, cache_hit=True)

        item.status = "grading"

        # --- 2) Upload + quality gate ---
        await self._step_upload(state)

        # --- 3) Vision ensemble, or the three advisors without a front image ---
        await self._step_vision(state)

        # --- 4) Market research ---
        await self._step_research(state)

        # --- 5) Enrichment engines ---
        await self._step_engines(state)

        # --- 6) Bull/bear debate ---
        await self._step_debate(state)

        # --- 7) Trinity council (final authority) ---
        await self._step_trinity(state)

        # --- 8) Valuation ---
        self._step_value(state)

        # --- 9) Commentary ---
        await self._step_commentary(state)

        # --- 10) Persist and write back ---
        decision = self._build_decision(state)
        await self._step_store(state, decision)

        logger.info(
            "Graded {} #{}: {} ({}) conf={} value=${:,}",
            item.title, item.issue, decision.grade, decision.grade_label, decision.confidence,
            decision.estimated_value,
        )
        return GradingRun(item=item, steps=state.log.steps, decision=decision, cache_hit=False)

    async def grade_batch(
        self,
        items: Iterable[GradableItem],
        captures_by_id: Optional[Mapping[str, List[CapturedImage]]] = None,
    ) -> List[GradingRun]:
        """Sequential runs over the ungraded items, pausing between them."""
        captures_by_id = captures_by_id or {}
        pending = []
        for item in items:
            if item.status != "ungraded":
                continue
            if not item.has_identity():
                logger.warning("Skipping item {}: missing title or issue", item.item_id)
                continue
            pending.append(item)

        runs: List[GradingRun] = []
        for idx, item in enumerate(pending):
            runs.append(await self.run(item, captures_by_id.get(item.item_id)))
            if idx < len(pending) - 1 and self.batch_pause > 0:
                await asyncio.sleep(self.batch_pause)
        logger.info("Batch done: {} graded of {} pending", len(runs), len(pending))
        return runs

    # -----------------------
    # Steps
    # -----------------------

    async def _step_cache(self, state: _RunState) -> bool:
        log, item = state.log, state.item
        log.start("cache")
        res = await self._call(self.memory.recall(item.title, item.issue), None, "recall")
        if not res.ok:
            log.fail("cache", f"recall unavailable: {res.error}")
            return False

        record = res.value if isinstance(res.value, Mapping) else None
        grade = parse_grade(record.get("grade")) if record else None
        if not is_valid_grade(grade):
            log.complete("cache", "no prior grade")
            return False

        item.grade = float(grade)
        item.consensus_confidence = int(round_half_up(parse_confidence(record.get("confidence"))))
        item.defects = normalize_defects(record.get("defects"))
        value = parse_currency(record.get("estimated_value"))
        if value is not None:
            item.estimated_value = value
        item.graded_at = _parse_recalled_at(record.get("gradedAt") or record.get("graded_at"))
        item.status = "graded"
        log.complete("cache", f"recalled grade {item.grade} from {item.graded_at.date().isoformat()}")
        return True

    async def _step_upload(self, state: _RunState) -> None:
        log, item = state.log, state.item
        log.start("upload")
        if not state.captures:
            log.complete("upload", "no images captured")
            return

        front = state.capture("front")
        if front is not None:
            try:
                pixels = front.pixels if front.pixels is not None else decode_image(front.data)
                state.capture_quality = assess_capture(pixels).quality.overall
            except ImageDecodeError as e:
                logger.warning("Front capture could not be decoded for quality check: {}", e)

        outcomes: List[str] = []
        succeeded = 0
        for capture in state.captures:
            res = await self._call(
                self.services.upload(capture.data, item.item_id, capture.side), None, f"upload {capture.side}"
            )
            ok = res.ok and bool(res.value)
            succeeded += int(ok)
            outcomes.append(f"{capture.side} {'ok' if ok else 'failed'}")

        detail = ", ".join(outcomes)
        if state.capture_quality is not None:
            detail += f"; quality {state.capture_quality}"
        if succeeded:
            log.complete("upload", detail)
        else:
            log.fail("upload", detail)

    async def _step_vision(self, state: _RunState) -> None:
        log, ctx = state.log, state.item.context()
        log.start("vision")

        if state.capture("front") is not None:
            images = {c.side: c.data for c in state.captures}
            res = await self._call(self.services.run_ensemble(images, ctx), [], "vision ensemble")
            raw = res.value if isinstance(res.value, (list, tuple)) else []
            results = [parse_source_response(r) for r in raw]
            for i, r in enumerate(results):
                if not r.source:
                    r.source = f"model-{i + 1}"
            state.sources = results
            state.consensus = aggregate(results, ENSEMBLE_WEIGHTS)
            if not res.ok:
                log.fail("vision", f"ensemble unavailable ({res.error}); neutral {state.consensus.grade}")
            else:
                log.complete(
                    "vision",
                    f"{state.consensus.participants}/{len(results)} models -> "
                    f"{state.consensus.grade} ({state.consensus.confidence}%)",
                )
            return

        state.legacy_path = True
        calls = [self._call(self.services.consult(v, ctx), None, f"advisor {v.value}") for v in COUNCIL_ORDER]
        outcomes = await asyncio.gather(*calls, return_exceptions=True)
        results = [
            parse_source_response(o.value, v.value)
            for v, o in zip(COUNCIL_ORDER, outcomes)
            if not isinstance(o, BaseException) and o.ok
        ]
        state.sources = results
        state.consensus = aggregate(results, VOICE_WEIGHTS)
        log.complete(
            "vision",
            f"legacy advisors {len(results)}/{len(COUNCIL_ORDER)} -> {state.consensus.grade}",
        )

    async def _step_research(self, state: _RunState) -> None:
        log = state.log
        log.start("research")
        res = await self._call(
            self.services.research(state.item.context(), state.consensus.grade), "", "research"
        )
        state.research = basic_clean(str(res.value or ""), max_chars=MAX_RESEARCH_CHARS)
        if res.ok:
            log.complete("research", f"{len(state.research)} chars")
        else:
            log.fail("research", f"research unavailable: {res.error}")

    async def _step_engines(self, state: _RunState) -> None:
        log, item = state.log, state.item
        log.start("engines")
        grade, defects = state.consensus.grade, state.defects
        calls = [
            self._call(
                self.services.query_engine(eid, build_engine_prompt(eid, item, grade, defects)),
                None,
                f"engine {eid}",
            )
            for eid in ENGINE_IDS
        ]
        outcomes = await asyncio.gather(*calls, return_exceptions=True)
        for eid, o in zip(ENGINE_IDS, outcomes):
            if isinstance(o, BaseException) or not o.ok or not o.value:
                continue
            state.engines[eid] = str(o.value)

        value = parse_currency(state.engines.get(VALUATION_ENGINE_ID))
        state.enrichment_value = value if value and value > 0 else None

        if state.engines:
            log.complete("engines", f"{len(state.engines)}/{len(ENGINE_IDS)} engines: {', '.join(state.engines)}")
        else:
            log.fail("engines", "no engine responded")

    async def _step_debate(self, state: _RunState) -> None:
        log = state.log
        log.start("debate")
        before = state.consensus.grade
        res = await self._call(
            self.services.debate(state.item.context(), before, state.defects, state.research), {}, "debate"
        )
        data = res.value if isinstance(res.value, Mapping) else {}
        adjusted = parse_grade(data.get("adjustedGrade", data.get("adjusted_grade")))
        state.debate_grade = float(adjusted) if is_valid_grade(adjusted) else before
        rounds = data.get("rounds")
        state.debate_rounds = [
            {k: str(r.get(k, "")) for k in ("bull", "bear", "judge")}
            for r in (rounds if isinstance(rounds, (list, tuple)) else [])
            if isinstance(r, Mapping)
        ]
        if res.ok:
            log.complete("debate", f"{len(state.debate_rounds)} rounds, {before} -> {state.debate_grade}")
        else:
            log.fail("debate", f"debate unavailable; keeping {before}")

    async def _step_trinity(self, state: _RunState) -> None:
        log = state.log
        log.start("trinity")
        res = await self._call(
            self.services.decide(
                state.item.context(),
                state.consensus.grade,
                state.debate_grade,
                state.defects,
                state.research,
                state.enrichment_value,
            ),
            {},
            "council",
        )
        data = res.value if isinstance(res.value, Mapping) else {}
        stated = parse_grade(data.get("finalGrade", data.get("final_grade")))
        state.council = council_verdict(_council_voice_grades(data), stated, fallback_grade=state.debate_grade)

        if not res.ok:
            log.fail("trinity", f"council unavailable; using debate grade {state.council.final_grade}")
            return
        seats = ", ".join(f"{v.value} {g}" for v, g in state.council.voice_grades.items()) or "no seats"
        flag = " (dissent)" if state.council.dissent else ""
        log.complete("trinity", f"final {state.council.final_grade}; {seats}{flag}")

    def _step_value(self, state: _RunState) -> None:
        log, item = state.log, state.item
        log.start("value")
        if state.enrichment_value and state.enrichment_value > 0:
            state.value, state.value_source = state.enrichment_value, "enrichment"
        else:
            state.value = estimate_value(self._final_grade(state), item.year, item.key_issue)
            state.value_source = "estimator"
        log.complete("value", f"${state.value:,} ({state.value_source})")

    async def _step_commentary(self, state: _RunState) -> None:
        log = state.log
        log.start("commentary")
        grade = self._final_grade(state)
        res = await self._call(
            self.services.comment(state.item.context(), grade, state.value, state.defects), None, "commentary"
        )
        data = res.value if isinstance(res.value, Mapping) else {}
        text = basic_clean(str(data.get("text") or ""))
        if res.ok and text:
            state.commentary = text
            state.emotion = str(data.get("emotion") or "neutral")
            log.complete("commentary", f"{len(text)} chars, {state.emotion}")
        else:
            state.commentary = _canned_commentary(grade)
            state.emotion = "neutral"
            log.complete("commentary", "canned remark")

    async def _step_store(self, state: _RunState, decision: GradingDecision) -> None:
        log, item = state.log, state.item
        log.start("store")
        payload = decision.to_dict()

        item.grade = decision.grade
        item.estimated_value = decision.estimated_value
        item.defects = list(decision.defects)
        item.consensus_confidence = decision.confidence
        item.status = "graded"
        item.graded_at = datetime.now(timezone.utc)
        item.decision = payload

        res = await self._call(self.memory.store(item, payload), False, "store")
        if res.ok and res.value:
            log.complete("store", "decision persisted")
        else:
            log.fail("store", f"persist failed: {res.error or 'store declined'}")

    # -----------------------
    # Helpers
    # -----------------------

    @staticmethod
    def _final_grade(state: _RunState) -> float:
        if state.council is not None:
            return state.council.final_grade
        return state.debate_grade or state.consensus.grade

    def _build_decision(self, state: _RunState) -> GradingDecision:
        grade = self._final_grade(state)
        return GradingDecision(
            grade=grade,
            grade_label=grade_label(grade),
            confidence=state.consensus.confidence,
            defects=state.defects,
            estimated_value=state.value,
            value_source=state.value_source,
            sources=list(state.sources),
            ensemble_grade=state.consensus.grade,
            debate_grade=state.debate_grade,
            debate_rounds=list(state.debate_rounds),
            council=state.council,
            commentary=state.commentary,
            emotion=state.emotion,
            research=state.research,
            engines=dict(state.engines),
            capture_quality=state.capture_quality,
            legacy_path=state.legacy_path,
        )
