import asyncio

import pytest

from comicgrade.constants import CANNED_COMMENTARY
from comicgrade.memory_store import InMemoryRecallStore
from comicgrade.orchestrator import GradingOrchestrator, ItemIdentityError, build_engine_prompt
from comicgrade.pipeline_types import CapturedImage, GradableItem
from comicgrade.steps import STEP_IDS
from comicgrade.voices import Voice


class FakeServices:
    """Records every call; ``fail`` names the methods that should raise."""

    def __init__(self, fail=(), engine_fail=(), ensemble=None, council=None, commentary=None, debate=None):
        self.calls = []
        self.fail = set(fail)
        self.engine_fail = set(engine_fail)
        self.ensemble = ensemble if ensemble is not None else [
            {"model": "claude", "grade": 9.0, "confidence": 90, "defects": ["spine_roll", "staple_rust"]},
            {"model": "gemini", "grade": 8.6, "confidence": 80, "defects": ["spine roll"]},
            {"model": "gpt-4", "grade": 9.2, "confidence": 70, "defects": ["cover_crease"]},
        ]
        self.council = council if council is not None else {"perVoiceGrades": [9.0, 8.8, 9.2]}
        self.commentary = commentary if commentary is not None else {"text": "Lovely copy.", "emotion": "excited"}
        self.debate_payload = debate if debate is not None else {
            "adjustedGrade": 8.8,
            "rounds": [{"bull": "tight spine", "bear": "roll", "judge": "8.8"}],
        }

    def _hit(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail:
            raise RuntimeError(f"{name} down")

    async def upload(self, image_bytes, item_id, side):
        self._hit("upload", side)
        return f"{item_id}/{side}"

    async def run_ensemble(self, images, item_context):
        self._hit("run_ensemble", tuple(sorted(images)))
        return self.ensemble

    async def consult(self, voice, item_context):
        self._hit("consult", voice)
        grades = {Voice.SAGE: "grade: 9.0", Voice.NYX: "8.5/10", Voice.THORNE: "CGC 9.4"}
        return grades[voice]

    async def research(self, item_context, current_grade):
        self._hit("research", current_grade)
        return "<p>Recent sales  strong</p>"

    async def query_engine(self, engine_id, prompt):
        self._hit("query_engine", engine_id)
        if engine_id in self.engine_fail:
            raise RuntimeError(f"{engine_id} down")
        if engine_id == "pricing":
            return "Fair market value: $4,200"
        return f"{engine_id} notes"

    async def debate(self, item_context, current_grade, defects, research_text):
        self._hit("debate", current_grade, tuple(defects))
        return self.debate_payload

    async def decide(self, item_context, ensemble_grade, debate_grade, defects, research_text, valuation):
        self._hit("decide", ensemble_grade, debate_grade, valuation)
        return self.council

    async def comment(self, item_context, grade, value, defects):
        self._hit("comment", grade, value)
        return self.commentary


def _item(**kw):
    base = dict(item_id="asm-300", title="Amazing Spider-Man", issue="#300", publisher="Marvel", year=1988)
    base.update(kw)
    return GradableItem(**base)


def _front():
    return [CapturedImage(side="front", data=b"front-bytes")]


def _orchestrator(services, memory=None, **kw):
    kw.setdefault("call_timeout", 2.0)
    kw.setdefault("batch_pause", 0)
    return GradingOrchestrator(services, memory=memory if memory is not None else InMemoryRecallStore(), **kw)


def _status(run):
    return {s.id: s.status for s in run.steps}


def test_full_run_writes_back_to_item():
    services = FakeServices()
    item = _item()
    run = asyncio.run(_orchestrator(services).run(item, _front()))

    assert run.cache_hit is False
    assert all(s == "complete" for s in _status(run).values())
    # ensemble 8.9 (weighted), debate 8.8, council blend of 9.0/8.8/9.2 -> 9.0
    assert run.decision.ensemble_grade == 8.9
    assert run.decision.debate_grade == 8.8
    assert item.grade == 9.0
    assert item.status == "graded"
    assert item.graded_at is not None
    assert item.defects == ["spine_roll"]
    assert item.estimated_value == 4200
    assert run.decision.value_source == "enrichment"
    assert run.decision.commentary == "Lovely copy."
    assert run.decision.emotion == "excited"
    assert item.decision["grade_label"] == run.decision.grade_label


def test_cache_hit_short_circuits():
    memory = InMemoryRecallStore()
    first = _item()
    asyncio.run(_orchestrator(FakeServices(), memory=memory).run(first, _front()))

    services = FakeServices()
    again = _item(item_id="asm-300-copy", title="amazing  spider-man", issue="300")
    run = asyncio.run(_orchestrator(services, memory=memory).run(again, _front()))

    assert run.cache_hit is True
    assert services.calls == []
    status = _status(run)
    assert status["cache"] == "complete"
    assert all(status[sid] == "pending" for sid in STEP_IDS[1:])
    assert again.grade == first.grade
    assert again.status == "graded"
    assert again.defects == first.defects


def test_recall_failure_does_not_stop_the_run():
    class BrokenMemory(InMemoryRecallStore):
        async def recall(self, title, issue):
            raise ConnectionError("cache offline")

    run = asyncio.run(_orchestrator(FakeServices(), memory=BrokenMemory()).run(_item(), _front()))
    assert _status(run)["cache"] == "error"
    assert run.item.status == "graded"


def test_legacy_path_without_front_image():
    services = FakeServices()
    run = asyncio.run(_orchestrator(services).run(_item(), []))

    consulted = [c[1] for c in services.calls if c[0] == "consult"]
    assert sorted(v.value for v in consulted) == ["NYX", "SAGE", "THORNE"]
    assert not any(c[0] == "run_ensemble" for c in services.calls)
    assert run.decision.legacy_path is True
    # 9.0*40 + 8.5*35 + 9.4*25 -> 8.925 -> 8.9
    assert run.decision.ensemble_grade == 8.9
    assert _status(run)["upload"] == "complete"


def test_ensemble_failure_uses_neutral_default():
    services = FakeServices(fail={"run_ensemble"})
    run = asyncio.run(_orchestrator(services).run(_item(), _front()))
    assert _status(run)["vision"] == "error"
    assert run.decision.ensemble_grade == 7.0
    assert run.decision.confidence == 50
    assert run.decision.defects == []
    assert _status(run)["store"] == "complete"


def test_engine_partial_failure_and_estimator_fallback():
    services = FakeServices(engine_fail={"pricing", "census"})
    item = _item(year=1974, key_issue=True)
    run = asyncio.run(_orchestrator(services).run(item, _front()))

    assert _status(run)["engines"] == "complete"
    assert set(run.decision.engines) == {"key_issue", "restoration"}
    assert run.decision.value_source == "estimator"
    # bronze age base 10000 x 1.5 (nearest to 9.0) x 3.0 key
    assert item.estimated_value == 45_000


def test_all_engines_down_marks_step_error():
    services = FakeServices(engine_fail={"pricing", "census", "key_issue", "restoration"})
    run = asyncio.run(_orchestrator(services).run(_item(), _front()))
    assert _status(run)["engines"] == "error"
    assert run.decision.engines == {}


def test_debate_without_adjusted_grade_carries_forward():
    services = FakeServices(debate={"rounds": []}, council={})
    run = asyncio.run(_orchestrator(services).run(_item(), _front()))
    assert run.decision.debate_grade == run.decision.ensemble_grade
    # empty council answer: no seats, no stated final -> debate grade
    assert run.decision.grade == run.decision.debate_grade


def test_council_failure_falls_back_to_debate_grade():
    services = FakeServices(fail={"decide"})
    run = asyncio.run(_orchestrator(services).run(_item(), _front()))
    assert _status(run)["trinity"] == "error"
    assert run.decision.grade == 8.8


def test_council_stated_final_grade_wins():
    services = FakeServices(council={"finalGrade": "9.4", "perVoiceGrades": {"sage": 9.0, "nyx": 9.6}})
    run = asyncio.run(_orchestrator(services).run(_item(), _front()))
    assert run.decision.grade == 9.4
    assert run.decision.council.dissent is True


@pytest.mark.parametrize(
    "council_grade, expected",
    [(9.2, "high"), (9.0, "high"), (7.0, "mid"), (6.0, "mid"), (5.5, "low")],
)
def test_commentary_fallback_thresholds(council_grade, expected):
    services = FakeServices(fail={"comment"}, council={"finalGrade": council_grade})
    run = asyncio.run(_orchestrator(services).run(_item(), _front()))
    assert run.decision.commentary == CANNED_COMMENTARY[expected]
    assert run.decision.emotion == "neutral"
    assert _status(run)["commentary"] == "complete"


def test_store_failure_still_updates_item():
    class ReadOnlyMemory(InMemoryRecallStore):
        async def store(self, item, decision):
            raise RuntimeError("write refused")

    item = _item()
    run = asyncio.run(_orchestrator(FakeServices(), memory=ReadOnlyMemory()).run(item, _front()))
    assert _status(run)["store"] == "error"
    assert item.status == "graded"
    assert item.grade == run.decision.grade


def test_slow_collaborator_times_out_to_fallback():
    class SlowResearch(FakeServices):
        async def research(self, item_context, current_grade):
            await asyncio.sleep(5)
            return "late"

    run = asyncio.run(_orchestrator(SlowResearch(), call_timeout=0.05).run(_item(), _front()))
    assert _status(run)["research"] == "error"
    assert run.decision.research == ""


def test_steps_move_forward_only():
    updates = []
    run = asyncio.run(_orchestrator(FakeServices(), on_step=lambda s: updates.append((s.id, s.status))).run(
        _item(), _front()
    ))
    for step in run.steps:
        assert step.history[0] == "pending"
        assert step.history[1:] in (["running", "complete"], ["running", "error"])
    order = []
    for sid, _ in updates:
        if sid not in order:
            order.append(sid)
    assert order == STEP_IDS


def test_identity_precondition():
    services = FakeServices()
    with pytest.raises(ItemIdentityError):
        asyncio.run(_orchestrator(services).run(_item(title="  "), _front()))
    assert services.calls == []


def test_batch_is_sequential_and_skips_bad_items():
    services = FakeServices()
    items = [
        _item(item_id="a", title="X-Men", issue="1"),
        _item(item_id="b", title="", issue="2"),
        _item(item_id="c", title="Hulk", issue="181", status="graded"),
        _item(item_id="d", title="Batman", issue="423"),
    ]
    runs = asyncio.run(_orchestrator(services).grade_batch(items, {"a": _front()}))
    assert [r.item.item_id for r in runs] == ["a", "d"]
    assert items[1].status == "ungraded"
    assert items[2].grade is None
    # item "d" had no captures -> legacy path
    assert runs[1].decision.legacy_path is True


def test_engine_prompts_mention_the_item():
    item = _item(key_issue=True)
    prompt = build_engine_prompt("pricing", item, 9.2, [])
    assert "Amazing Spider-Man #300" in prompt
    assert "9.2" in prompt
    assert "restoration" in build_engine_prompt("restoration", item, 9.2, ["spine_roll"]).lower()


def test_debate_rounds_of_wrong_type_are_ignored():
    services = FakeServices(debate={"adjustedGrade": 8.5, "rounds": 3})
    run = asyncio.run(_orchestrator(services).run(_item(), _front()))
    assert run.decision.debate_grade == 8.5
    assert run.decision.debate_rounds == []
    assert _status(run)["debate"] == "complete"
    assert _status(run)["store"] == "complete"


def test_malformed_recall_record_still_short_circuits():
    class OddMemory(InMemoryRecallStore):
        async def recall(self, title, issue):
            return {"grade": 9.0, "defects": 5, "confidence": "high", "gradedAt": "last week"}

    services = FakeServices()
    item = _item()
    run = asyncio.run(_orchestrator(services, memory=OddMemory()).run(item, _front()))
    assert run.cache_hit is True
    assert services.calls == []
    assert item.grade == 9.0
    assert item.defects == []
    assert item.consensus_confidence == 0
    assert item.graded_at is not None


def test_recall_without_grade_runs_the_pipeline():
    class EmptyMemory(InMemoryRecallStore):
        async def recall(self, title, issue):
            return {"grade": "n/a", "defects": ["spine_roll"]}

    run = asyncio.run(_orchestrator(FakeServices(), memory=EmptyMemory()).run(_item(), _front()))
    assert run.cache_hit is False
    assert _status(run)["cache"] == "complete"
    assert _status(run)["store"] == "complete"


def test_store_declined_marks_step_error():
    class DecliningMemory(InMemoryRecallStore):
        async def store(self, item, decision):
            return False

    item = _item()
    run = asyncio.run(_orchestrator(FakeServices(), memory=DecliningMemory()).run(item, _front()))
    assert _status(run)["store"] == "error"
    assert item.status == "graded"
    assert item.decision == run.decision.to_dict()


def test_enrichment_value_in_millions():
    class MillionPricing(FakeServices):
        async def query_engine(self, engine_id, prompt):
            if engine_id == "pricing":
                return "About $1.5 million at CGC 9.0 for a key Golden Age book"
            return await super().query_engine(engine_id, prompt)

    item = _item(title="Action Comics", issue="1", year=1938, key_issue=True)
    run = asyncio.run(_orchestrator(MillionPricing()).run(item, _front()))
    assert run.decision.value_source == "enrichment"
    assert item.estimated_value == 1_500_000


def test_batch_does_not_pause_after_last_gradable_item(monkeypatch):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    monkeypatch.setattr("comicgrade.orchestrator.asyncio.sleep", fake_sleep)
    items = [
        _item(item_id="a", title="X-Men", issue="1"),
        _item(item_id="b", title="Hulk", issue="181"),
        _item(item_id="c", title="", issue="2"),
    ]
    runs = asyncio.run(_orchestrator(FakeServices(), batch_pause=1.5).grade_batch(items))
    assert [r.item.item_id for r in runs] == ["a", "b"]
    assert sleeps == [1.5]
