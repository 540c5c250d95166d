import asyncio
import json

import httpx
import pytest

from comicgrade.collaborators import RemoteServices, best_effort
from comicgrade.memory_store import InMemoryRecallStore
from comicgrade.pipeline_types import GradableItem
from comicgrade.voices import Voice


def _services(handler):
    return RemoteServices("https://grading.test", token="t0k", transport=httpx.MockTransport(handler))


def test_best_effort_returns_value_or_fallback():
    async def ok():
        return 42

    async def boom():
        raise ValueError("bad payload")

    async def slow():
        await asyncio.sleep(1)
        return "late"

    async def scenario():
        return (
            await best_effort(ok(), 0, "ok"),
            await best_effort(boom(), 0, "boom"),
            await best_effort(slow(), "fallback", "slow", timeout=0.01),
        )

    good, bad, late = asyncio.run(scenario())
    assert good.ok and good.value == 42
    assert not bad.ok and bad.value == 0 and "bad payload" in bad.error
    assert not late.ok and late.value == "fallback" and late.error == "timeout"


def test_remote_services_requires_url():
    with pytest.raises(ValueError):
        RemoteServices("")


def test_remote_services_posts_json_with_auth():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, request.headers.get("authorization"), json.loads(request.content)))
        if request.url.path == "/vision/ensemble":
            return httpx.Response(200, json={"results": [{"model": "claude", "grade": 9.2}]})
        if request.url.path == "/advisors/sage":
            return httpx.Response(200, text="grade: 9.0")
        if request.url.path == "/engines/pricing":
            return httpx.Response(200, json={"result": "$1,000"})
        return httpx.Response(404)

    async def scenario():
        async with _services(handler) as svc:
            ensemble = await svc.run_ensemble({"front": b"abc"}, {"title": "X"})
            advice = await svc.consult(Voice.SAGE, {"title": "X"})
            price = await svc.query_engine("pricing", "how much?")
            return ensemble, advice, price

    ensemble, advice, price = asyncio.run(scenario())
    assert ensemble == [{"model": "claude", "grade": 9.2}]
    assert advice == "grade: 9.0"
    assert price == "$1,000"
    assert seen[0][1] == "Bearer t0k"
    assert seen[0][2]["images"]["front"] == "YWJj"
    assert seen[1][2]["model"] == "claude"


def test_remote_services_raises_on_http_error():
    def handler(request):
        return httpx.Response(503)

    async def scenario():
        async with _services(handler) as svc:
            return await best_effort(svc.research({"title": "X"}, 8.0), "", "research")

    res = asyncio.run(scenario())
    assert res.ok is False
    assert "503" in res.error
    assert res.value == ""


def test_remote_recall_without_grade_is_a_miss():
    def handler(request):
        return httpx.Response(200, json={"grade": None})

    async def scenario():
        async with _services(handler) as svc:
            return await svc.recall("X-Men", "1")

    assert asyncio.run(scenario()) is None


def test_in_memory_store_round_trip_by_identity():
    store = InMemoryRecallStore()
    item = GradableItem(item_id="1", title="X-Men", issue="#1")

    async def scenario():
        assert await store.recall("X-Men", "1") is None
        await store.store(item, {"grade": 8.5, "confidence": 77, "defects": ["spine_roll"]})
        return await store.recall("x-men ", "#1")

    record = asyncio.run(scenario())
    assert len(store) == 1
    assert record["grade"] == 8.5
    assert record["defects"] == ["spine_roll"]
    assert "gradedAt" in record
