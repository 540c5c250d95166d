import base64
import io

import numpy as np
from fastapi.testclient import TestClient
from PIL import Image

from comicgrade.api import app
from comicgrade.memory_store import InMemoryRecallStore


client = TestClient(app)


def _png_b64(arr: np.ndarray, data_url: bool = False) -> str:
    buf = io.BytesIO()
    Image.fromarray(arr).save(buf, format="PNG")
    b64 = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/png;base64,{b64}" if data_url else b64


class QuietServices:
    """Every service answers, with fixed values."""

    async def upload(self, image_bytes, item_id, side):
        return f"{item_id}/{side}"

    async def run_ensemble(self, images, item_context):
        return [{"model": "claude", "grade": 9.4, "confidence": 88}]

    async def consult(self, voice, item_context):
        return {"grade": 8.0, "confidence": 60}

    async def research(self, item_context, current_grade):
        return "comps"

    async def query_engine(self, engine_id, prompt):
        return ""

    async def debate(self, item_context, current_grade, defects, research_text):
        return {"adjustedGrade": current_grade, "rounds": []}

    async def decide(self, item_context, ensemble_grade, debate_grade, defects, research_text, valuation):
        return {"finalGrade": debate_grade}

    async def comment(self, item_context, grade, value, defects):
        return {"text": "Nice."}


def _patch_services(monkeypatch):
    memory = InMemoryRecallStore()
    monkeypatch.setattr("comicgrade.api.get_services", lambda: QuietServices())
    monkeypatch.setattr("comicgrade.api.get_memory_store", lambda: memory)
    return memory


def test_health_endpoint():
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy"}


def test_quality_on_comic_shaped_capture():
    img = np.zeros((100, 100), dtype=np.uint8)
    img[10:90, 20:80] = 255
    resp = client.post("/quality", json={"image": _png_b64(img, data_url=True)})
    assert resp.status_code == 200
    data = resp.json()
    assert data["detected"] is True
    assert data["bounds"] == {"x": 19, "y": 9, "w": 62, "h": 82}
    assert data["cropped"] is True
    assert 0 <= data["overall"] <= 100


def test_quality_rejects_garbage():
    resp = client.post("/quality", json={"image": "bm90IGFuIGltYWdl"})
    assert resp.status_code == 400


def test_grade_requires_title_and_issue(monkeypatch):
    _patch_services(monkeypatch)
    resp = client.post("/grade", json={"title": "X-Men", "issue": "  "})
    assert resp.status_code == 422


def test_grade_without_services_is_unavailable(monkeypatch):
    monkeypatch.setattr("comicgrade.api.get_services", lambda: None)
    resp = client.post("/grade", json={"title": "X-Men", "issue": "1"})
    assert resp.status_code == 503


def test_grade_runs_pipeline_then_hits_cache(monkeypatch):
    _patch_services(monkeypatch)
    front = np.full((40, 30, 3), 200, dtype=np.uint8)
    body = {"title": "X-Men", "issue": "#1", "year": 1963, "front_image": _png_b64(front)}

    first = client.post("/grade", json=body)
    assert first.status_code == 200
    data = first.json()
    assert data["cache_hit"] is False
    assert data["status"] == "graded"
    assert data["grade"] == 9.4
    assert data["grade_label"] == "Near Mint"
    assert [s["id"] for s in data["steps"]][0] == "cache"
    assert len(data["steps"]) == 10
    # 1963 silver age base 25000 x 2.0
    assert data["estimated_value"] == 50_000

    second = client.post("/grade", json={"title": "x-men", "issue": "1"})
    again = second.json()
    assert again["cache_hit"] is True
    assert again["grade"] == 9.4
    assert again["decision"] is None


def test_collection_stats_endpoint():
    items = [
        {"title": "A", "issue": "1", "grade": 9.0, "estimated_value": 100, "status": "graded"},
        {"title": "B", "issue": "2"},
    ]
    resp = client.post("/collection/stats", json={"items": items})
    assert resp.status_code == 200
    data = resp.json()
    assert data["total"] == 2
    assert data["graded"] == 1
    assert data["total_value"] == 100
    assert data["avg_grade"] == 9.0
