from __future__ import annotations

"""
FastAPI application for comic grading.

- /quality runs the local border + quality gate on one capture
- /grade drives the full ten-step pipeline for one item
- /collection/stats summarises a list of items
"""

import uuid
from typing import List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from ._singletons import get_memory_store, get_services
from .collection import collection_stats
from .config import (
    CollectionStatsRequest,
    CollectionStatsResponse,
    GradeRequest,
    GradeResponse,
    HealthResponse,
    QualityRequest,
    QualityResponse,
    StepModel,
)
from .image_metrics import assess_capture
from .orchestrator import GradingOrchestrator, ItemIdentityError
from .pipeline_types import CapturedImage, GradableItem, GradingRun
from .utils.images import ImageDecodeError, decode_base64_image, decode_image


# -----------------------
# Helpers
# -----------------------

def _captures_from_request(req: GradeRequest) -> List[CapturedImage]:
    captures: List[CapturedImage] = []
    for side, b64 in (("front", req.front_image), ("back", req.back_image)):
        if not b64:
            continue
        try:
            data = decode_base64_image(b64)
            pixels = decode_image(data) if side == "front" else None
        except ImageDecodeError as e:
            raise HTTPException(status_code=400, detail=f"{side} image: {e}")
        captures.append(CapturedImage(side=side, data=data, pixels=pixels))
    return captures


def _response_from_run(run: GradingRun) -> GradeResponse:
    item, decision = run.item, run.decision
    steps = [StepModel(**s.as_dict()) for s in run.steps]
    return GradeResponse(
        item_id=item.item_id,
        status=item.status,
        cache_hit=run.cache_hit,
        grade=item.grade,
        grade_label=decision.grade_label if decision else None,
        confidence=item.consensus_confidence,
        defects=list(item.defects),
        estimated_value=item.estimated_value,
        decision=decision.to_dict() if decision else None,
        steps=steps,
    )


# -----------------------
# FastAPI app
# -----------------------

app = FastAPI()
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="healthy")


@app.post("/quality", response_model=QualityResponse)
def quality(req: QualityRequest) -> QualityResponse:
    try:
        pixels = decode_image(decode_base64_image(req.image))
    except ImageDecodeError as e:
        raise HTTPException(status_code=400, detail=str(e))

    assessment = assess_capture(pixels)
    border, q = assessment.border, assessment.quality
    return QualityResponse(
        detected=border.detected,
        border_confidence=border.confidence,
        bounds=border.bounds.as_dict() if border.bounds else None,
        sharpness=q.sharpness,
        brightness=q.brightness,
        contrast=q.contrast,
        overall=q.overall,
        cropped=assessment.cropped,
        usable=assessment.usable,
    )


@app.post("/grade", response_model=GradeResponse)
async def grade(req: GradeRequest) -> GradeResponse:
    if not req.title.strip() or not req.issue.strip():
        raise HTTPException(status_code=422, detail="Both title and issue are required")

    services = get_services()
    if services is None:
        raise HTTPException(status_code=503, detail="Grading services not configured")

    item = GradableItem(
        item_id=req.item_id or uuid.uuid4().hex[:12],
        title=req.title.strip(),
        issue=req.issue.strip(),
        publisher=req.publisher,
        year=req.year,
        key_issue=req.key_issue,
        known_defects=list(req.known_defects),
    )
    captures = _captures_from_request(req)

    orchestrator = GradingOrchestrator(services, memory=get_memory_store())
    try:
        run = await orchestrator.run(item, captures)
    except ItemIdentityError as e:
        raise HTTPException(status_code=422, detail=str(e))

    logger.info("POST /grade {} #{} -> {} (cache_hit={})", item.title, item.issue, item.grade, run.cache_hit)
    return _response_from_run(run)


@app.post("/collection/stats", response_model=CollectionStatsResponse)
def stats(req: CollectionStatsRequest) -> CollectionStatsResponse:
    return CollectionStatsResponse(**collection_stats(req.items))
