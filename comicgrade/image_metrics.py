from __future__ import annotations

"""
Deterministic capture analysis for the grading pipeline.

Everything here works directly on a PixelBuffer with numpy and never calls
out to a model or a service:

* detect_border(buffer) -> BorderDetectionResult
    Sobel edge map, 90th-percentile threshold, bounding box of the strong
    edges, then size / aspect / coverage checks for a comic-shaped rectangle.

* score_quality(buffer) -> QualityScore
    Brightness, contrast and Laplacian sharpness folded into one 0-100 score.

* assess_capture(buffer) -> CaptureAssessment
    Border detection, crop when the border is found (full frame otherwise),
    then quality scoring and the usable gate.
"""

import numpy as np
from loguru import logger

from .config import (
    BORDER_ASPECT_MAX,
    BORDER_ASPECT_MIN,
    BORDER_MIN_CONFIDENCE,
    BORDER_MIN_FRACTION,
    EDGE_PERCENTILE,
    QUALITY_GATE_MIN,
    QUALITY_WEIGHTS,
)
from .pipeline_types import (
    BorderDetectionResult,
    Bounds,
    CaptureAssessment,
    PixelBuffer,
    QualityScore,
)
from .utils.numbers import clamp, round_half_up


# ---------------------------------------------------------------------------
# Low-level helpers
# ---------------------------------------------------------------------------


def to_luminance(buffer: PixelBuffer) -> np.ndarray:
    """Float luminance map, 0.299R + 0.587G + 0.114B."""
    return buffer.luminance()


def sobel_magnitude(lum: np.ndarray) -> np.ndarray:
    """
    Gradient magnitude from a 3x3 Sobel operator on interior pixels.

    Returns an array of shape (H-2, W-2); entry [i, j] belongs to image
    pixel (row i+1, col j+1). Images thinner than 3 pixels give an empty map.
    """
    h, w = lum.shape
    if h < 3 or w < 3:
        return np.zeros((0, 0), dtype="float64")

    tl = lum[:-2, :-2]
    tc = lum[:-2, 1:-1]
    tr = lum[:-2, 2:]
    ml = lum[1:-1, :-2]
    mr = lum[1:-1, 2:]
    bl = lum[2:, :-2]
    bc = lum[2:, 1:-1]
    br = lum[2:, 2:]

    gx = (tr + 2.0 * mr + br) - (tl + 2.0 * ml + bl)
    gy = (bl + 2.0 * bc + br) - (tl + 2.0 * tc + tr)
    return np.sqrt(gx * gx + gy * gy)


def laplacian(lum: np.ndarray) -> np.ndarray:
    """4-neighbour discrete Laplacian on interior pixels."""
    h, w = lum.shape
    if h < 3 or w < 3:
        return np.zeros((0, 0), dtype="float64")
    center = lum[1:-1, 1:-1]
    return lum[:-2, 1:-1] + lum[2:, 1:-1] + lum[1:-1, :-2] + lum[1:-1, 2:] - 4.0 * center


def _percentile_value(values: np.ndarray, q: float) -> float:
    """Value at sorted index floor(q * n)."""
    flat = np.sort(values, axis=None)
    idx = min(int(np.floor(q * flat.size)), flat.size - 1)
    return float(flat[idx])


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def detect_border(buffer: PixelBuffer) -> BorderDetectionResult:
    """
    Infer the rectangular extent of the item within the frame.

    The box must span at least 20% of the image in both directions, be
    height-dominant (w/h in [0.5, 0.9]) and score a confidence above 30
    to count as detected.
    """
    mag = sobel_magnitude(to_luminance(buffer))
    if mag.size == 0:
        return BorderDetectionResult(detected=False, confidence=0)

    threshold = _percentile_value(mag, EDGE_PERCENTILE)
    rows, cols = np.nonzero(mag > threshold)
    edge_count = int(rows.size)
    if edge_count == 0:
        # uniform frame: no gradient rises above the threshold
        return BorderDetectionResult(detected=False, confidence=0)

    # interior offset: map index -> image coordinates
    x0, x1 = int(cols.min()) + 1, int(cols.max()) + 1
    y0, y1 = int(rows.min()) + 1, int(rows.max()) + 1
    box = Bounds(x=x0, y=y0, w=x1 - x0 + 1, h=y1 - y0 + 1)

    if box.w < BORDER_MIN_FRACTION * buffer.width or box.h < BORDER_MIN_FRACTION * buffer.height:
        return BorderDetectionResult(detected=False, confidence=0)

    aspect = box.w / box.h
    accepted = BORDER_ASPECT_MIN <= aspect <= BORDER_ASPECT_MAX

    area_coverage = box.area / float(buffer.width * buffer.height)
    edge_density = edge_count / float(box.area)
    confidence = min(100, round_half_up(area_coverage * 100 + edge_density * 50))

    detected = accepted and confidence > BORDER_MIN_CONFIDENCE
    return BorderDetectionResult(
        detected=detected,
        confidence=confidence,
        bounds=box if detected else None,
    )


def score_quality(buffer: PixelBuffer) -> QualityScore:
    """
    Composite capture quality. Degenerate frames (all black / all white)
    just score low; there is no error path.
    """
    lum = to_luminance(buffer)
    if lum.size == 0:
        return QualityScore(sharpness=0.0, brightness=0.0, contrast=0.0, overall=0)

    mean = float(lum.mean())
    brightness = clamp(100.0 - abs(mean - 128.0) * 1.5, 0.0, 100.0)

    std = float(lum.std())  # population std (ddof=0)
    contrast = min(100.0, std * 1.5)

    lap = laplacian(lum)
    lap_var = float(np.mean(lap * lap)) if lap.size else 0.0
    sharpness = min(100.0, lap_var / 10.0)

    overall = round_half_up(
        QUALITY_WEIGHTS["sharpness"] * sharpness
        + QUALITY_WEIGHTS["brightness"] * brightness
        + QUALITY_WEIGHTS["contrast"] * contrast
    )
    return QualityScore(
        sharpness=round(sharpness, 2),
        brightness=round(brightness, 2),
        contrast=round(contrast, 2),
        overall=int(clamp(overall, 0, 100)),
    )


def assess_capture(buffer: PixelBuffer) -> CaptureAssessment:
    """Border detection, optional crop, then the quality gate."""
    border = detect_border(buffer)
    target = buffer
    cropped = False
    if border.detected and border.bounds is not None:
        target = buffer.crop(border.bounds)
        cropped = True
    else:
        logger.info(
            "Border not detected (confidence={}); scoring full {}x{} frame",
            border.confidence, buffer.width, buffer.height,
        )

    quality = score_quality(target)
    usable = quality.overall >= QUALITY_GATE_MIN
    if not usable:
        logger.warning("Capture below quality gate: overall={} < {}", quality.overall, QUALITY_GATE_MIN)
    return CaptureAssessment(border=border, quality=quality, cropped=cropped, usable=usable)
