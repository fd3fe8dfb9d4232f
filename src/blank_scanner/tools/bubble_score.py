#!/usr/bin/env python3
"""
bubble_score.py
---------------
Per-cell fill scoring and per-question answer resolution for 5-option blanks.

Scoring (classify_cell):
- sample the inner disk of a projected bubble (skip the printed ring),
- estimate local paper brightness from an annulus just outside the bubble,
- fill ratio = fraction of inner pixels darker than dark_ratio * background.

Resolution (resolve_question):
- blank:     darkest bubble below min_fill                -> None, moderate confidence
- ambiguous: darkest bubble lacks min_margin over second   -> None, low confidence
- marked:    otherwise                                     -> option index, high confidence
"""

from __future__ import annotations
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from blank_scanner.scoring_defaults import DEFAULTS, ScoringDefaults
from .homography import local_jacobian
from .sheet_layout import AnswerSheetLayout, option_label

log = logging.getLogger(__name__)

MARKED = "marked"
BLANK = "blank"
AMBIGUOUS = "ambiguous"

RING_INNER = 1.25   # background annulus, in bubble radii
RING_OUTER = 1.75
MIN_RING_PIXELS = 8
MIN_INNER_PIXELS = 4

# ------------------------------------------------------------------------------
# Types
# ------------------------------------------------------------------------------

@dataclass(frozen=True)
class CellScore:
    question_index: int
    option_index: int
    fill_ratio: float


@dataclass(frozen=True)
class QuestionResolution:
    answer: Optional[int]
    confidence: float
    status: str
    fills: Tuple[float, ...]


@dataclass(frozen=True)
class ScanResult:
    success: bool
    answers: Tuple[Optional[int], ...] = ()
    confidence: float = 0.0
    error: Optional[str] = None
    statuses: Tuple[str, ...] = ()
    fill_ratios: Tuple[Tuple[float, ...], ...] = ()
    geometry_quality: float = 0.0
    method: Optional[str] = None
    low_confidence: bool = False
    sheet_code: Optional[str] = None

    def __post_init__(self):
        if not (0.0 <= self.confidence <= 1.0):
            raise ValueError(f"confidence {self.confidence} outside [0, 1]")
        if not self.success and (self.answers or not self.error):
            raise ValueError("A failed ScanResult carries an error and no answers")

    @classmethod
    def failed(cls, error: str) -> "ScanResult":
        return cls(success=False, error=error)

    @property
    def letters(self) -> List[str]:
        return [option_label(a) for a in self.answers]

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "answers": list(self.answers),
            "letters": self.letters,
            "confidence": round(self.confidence, 4),
            "error": self.error,
            "statuses": list(self.statuses),
            "fill_ratios": [[round(f, 4) for f in row] for row in self.fill_ratios],
            "geometry_quality": round(self.geometry_quality, 4),
            "method": self.method,
            "low_confidence": self.low_confidence,
            "sheet_code": self.sheet_code,
        }

# ------------------------------------------------------------------------------
# Scoring primitives
# ------------------------------------------------------------------------------

def cell_radius_px(H: np.ndarray, ideal_pt: Tuple[float, float], layout: AnswerSheetLayout) -> float:
    """
    Bubble radius in pixels at ideal_pt: project one option pitch and one row
    pitch through the local Jacobian, take the shorter, scale by bubble_ratio.
    """
    J = local_jacobian(H, ideal_pt)
    sx = float(np.linalg.norm(J @ np.array([layout.option_pitch, 0.0])))
    sy = float(np.linalg.norm(J @ np.array([0.0, layout.row_pitch])))
    return layout.bubble_ratio * min(sx, sy)


def classify_cell(
    gray: np.ndarray,
    center_px: Tuple[float, float],
    radius_px: float,
    inner_radius_ratio: float = DEFAULTS.inner_radius_ratio,
    dark_ratio: float = DEFAULTS.dark_ratio,
    fallback_background: Optional[float] = None,
) -> float:
    """
    Return a [0..1] fill ratio for the bubble centred at center_px.

    gray: HxW luminance image (uint8 or float).
    fallback_background: paper brightness to use when the annulus falls
    mostly outside the image (bubbles hugging the photo edge).
    """
    H, W = gray.shape[:2]
    cx, cy = float(center_px[0]), float(center_px[1])
    r = max(1.0, float(radius_px))
    r_out = r * RING_OUTER

    # clip window to the image
    x0 = max(0, int(math.floor(cx - r_out)))
    y0 = max(0, int(math.floor(cy - r_out)))
    x1 = min(W, int(math.ceil(cx + r_out)) + 1)
    y1 = min(H, int(math.ceil(cy + r_out)) + 1)
    if x1 <= x0 or y1 <= y0:
        return 0.0

    crop = gray[y0:y1, x0:x1].astype(np.float32)
    yy, xx = np.mgrid[y0:y1, x0:x1]
    d2 = (xx - cx) ** 2 + (yy - cy) ** 2

    inner = crop[d2 <= (r * inner_radius_ratio) ** 2]
    if inner.size < MIN_INNER_PIXELS:
        return 0.0

    ring = crop[(d2 >= (r * RING_INNER) ** 2) & (d2 <= r_out ** 2)]
    if ring.size >= MIN_RING_PIXELS:
        background = float(np.median(ring))
    elif fallback_background is not None:
        background = float(fallback_background)
    else:
        background = 255.0

    threshold = dark_ratio * background
    filled_fraction = float(np.count_nonzero(inner < threshold)) / float(inner.size)
    return max(0.0, min(1.0, filled_fraction))

# ------------------------------------------------------------------------------
# Resolution
# ------------------------------------------------------------------------------

def resolve_question(scores: Sequence[CellScore], scoring: ScoringDefaults = DEFAULTS) -> QuestionResolution:
    """
    Pick one option (or None) from the 5 CellScores of a single question.
    Confidence is continuous in the top fill and the top-vs-second margin.
    """
    if not scores:
        raise ValueError("resolve_question needs at least one CellScore")
    ordered = sorted(scores, key=lambda s: s.option_index)
    fills = np.array([s.fill_ratio for s in ordered], dtype=float)

    # Indices that would sort descending; stable so ties keep option order
    order = np.argsort(-fills, kind="stable")
    best_idx = int(order[0])
    top = float(fills[best_idx])
    second = float(fills[order[1]]) if fills.size > 1 else 0.0
    margin = top - second
    fills_t = tuple(float(f) for f in fills)

    # Blank rule: require a minimum absolute fill
    if top < scoring.min_fill:
        span = scoring.skip_confidence - scoring.skip_confidence_floor
        conf = scoring.skip_confidence_floor + span * (1.0 - top / scoring.min_fill)
        return QuestionResolution(None, _clip01(conf), BLANK, fills_t)

    # Separation rule: a smudge or a second mark close to the top one
    if margin < scoring.min_margin:
        conf = scoring.ambiguous_confidence * margin / scoring.min_margin
        return QuestionResolution(None, _clip01(conf), AMBIGUOUS, fills_t)

    conf = 0.7 + 0.3 * margin / scoring.strong_margin
    return QuestionResolution(ordered[best_idx].option_index, _clip01(conf), MARKED, fills_t)


def aggregate(
    resolutions: Sequence[QuestionResolution],
    geometry_quality: float,
    scoring: ScoringDefaults = DEFAULTS,
    method: Optional[str] = None,
) -> ScanResult:
    """
    Fold per-question evidence into one ScanResult.
    confidence = (1 - w) * mean(question confidence) + w * geometry_quality
    """
    if resolutions:
        mean_q = float(np.mean([r.confidence for r in resolutions]))
    else:
        mean_q = 0.0
    w = scoring.geometry_weight
    confidence = _clip01((1.0 - w) * mean_q + w * _clip01(geometry_quality))

    return ScanResult(
        success=True,
        answers=tuple(r.answer for r in resolutions),
        confidence=confidence,
        statuses=tuple(r.status for r in resolutions),
        fill_ratios=tuple(r.fills for r in resolutions),
        geometry_quality=_clip01(geometry_quality),
        method=method,
        low_confidence=confidence < scoring.min_confidence,
    )


def log_resolution(q: int, res: QuestionResolution) -> None:
    """Debug line per question; close calls that still resolved are flagged."""
    if not log.isEnabledFor(logging.DEBUG):
        return
    srt = sorted(res.fills, reverse=True)
    close = res.status == MARKED and len(srt) > 1 and srt[1] > 0.30 and (srt[0] - srt[1]) < 0.25
    fill_str = " ".join(f"{100 * f:3.0f}" for f in res.fills)
    label = option_label(res.answer) or res.status
    log.debug("Q%02d [%s] -> %s (%.2f)%s", q + 1, fill_str, label, res.confidence, "  close!" if close else "")


def _clip01(v: float) -> float:
    return float(min(1.0, max(0.0, v)))
