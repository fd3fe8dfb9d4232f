# src/blank_scanner/scan_core.py
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np

from .errors import GeometryError, ImageDecodeError, InvalidTransitionError
from .pixel_buffer import ImageSource, load_image
from .scoring_defaults import DEFAULTS, ScoringDefaults
from .tools.bubble_score import (
    CellScore,
    QuestionResolution,
    ScanResult,
    aggregate,
    cell_radius_px,
    classify_cell,
    log_resolution,
    resolve_question,
)
from .tools.homography import estimate_homography, marker_quality, project_points, unit_square
from .tools.scan_aligner import read_sheet_code
from .tools.sheet_layout import AnswerSheetLayout, LayoutParams, Markers, build_layout

log = logging.getLogger(__name__)

METHOD_HOMOGRAPHY = "homography"
METHOD_RATIO = "ratio"


def resolve_homography(markers: Optional[Markers], width: int, height: int) -> Tuple[np.ndarray, str, float]:
    """
    Ideal -> photo mapping plus its provenance and geometry quality.

    With markers: DLT from the unit square onto the marker centres (pixels).
    Without: legacy ratio fallback, the unit square stretched over the photo,
    which is a perfect rectangle by construction.
    """
    corners_px = np.array([[0.0, 0.0], [width, 0.0], [0.0, height], [width, height]], dtype=np.float64)
    if markers is None:
        return estimate_homography(unit_square(), corners_px), METHOD_RATIO, 1.0
    photo_pts = markers.to_pixels(width, height)
    H = estimate_homography(unit_square(), photo_pts)
    return H, METHOD_HOMOGRAPHY, marker_quality(photo_pts)


def project_layout(H: np.ndarray, layout: AnswerSheetLayout) -> Tuple[np.ndarray, np.ndarray]:
    """
    Pixel centres (n, 5, 2) and per-cell sampling radii (n, 5) for every bubble.
    """
    ideal = layout.centers()
    photo = project_points(H, ideal)
    radii = np.zeros(ideal.shape[:2], dtype=np.float64)
    for q in range(ideal.shape[0]):
        for o in range(ideal.shape[1]):
            radii[q, o] = cell_radius_px(H, (ideal[q, o, 0], ideal[q, o, 1]), layout)
    return photo, radii


def scan_blank(
    image: ImageSource,
    markers: Optional[Markers],
    layout_params: LayoutParams,
    scoring: ScoringDefaults = DEFAULTS,
    read_code: bool = False,
) -> ScanResult:
    """
    One pure pass: decode -> homography -> layout -> classify every cell ->
    resolve every question -> aggregate.

    markers override layout_params.grid_bounds.markers; with neither, the
    legacy ratio grid over the whole photo is used. With read_code the printed QR
    sheet code (if any) is attached to a successful result. Degenerate markers and
    undecodable images come back as a failed ScanResult, never as an exception.
    """
    markers = markers if markers is not None else layout_params.grid_bounds.markers
    try:
        buf = load_image(image)
        gray = buf.luminance()
        H, method, quality = resolve_homography(markers, buf.width, buf.height)
    except ImageDecodeError as e:
        log.warning("scan failed, image could not be decoded: %s", e)
        return ScanResult.failed(f"Image could not be decoded: {e}")
    except GeometryError as e:
        log.warning("scan failed, bad calibration: %s", e)
        return ScanResult.failed(f"Calibration markers are unusable: {e}")
    log.info("scan start: %dx%d px, %d questions, method=%s", buf.width, buf.height,
             layout_params.question_count, method)

    layout = build_layout(layout_params.question_count, layout_params.grid_bounds)
    try:
        centers, radii = project_layout(H, layout)
    except GeometryError as e:
        log.warning("scan failed, grid does not project into the photo: %s", e)
        return ScanResult.failed(f"Calibration markers are unusable: {e}")

    paper = float(np.percentile(gray, 90))
    resolutions: List[QuestionResolution] = []
    for q in range(layout.question_count):
        cells = [
            CellScore(q, o, classify_cell(
                gray, (centers[q, o, 0], centers[q, o, 1]), radii[q, o],
                inner_radius_ratio=scoring.inner_radius_ratio,
                dark_ratio=scoring.dark_ratio,
                fallback_background=paper,
            ))
            for o in range(layout.options_per_question)
        ]
        res = resolve_question(cells, scoring)
        log_resolution(q, res)
        resolutions.append(res)
    del gray

    result = aggregate(resolutions, quality, scoring, method=method)
    if read_code:
        result = replace(result, sheet_code=read_sheet_code(buf))
    answered = sum(a is not None for a in result.answers)
    log.info("scan done: %d/%d answered, confidence=%.3f, geometry=%.3f",
             answered, layout.question_count, result.confidence, result.geometry_quality)
    if result.low_confidence:
        log.warning("low-confidence scan (%.2f < %.2f); review before saving",
                    result.confidence, scoring.min_confidence)
    return result


# ------------------------------------------------------------------------------
# Per-attempt state machine
# ------------------------------------------------------------------------------

class ScanState(str, Enum):
    IDLE = "idle"
    CALIBRATED = "calibrated"
    SCANNING = "scanning"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL = (ScanState.SUCCEEDED, ScanState.FAILED)


@dataclass(frozen=True)
class ScanAttempt:
    """
    Immutable value threaded through Idle -> Calibrated -> Scanning -> {Succeeded|Failed}.
    Every transition returns a new attempt; a retry is a fresh calibrate(), never a resume.
    """
    state: ScanState = ScanState.IDLE
    markers: Optional[Markers] = None
    result: Optional[ScanResult] = None

    def calibrate(self, markers: Markers) -> "ScanAttempt":
        # new markers discard whatever this attempt had
        if markers is None:
            raise InvalidTransitionError("calibrate() needs 4 markers")
        return ScanAttempt(state=ScanState.CALIBRATED, markers=markers)

    def start(self) -> "ScanAttempt":
        if self.state is not ScanState.CALIBRATED:
            raise InvalidTransitionError(f"cannot start scanning from {self.state.value}")
        return replace(self, state=ScanState.SCANNING)

    def complete(self, result: ScanResult) -> "ScanAttempt":
        if self.state is not ScanState.SCANNING:
            raise InvalidTransitionError(f"cannot complete from {self.state.value}")
        state = ScanState.SUCCEEDED if result.success else ScanState.FAILED
        return replace(self, state=state, result=result)

    def scan(self, image: ImageSource, layout_params: LayoutParams,
             scoring: ScoringDefaults = DEFAULTS, read_code: bool = False) -> "ScanAttempt":
        scanning = self.start()
        return scanning.complete(
            scan_blank(image, scanning.markers, layout_params, scoring, read_code=read_code))

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL
