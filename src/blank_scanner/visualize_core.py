# src/blank_scanner/visualize_core.py

from __future__ import annotations
import json
import logging
from pathlib import Path
from typing import Optional, Tuple

import cv2 as cv
import numpy as np

from .pixel_buffer import ImageSource, load_image
from .scan_core import project_layout, resolve_homography
from .tools.bubble_score import AMBIGUOUS, BLANK, MARKED, ScanResult
from .tools.sheet_layout import LayoutParams, Markers, build_layout

log = logging.getLogger(__name__)

# BGR
OUTLINE = (246, 130, 59)
CHOSEN = (94, 197, 34)
AMBIG = (38, 38, 220)
SKIPPED = (11, 158, 245)
MARKER = (38, 38, 220)


def _fit(img_bgr: np.ndarray, max_size: int) -> np.ndarray:
    """Downscale so the longer side is <= max_size; always returns a new array."""
    h, w = img_bgr.shape[:2]
    ratio = min(1.0, max_size / float(max(w, h)))
    if ratio >= 1.0:
        return img_bgr.copy()
    size = (max(1, int(round(w * ratio))), max(1, int(round(h * ratio))))
    return cv.resize(img_bgr, size, interpolation=cv.INTER_AREA)


def _caption(img_bgr: np.ndarray, text: str, color=(0, 255, 255)) -> None:
    cv.putText(img_bgr, text, (10, 24), cv.FONT_HERSHEY_SIMPLEX, 0.6, (0, 0, 0), 3, cv.LINE_AA)
    cv.putText(img_bgr, text, (10, 24), cv.FONT_HERSHEY_SIMPLEX, 0.6, color, 1, cv.LINE_AA)


def _draw_markers(img_bgr: np.ndarray, markers: Markers) -> None:
    h, w = img_bgr.shape[:2]
    half = max(2, int(min(w, h) * 0.025 / 2))
    for x, y in markers.to_pixels(w, h):
        p0 = (int(round(x)) - half, int(round(y)) - half)
        p1 = (int(round(x)) + half, int(round(y)) + half)
        cv.rectangle(img_bgr, p0, p1, MARKER, 2, lineType=cv.LINE_AA)


def create_scan_preview(
    image: ImageSource,
    result: ScanResult,
    layout_params: LayoutParams,
    markers: Optional[Markers] = None,
    max_size: int = 800,
    alpha: float = 0.45,
) -> np.ndarray:
    """
    Draw the photo with the projected grid for human sign-off.

    - every bubble outlined in blue
    - chosen option filled green
    - ambiguous question: all 5 options filled red
    - skipped question: all 5 options outlined amber
    Returns a new BGR image; neither `image` nor `result` is touched.
    """
    canvas = _fit(load_image(image).bgr(), max_size)
    h, w = canvas.shape[:2]
    markers = markers if markers is not None else layout_params.grid_bounds.markers
    if markers is not None:
        _draw_markers(canvas, markers)

    if not result.success:
        _caption(canvas, f"scan failed: {result.error}", color=AMBIG)
        return canvas

    layout = build_layout(layout_params.question_count, layout_params.grid_bounds)
    if len(result.answers) != layout.question_count:
        raise ValueError(f"result has {len(result.answers)} answers, layout expects {layout.question_count}")

    H, _method, _q = resolve_homography(markers, w, h)
    centers, radii = project_layout(H, layout)

    def _pt(q: int, o: int) -> Tuple[int, int]:
        return int(round(centers[q, o, 0])), int(round(centers[q, o, 1]))

    def _r(q: int, o: int) -> int:
        return max(2, int(round(radii[q, o])))

    overlay = canvas.copy()
    for q in range(layout.question_count):
        status = result.statuses[q] if q < len(result.statuses) else BLANK
        answer = result.answers[q]
        for o in range(layout.options_per_question):
            cv.circle(canvas, _pt(q, o), _r(q, o), OUTLINE, 1, lineType=cv.LINE_AA)
            if status == AMBIGUOUS:
                cv.circle(overlay, _pt(q, o), _r(q, o), AMBIG, -1, lineType=cv.LINE_AA)
            elif status == BLANK:
                cv.circle(canvas, _pt(q, o), _r(q, o), SKIPPED, 1, lineType=cv.LINE_AA)
        if status == MARKED and answer is not None:
            cv.circle(overlay, _pt(q, answer), _r(q, answer), CHOSEN, -1, lineType=cv.LINE_AA)
            cv.circle(canvas, _pt(q, answer), _r(q, answer), CHOSEN, 2, lineType=cv.LINE_AA)

    out = cv.addWeighted(overlay, alpha, canvas, 1.0 - alpha, 0.0)
    flag = "  REVIEW" if result.low_confidence else ""
    _caption(out, f"confidence {result.confidence:.2f} ({result.method}){flag}")
    return out


def export_error_report(
    preview_bgr: np.ndarray,
    result: ScanResult,
    out_dir: str | Path,
    stem: str = "scan",
    max_side: int = 600,
) -> Tuple[Path, Path]:
    """
    Snapshot for a user-flagged misscan: a downscaled PNG of the rendered
    preview plus the detected answers as JSON. Returns (png_path, json_path).
    """
    out = Path(out_dir).expanduser().resolve()
    out.mkdir(parents=True, exist_ok=True)
    png_path = out / f"{stem}_preview.png"
    json_path = out / f"{stem}_result.json"

    small = _fit(preview_bgr, max_side)
    if not cv.imwrite(str(png_path), small):
        raise OSError(f"Could not write {png_path}")
    payload = result.to_dict()
    payload["preview"] = png_path.name
    json_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    log.info("error report written: %s, %s", png_path, json_path)
    return png_path, json_path
