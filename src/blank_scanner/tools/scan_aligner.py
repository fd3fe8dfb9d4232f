#!/usr/bin/env python3
"""
Calibration helpers
===================

The calibration UI (placing/dragging the 4 markers on the photo) lives outside
this package. What it needs from us:

  1) detect_markers(image)     -> Markers | None
     Automatic placement: find the four filled square fiducials printed near
     the sheet corners.
  2) click_to_ideal / locate_click
     Map a click on the photo back into ideal sheet space (inverse homography)
     and to the (question, option) bubble under it, for manual correction.
  3) read_sheet_code(image)    -> str | None
     The blank carries a QR code identifying the test; tried in 4 rotations.

Marker detection works on an Otsu-binarized luminance image and keeps external
contours that look like solid dark squares of plausible size, then picks the
candidate nearest each image corner and sanity-checks the resulting quad.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2 as cv
import numpy as np

from ..pixel_buffer import PixelBuffer
from .homography import (
    estimate_homography,
    invert_homography,
    project_photo_to_ideal,
    unit_square,
)
from .sheet_layout import AnswerSheetLayout, Marker, Markers

log = logging.getLogger(__name__)

MIN_SIDE_FRAC = 0.012     # marker side vs shorter image side
MAX_SIDE_FRAC = 0.15
MIN_DENSITY = 0.35        # dark pixels / bounding box
MAX_MEAN_GRAY = 120       # markers are printed solid black
MIN_SPAN_FRAC = 0.30      # quad must cover this much of the image each way
MAX_EDGE_RATIO = 1.4


@dataclass(frozen=True)
class SquareCandidate:
    cx: float
    cy: float
    w: int
    h: int
    area: int

# -------------------------
# Marker detection
# -------------------------

def find_square_candidates(gray: np.ndarray) -> List[SquareCandidate]:
    """All solid dark square blobs of marker-like size."""
    H, W = gray.shape[:2]
    blur = cv.GaussianBlur(gray, (5, 5), 0)
    _, binary = cv.threshold(blur, 0, 255, cv.THRESH_BINARY_INV + cv.THRESH_OTSU)
    contours, _ = cv.findContours(binary, cv.RETR_EXTERNAL, cv.CHAIN_APPROX_SIMPLE)

    min_side = min(W, H)
    min_size = max(3, int(min_side * MIN_SIDE_FRAC))
    max_size = int(min_side * MAX_SIDE_FRAC)

    found: List[SquareCandidate] = []
    rejected = {"size": 0, "aspect": 0, "shape": 0, "density": 0, "bright": 0}
    for c in contours:
        x, y, w, h = cv.boundingRect(c)
        if w < min_size or h < min_size or w > max_size or h > max_size:
            rejected["size"] += 1
            continue
        if not (0.5 <= w / h <= 2.0):
            rejected["aspect"] += 1
            continue
        peri = cv.arcLength(c, True)
        approx = cv.approxPolyDP(c, 0.04 * peri, True)
        if len(approx) != 4:
            rejected["shape"] += 1
            continue
        crop_bin = binary[y:y + h, x:x + w]
        dark = int(np.count_nonzero(crop_bin))
        if dark / float(w * h) < MIN_DENSITY:
            rejected["density"] += 1
            continue
        if float(gray[y:y + h, x:x + w][crop_bin > 0].mean()) > MAX_MEAN_GRAY:
            rejected["bright"] += 1
            continue
        M = cv.moments(c)
        if M["m00"] > 0:
            cx, cy = M["m10"] / M["m00"], M["m01"] / M["m00"]
        else:
            cx, cy = x + (w - 1) / 2.0, y + (h - 1) / 2.0
        found.append(SquareCandidate(cx, cy, w, h, dark))

    log.debug("square candidates: %d kept, rejected %s", len(found), rejected)
    return found


def select_corner_markers(cands: List[SquareCandidate], W: int, H: int
                          ) -> Optional[Tuple[SquareCandidate, SquareCandidate, SquareCandidate, SquareCandidate]]:
    """Pick tl, tr, bl, br among similar-sized candidates, nearest to each image corner."""
    if len(cands) < 4:
        return None
    avg = sum(c.area for c in cands) / len(cands)
    similar = [c for c in cands if 0.3 < c.area / avg < 3.0]
    if len(similar) < 4:
        log.debug("not enough similar-sized markers (%d)", len(similar))
        return None

    corners = [(0.0, 0.0), (float(W), 0.0), (0.0, float(H)), (float(W), float(H))]
    picks = [min(similar, key=lambda c, k=k: (c.cx - k[0]) ** 2 + (c.cy - k[1]) ** 2) for k in corners]
    tl, tr, bl, br = picks
    if len({id(p) for p in picks}) != 4:
        log.debug("corner markers overlap")
        return None

    top_w, bot_w = tr.cx - tl.cx, br.cx - bl.cx
    left_h, right_h = bl.cy - tl.cy, br.cy - tr.cy
    if min(top_w, bot_w) < W * MIN_SPAN_FRAC or min(left_h, right_h) < H * MIN_SPAN_FRAC:
        log.debug("marker quad too small: widths %.0f/%.0f heights %.0f/%.0f", top_w, bot_w, left_h, right_h)
        return None
    w_ratio, h_ratio = top_w / bot_w, left_h / right_h
    lo = 1.0 / MAX_EDGE_RATIO
    if not (lo <= w_ratio <= MAX_EDGE_RATIO and lo <= h_ratio <= MAX_EDGE_RATIO):
        log.debug("marker quad too skewed: %.2f / %.2f", w_ratio, h_ratio)
        return None
    return tl, tr, bl, br


def detect_markers(image: PixelBuffer) -> Optional[Markers]:
    """Automatic calibration: normalized centres of the 4 corner fiducials, or None."""
    gray = image.luminance()
    H, W = gray.shape[:2]
    picked = select_corner_markers(find_square_candidates(gray), W, H)
    if picked is None:
        log.info("corner markers not found")
        return None
    tl, tr, bl, br = (Marker(c.cx / W, c.cy / H) for c in picked)
    markers = Markers(tl=tl, tr=tr, bl=bl, br=br)
    log.info("corner markers found: %s", markers.to_dict())
    return markers

# -------------------------
# Manual correction
# -------------------------

def click_to_ideal(markers: Markers, image_size: Tuple[int, int], click_px: Tuple[float, float]) -> Tuple[float, float]:
    """Photo pixel -> ideal sheet space, through the inverse homography."""
    w, h = image_size
    H = estimate_homography(unit_square(), markers.to_pixels(w, h))
    return project_photo_to_ideal(invert_homography(H), click_px)


def locate_click(markers: Markers, image_size: Tuple[int, int], click_px: Tuple[float, float],
                 layout: AnswerSheetLayout) -> Optional[Tuple[int, int]]:
    """(question, option) under a click on the photo, or None outside the grid."""
    return layout.nearest_cell(click_to_ideal(markers, image_size, click_px))

# -------------------------
# Sheet code
# -------------------------

def read_sheet_code(image: PixelBuffer) -> Optional[str]:
    detector = cv.QRCodeDetector()
    bgr = image.bgr()
    for rot in (None, cv.ROTATE_90_CLOCKWISE, cv.ROTATE_180, cv.ROTATE_90_COUNTERCLOCKWISE):
        img = bgr if rot is None else cv.rotate(bgr, rot)
        text, _points, _ = detector.detectAndDecode(img)
        if text:
            log.debug("sheet code found (rotation=%s)", rot)
            return text
    return None
