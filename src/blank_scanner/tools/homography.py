#!/usr/bin/env python3
"""
homography.py
-------------
Projective geometry between "ideal sheet space" and "photo pixel space".

Ideal space is the unit square spanned by the centres of the four printed
corner markers: (0,0)=TL, (1,0)=TR, (0,1)=BL, (1,1)=BR. Photo space is pixels.

  estimate_homography(ideal_pts, photo_pts) -> H (3x3, H[2,2] == 1)
  invert_homography(H)                      -> Hinv (adjugate / determinant)
  project_ideal_to_photo(H, p)              -> (x, y) in pixels
  project_photo_to_ideal(Hinv, p)           -> (x, y) in ideal space

The 4-point Direct Linear Transform is solved exactly (no RANSAC). Degenerate
input raises GeometryError.
"""

from __future__ import annotations
import math
from typing import Sequence, Tuple

import numpy as np

from ..errors import GeometryError

Point = Tuple[float, float]

COLLINEAR_SIN_EPS = 1e-6    # |sin(angle)| below this => three points on a line
MAX_CONDITION = 1e12        # DLT system condition number guard
W_EPS = 1e-12               # homogeneous w this close to 0 => point at infinity

# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def unit_square() -> np.ndarray:
    """Ideal marker corners in tl, tr, bl, br order."""
    return np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [1.0, 1.0]], dtype=np.float64)


def _as_points(pts: Sequence[Point] | np.ndarray, name: str) -> np.ndarray:
    arr = np.asarray(pts, dtype=np.float64)
    if arr.shape != (4, 2):
        raise GeometryError(f"{name}: expected 4 points of (x, y), got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise GeometryError(f"{name}: points must be finite")
    return arr


def check_non_degenerate(pts: np.ndarray, name: str = "points") -> None:
    """Raise GeometryError if any 3 of the 4 points are coincident or collinear."""
    for i in range(4):
        for j in range(i + 1, 4):
            for k in range(j + 1, 4):
                a = pts[j] - pts[i]
                b = pts[k] - pts[i]
                na = math.hypot(a[0], a[1])
                nb = math.hypot(b[0], b[1])
                if na == 0.0 or nb == 0.0:
                    raise GeometryError(f"{name}: coincident points {i}/{j}/{k}")
                sin = abs(a[0] * b[1] - a[1] * b[0]) / (na * nb)
                if sin < COLLINEAR_SIN_EPS:
                    raise GeometryError(f"{name}: points {i}, {j}, {k} are collinear")


def _normalization(pts: np.ndarray) -> np.ndarray:
    """Similarity T moving the centroid to the origin with mean distance sqrt(2)."""
    c = pts.mean(axis=0)
    d = np.sqrt(((pts - c) ** 2).sum(axis=1)).mean()
    s = math.sqrt(2.0) / d if d > 1e-12 else 1.0
    return np.array([[s, 0.0, -s * c[0]],
                     [0.0, s, -s * c[1]],
                     [0.0, 0.0, 1.0]])


def _apply(T: np.ndarray, pts: np.ndarray) -> np.ndarray:
    homo = np.hstack([pts, np.ones((len(pts), 1))]) @ T.T
    return homo[:, :2] / homo[:, 2:3]

# ------------------------------------------------------------------------------
# Estimation
# ------------------------------------------------------------------------------

def estimate_homography(ideal_pts: Sequence[Point] | np.ndarray,
                        photo_pts: Sequence[Point] | np.ndarray) -> np.ndarray:
    """
    Solve H (ideal -> photo) from exactly 4 correspondences.

    Each pair contributes two rows of the 8x8 system obtained from
        x' (h31 x + h32 y + 1) = h11 x + h12 y + h13
        y' (h31 x + h32 y + 1) = h21 x + h22 y + h23
    Both point sets are Hartley-normalized first; the solution is mapped back
    and scaled so H[2,2] == 1.
    """
    src = _as_points(ideal_pts, "ideal points")
    dst = _as_points(photo_pts, "photo points")
    check_non_degenerate(src, "ideal points")
    check_non_degenerate(dst, "photo points")

    Ts = _normalization(src)
    Td = _normalization(dst)
    s = _apply(Ts, src)
    d = _apply(Td, dst)

    A = np.zeros((8, 8), dtype=np.float64)
    b = np.zeros(8, dtype=np.float64)
    for i in range(4):
        x, y = s[i]
        u, v = d[i]
        A[2 * i] = [x, y, 1.0, 0.0, 0.0, 0.0, -u * x, -u * y]
        A[2 * i + 1] = [0.0, 0.0, 0.0, x, y, 1.0, -v * x, -v * y]
        b[2 * i] = u
        b[2 * i + 1] = v

    if np.linalg.cond(A) > MAX_CONDITION:
        raise GeometryError("Homography system is singular for these markers")
    try:
        h = np.linalg.solve(A, b)
    except np.linalg.LinAlgError as e:
        raise GeometryError(f"Homography system could not be solved: {e}") from e

    Hn = np.append(h, 1.0).reshape(3, 3)
    H = np.linalg.inv(Td) @ Hn @ Ts
    if abs(H[2, 2]) < W_EPS:
        raise GeometryError("Homography maps the ideal origin to infinity")
    H = H / H[2, 2]
    if not np.all(np.isfinite(H)):
        raise GeometryError("Homography is not finite")
    return H


def invert_homography(H: np.ndarray) -> np.ndarray:
    """Inverse via adjugate / determinant, rescaled so Hinv[2,2] == 1 when possible."""
    H = np.asarray(H, dtype=np.float64)
    adj = np.array([np.cross(H[1], H[2]),
                    np.cross(H[2], H[0]),
                    np.cross(H[0], H[1])]).T
    det = float(H[0] @ np.cross(H[1], H[2]))
    scale = float(np.abs(H).max()) ** 3 or 1.0
    if abs(det) < 1e-12 * scale:
        raise GeometryError("Homography is not invertible")
    Hinv = adj / det
    if abs(Hinv[2, 2]) > W_EPS:
        Hinv = Hinv / Hinv[2, 2]
    return Hinv

# ------------------------------------------------------------------------------
# Projection
# ------------------------------------------------------------------------------

def project_points(H: np.ndarray, pts: np.ndarray) -> np.ndarray:
    """Vectorized homogeneous multiply-and-divide for an (..., 2) array."""
    pts = np.asarray(pts, dtype=np.float64)
    flat = pts.reshape(-1, 2)
    homo = np.hstack([flat, np.ones((len(flat), 1))]) @ np.asarray(H, dtype=np.float64).T
    w = homo[:, 2]
    if np.any(np.abs(w) < W_EPS):
        raise GeometryError("Point projects to infinity")
    return (homo[:, :2] / w[:, None]).reshape(pts.shape)


def project_ideal_to_photo(H: np.ndarray, p: Point) -> Point:
    x, y = project_points(H, np.array([p], dtype=np.float64))[0]
    return float(x), float(y)


def project_photo_to_ideal(Hinv: np.ndarray, p: Point) -> Point:
    x, y = project_points(Hinv, np.array([p], dtype=np.float64))[0]
    return float(x), float(y)


def local_jacobian(H: np.ndarray, p: Point) -> np.ndarray:
    """
    2x2 derivative of the projective map at p.
    Turns a small ideal-space step into a pixel-space step; sizes the per-cell
    sampling window.
    """
    H = np.asarray(H, dtype=np.float64)
    x, y = p
    w = H[2, 0] * x + H[2, 1] * y + H[2, 2]
    if abs(w) < W_EPS:
        raise GeometryError("Jacobian undefined at a point at infinity")
    u = (H[0, 0] * x + H[0, 1] * y + H[0, 2]) / w
    v = (H[1, 0] * x + H[1, 1] * y + H[1, 2]) / w
    return np.array([
        [H[0, 0] - u * H[2, 0], H[0, 1] - u * H[2, 1]],
        [H[1, 0] - v * H[2, 0], H[1, 1] - v * H[2, 1]],
    ]) / w

# ------------------------------------------------------------------------------
# Marker quality
# ------------------------------------------------------------------------------

def marker_quality(photo_pts: Sequence[Point] | np.ndarray, max_distortion: float = 0.5) -> float:
    """
    1.0 when tl, tr, bl, br (pixel coords) form an undistorted rectangle.

    distortion = worst of: top/bottom edge mismatch, left/right edge mismatch,
    and |cos| of any corner angle. Quality falls linearly to 0 at max_distortion.
    """
    tl, tr, bl, br = _as_points(photo_pts, "photo points")

    def _edge_mismatch(a: float, b: float) -> float:
        longer = max(a, b)
        return 1.0 - min(a, b) / longer if longer > 0 else 1.0

    top = float(np.linalg.norm(tr - tl))
    bottom = float(np.linalg.norm(br - bl))
    left = float(np.linalg.norm(bl - tl))
    right = float(np.linalg.norm(br - tr))

    # walk the quad in order tl -> tr -> br -> bl
    quad = [tl, tr, br, bl]
    worst_cos = 0.0
    for i in range(4):
        prev_pt, pt, next_pt = quad[i - 1], quad[i], quad[(i + 1) % 4]
        a = prev_pt - pt
        b = next_pt - pt
        na, nb = np.linalg.norm(a), np.linalg.norm(b)
        if na == 0 or nb == 0:
            return 0.0
        worst_cos = max(worst_cos, abs(float(a @ b) / (na * nb)))

    distortion = max(_edge_mismatch(top, bottom), _edge_mismatch(left, right), worst_cos)
    return float(np.clip(1.0 - distortion / max_distortion, 0.0, 1.0))
