# src/blank_scanner/tools/sheet_layout.py
"""
Idealized bubble-grid geometry of the printed blank.

All coordinates are ratios in [0,1] x [0,1]. With calibration markers the unit
square is the rectangle between the four marker centres; without markers
(legacy fallback) it is the whole photo. Either way the layout itself is a pure
function of (question_count, GridBoundsRatio) and never looks at pixels.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Tuple

import numpy as np

OPTIONS_PER_QUESTION = 5
OPTION_LABELS = "ABCDE"
CORNERS = ("tl", "tr", "bl", "br")

# Printed blank: A4, 8mm markers 5mm from the edges, grid under a 31mm header.
DEFAULT_TOP = 0.15
DEFAULT_BOTTOM = 0.90
DEFAULT_LEFT = 0.047
DEFAULT_RIGHT = 0.953
DEFAULT_CENTER_GAP = 0.045
DEFAULT_NUMBER_COLUMN = 0.15
DEFAULT_BUBBLE = 0.28


# ---------- markers ----------
@dataclass(frozen=True)
class Marker:
    x: float
    y: float

    def __post_init__(self):
        for name in ("x", "y"):
            v = getattr(self, name)
            if not (isinstance(v, (int, float)) and 0.0 <= float(v) <= 1.0):
                raise ValueError(f"Marker {name}={v!r} must be within [0, 1]")


@dataclass(frozen=True)
class Markers:
    """Centres of the four printed fiducials, normalized to photo width/height."""
    tl: Marker
    tr: Marker
    bl: Marker
    br: Marker

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Markers":
        """Accept {"tl": [x, y], ...} or {"tl": {"x": .., "y": ..}, ...}."""
        missing = [c for c in CORNERS if c not in data]
        if missing:
            raise ValueError(f"Markers missing corner(s): {', '.join(missing)}")
        pts = {}
        for c in CORNERS:
            v = data[c]
            try:
                if isinstance(v, Mapping):
                    x, y = v["x"], v["y"]
                else:
                    x, y = v
                x, y = float(x), float(y)
            except (KeyError, TypeError, ValueError) as e:
                raise ValueError(f"Marker {c} needs numeric x and y, got {v!r}") from e
            pts[c] = Marker(x, y)
        return cls(**pts)

    @classmethod
    def from_flat(cls, values: List[float]) -> "Markers":
        """tl_x, tl_y, tr_x, tr_y, bl_x, bl_y, br_x, br_y"""
        if len(values) != 8:
            raise ValueError(f"Expected 8 marker values, got {len(values)}")
        it = iter(values)
        return cls(*(Marker(float(x), float(y)) for x, y in zip(it, it)))

    def as_ratios(self) -> np.ndarray:
        return np.array([[m.x, m.y] for m in (self.tl, self.tr, self.bl, self.br)], dtype=np.float64)

    def to_pixels(self, width: int, height: int) -> np.ndarray:
        """(4, 2) pixel coordinates in tl, tr, bl, br order."""
        return self.as_ratios() * np.array([width, height], dtype=np.float64)

    def to_dict(self) -> dict:
        return {c: [getattr(self, c).x, getattr(self, c).y] for c in CORNERS}


# ---------- layout parameters ----------
@dataclass(frozen=True)
class GridBoundsRatio:
    top_ratio: float = DEFAULT_TOP
    bottom_ratio: float = DEFAULT_BOTTOM
    left_ratio: float = DEFAULT_LEFT
    right_ratio: float = DEFAULT_RIGHT
    center_gap_ratio: float = DEFAULT_CENTER_GAP   # fraction of content width between the two columns
    markers: Optional[Markers] = None
    number_column_ratio: float = DEFAULT_NUMBER_COLUMN  # question-number column, fraction of column width
    bubble_ratio: float = DEFAULT_BUBBLE            # bubble radius, fraction of the smaller local pitch

    def __post_init__(self):
        if not (0.0 <= self.top_ratio < self.bottom_ratio <= 1.0):
            raise ValueError(f"Need 0 <= top < bottom <= 1, got {self.top_ratio}, {self.bottom_ratio}")
        if not (0.0 <= self.left_ratio < self.right_ratio <= 1.0):
            raise ValueError(f"Need 0 <= left < right <= 1, got {self.left_ratio}, {self.right_ratio}")
        if not (0.0 <= self.center_gap_ratio < 1.0):
            raise ValueError(f"center_gap_ratio must be in [0, 1), got {self.center_gap_ratio}")
        if not (0.0 <= self.number_column_ratio < 1.0):
            raise ValueError(f"number_column_ratio must be in [0, 1), got {self.number_column_ratio}")
        if not (0.0 < self.bubble_ratio <= 0.5):
            raise ValueError(f"bubble_ratio must be in (0, 0.5], got {self.bubble_ratio}")


@dataclass(frozen=True)
class LayoutParams:
    question_count: int
    grid_bounds: GridBoundsRatio = field(default_factory=GridBoundsRatio)

    def __post_init__(self):
        if int(self.question_count) < 1:
            raise ValueError(f"question_count must be >= 1, got {self.question_count}")


# ---------- derived layout ----------
@dataclass(frozen=True)
class AnswerSheetLayout:
    question_count: int
    rows_per_column: int
    row_pitch: float
    option_pitch: float
    bubble_ratio: float
    top: float
    column_starts: Tuple[float, float]   # x where the first bubble cell of each column begins
    options_per_question: int = OPTIONS_PER_QUESTION

    def question_column(self, q: int) -> Tuple[int, int]:
        """(column, row) for question index q; first ceil(n/2) questions go left."""
        if not (0 <= q < self.question_count):
            raise IndexError(f"question index {q} out of range 0..{self.question_count - 1}")
        return (0, q) if q < self.rows_per_column else (1, q - self.rows_per_column)

    def cell_center(self, q: int, opt: int) -> Tuple[float, float]:
        if not (0 <= opt < self.options_per_question):
            raise IndexError(f"option index {opt} out of range")
        col, row = self.question_column(q)
        x = self.column_starts[col] + (opt + 0.5) * self.option_pitch
        y = self.top + (row + 0.5) * self.row_pitch
        return x, y

    def centers(self) -> np.ndarray:
        """(question_count, 5, 2) array of ideal-space bubble centres."""
        out = np.zeros((self.question_count, self.options_per_question, 2), dtype=np.float64)
        for q in range(self.question_count):
            for o in range(self.options_per_question):
                out[q, o] = self.cell_center(q, o)
        return out

    def nearest_cell(self, p: Tuple[float, float]) -> Optional[Tuple[int, int]]:
        """
        (question, option) whose centre is nearest to ideal point p, or None if p
        lies more than half a pitch away from every bubble (e.g. a click in the margin).
        """
        c = self.centers()
        dx = (c[..., 0] - p[0]) / self.option_pitch
        dy = (c[..., 1] - p[1]) / self.row_pitch
        d = np.hypot(dx, dy)
        q, o = np.unravel_index(int(np.argmin(d)), d.shape)
        if abs(dx[q, o]) > 0.5 or abs(dy[q, o]) > 0.5:
            return None
        return int(q), int(o)


def build_layout(question_count: int, gb: GridBoundsRatio) -> AnswerSheetLayout:
    """
    Two columns split at ceil(n/2); uniform row pitch across the vertical band;
    the center gap separates the columns without touching row pitch.
    """
    n = int(question_count)
    if n < 1:
        raise ValueError(f"question_count must be >= 1, got {question_count}")
    rows = math.ceil(n / 2)

    content_w = gb.right_ratio - gb.left_ratio
    gap = content_w * gb.center_gap_ratio
    col_w = (content_w - gap) / 2.0
    num_w = col_w * gb.number_column_ratio
    option_pitch = (col_w - num_w) / OPTIONS_PER_QUESTION
    row_pitch = (gb.bottom_ratio - gb.top_ratio) / rows

    left_start = gb.left_ratio + num_w
    right_start = gb.left_ratio + col_w + gap + num_w

    return AnswerSheetLayout(
        question_count=n,
        rows_per_column=rows,
        row_pitch=row_pitch,
        option_pitch=option_pitch,
        bubble_ratio=gb.bubble_ratio,
        top=gb.top_ratio,
        column_starts=(left_start, right_start),
    )


def option_label(idx: Optional[int]) -> str:
    """0 -> 'A' ... 4 -> 'E'; None -> ''"""
    if idx is None:
        return ""
    return OPTION_LABELS[idx] if 0 <= idx < len(OPTION_LABELS) else ""
