# src/blank_scanner/config_io.py
from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional
import json

import yaml

from .scoring_defaults import DEFAULTS, ScoringDefaults, apply_overrides
from .tools.sheet_layout import GridBoundsRatio, LayoutParams, Markers

# YAML key -> GridBoundsRatio field
GRID_KEYS = {
    "top": "top_ratio",
    "bottom": "bottom_ratio",
    "left": "left_ratio",
    "right": "right_ratio",
    "center_gap": "center_gap_ratio",
    "number_column": "number_column_ratio",
    "bubble": "bubble_ratio",
}


@dataclass(frozen=True)
class ScannerConfig:
    questions: Optional[int] = None
    grid_bounds: GridBoundsRatio = field(default_factory=GridBoundsRatio)
    scoring: ScoringDefaults = DEFAULTS

    def layout_params(self, question_count: Optional[int] = None) -> LayoutParams:
        n = question_count if question_count is not None else self.questions
        if n is None:
            raise ValueError("Question count is neither configured nor given")
        return LayoutParams(int(n), self.grid_bounds)


def load_config_any(path: str | Path) -> Dict[str, Any]:
    """
    Prefer YAML, but transparently accept JSON.
    - If extension is .yml/.yaml -> use YAML
    - If extension is .json -> use JSON
    - Otherwise: try YAML first, then JSON
    """
    p = Path(path)
    data = p.read_text(encoding="utf-8")
    ext = p.suffix.lower()

    if ext in {".yml", ".yaml"}:
        cfg = yaml.safe_load(data)
    elif ext == ".json":
        cfg = json.loads(data)
    else:
        # No/unknown extension: prefer YAML, then fallback to JSON
        try:
            cfg = yaml.safe_load(data)
        except yaml.YAMLError:
            cfg = json.loads(data)

    if cfg is None:
        cfg = {}
    if not isinstance(cfg, dict):
        raise ValueError("Config root must be a mapping/object.")

    return cfg


def config_from_mapping(cfg: Dict[str, Any]) -> ScannerConfig:
    grid = cfg.get("grid") or {}
    unknown = sorted(set(grid) - set(GRID_KEYS))
    if unknown:
        raise ValueError(f"Unknown grid option(s): {', '.join(unknown)}")
    kwargs = {GRID_KEYS[k]: float(v) for k, v in grid.items()}

    markers = cfg.get("markers")
    if markers is not None:
        kwargs["markers"] = Markers.from_mapping(markers)

    questions = cfg.get("questions")
    return ScannerConfig(
        questions=int(questions) if questions is not None else None,
        grid_bounds=GridBoundsRatio(**kwargs),
        scoring=apply_overrides(**(cfg.get("scoring") or {})),
    )


def load_config(path: str | Path) -> ScannerConfig:
    return config_from_mapping(load_config_any(path))


def save_markers(markers: Markers, path: str | Path) -> Path:
    """Write markers as a config fragment loadable by load_config."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    text = yaml.safe_dump({"markers": markers.to_dict()}, sort_keys=False)
    p.write_text(text, encoding="utf-8")
    return p
