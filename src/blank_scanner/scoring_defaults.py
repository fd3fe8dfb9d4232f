# blank_scanner/scoring_defaults.py
from dataclasses import dataclass, fields

@dataclass(frozen=True)
class ScoringDefaults:
    # Single source of truth for classification/aggregation thresholds
    min_fill: float = 0.35              # absolute floor before a bubble counts as a candidate
    min_margin: float = 0.20            # top must beat second-best by this much
    strong_margin: float = 0.60         # margin at which a marked question is fully trusted
    skip_confidence: float = 0.80       # confidence of a perfectly clean skip
    skip_confidence_floor: float = 0.60 # confidence of a skip whose darkest bubble sits at min_fill
    ambiguous_confidence: float = 0.30  # ceiling for ambiguous questions
    geometry_weight: float = 0.20       # share of marker quality in the overall confidence
    min_confidence: float = 0.60        # below this a successful scan is flagged for review
    dark_ratio: float = 0.70            # pixel is "dark" below dark_ratio * local background
    inner_radius_ratio: float = 0.75    # sample inner disk only; skip the printed ring

DEFAULTS = ScoringDefaults()

def apply_overrides(**overrides: float | None) -> ScoringDefaults:
    # produce an overridden immutable config without mutating DEFAULTS
    known = {f.name for f in fields(ScoringDefaults)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown scoring option(s): {', '.join(unknown)}")
    values = {
        name: float(overrides[name]) if overrides.get(name) is not None else getattr(DEFAULTS, name)
        for name in known
    }
    return ScoringDefaults(**values)
