"""Read filled answer blanks from photos: calibrate, rectify, classify, aggregate."""
import logging

from .errors import GeometryError, ImageDecodeError, InvalidTransitionError, ScanError
from .pixel_buffer import PixelBuffer, load_image
from .scan_core import ScanAttempt, ScanState, scan_blank
from .scoring_defaults import DEFAULTS, ScoringDefaults, apply_overrides
from .tools.bubble_score import ScanResult
from .tools.sheet_layout import GridBoundsRatio, LayoutParams, Marker, Markers
from .visualize_core import create_scan_preview

__version__ = "0.3.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "DEFAULTS",
    "GeometryError",
    "GridBoundsRatio",
    "ImageDecodeError",
    "InvalidTransitionError",
    "LayoutParams",
    "Marker",
    "Markers",
    "PixelBuffer",
    "ScanAttempt",
    "ScanError",
    "ScanResult",
    "ScanState",
    "ScoringDefaults",
    "apply_overrides",
    "create_scan_preview",
    "load_image",
    "scan_blank",
]
