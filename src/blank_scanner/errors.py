# src/blank_scanner/errors.py
from __future__ import annotations


class ScanError(Exception):
    """Base class for everything the scanner raises on purpose."""


class GeometryError(ScanError):
    """Markers are degenerate (coincident/collinear) or the projection blew up."""


class ImageDecodeError(ScanError):
    """The input could not be decoded into pixels."""


class InvalidTransitionError(ScanError):
    """A ScanAttempt was asked to move to a state it cannot reach."""
