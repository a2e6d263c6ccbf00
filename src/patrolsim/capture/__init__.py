"""Capture pipeline: bribery, outcome selection and the outcome executors."""

from .outcomes import (
    BLINDFOLD,
    BRIBE_BETRAYAL,
    BRIBE_GENEROUS,
    BRIBE_SUCCESS,
    CAPTURE_OUTCOMES,
    COMBAT,
    DISREGARD,
    JAIL,
    THEFT,
    CaptureEvent,
    weighted_draw,
)
from .pipeline import CaptureSystem

__all__ = [
    "BLINDFOLD", "BRIBE_BETRAYAL", "BRIBE_GENEROUS", "BRIBE_SUCCESS", "CAPTURE_OUTCOMES",
    "COMBAT", "DISREGARD", "JAIL", "THEFT", "CaptureEvent", "CaptureSystem", "weighted_draw",
]
