"""
Real-time recurrent background matting.

This package runs recurrent video matting networks (Robust Video Matting)
frame by frame, threading their hidden state across cycles with explicit
tensor ownership, and renders the matte or a hidden-state mosaic to a display
surface.
"""

from .errors import (
    CaptureFailure,
    EndOfStream,
    InferenceFailure,
    MattingError,
    ModelLoadFailure,
    OwnershipError,
    RenderFailure,
)
from .pipeline import LiveMattingConfig, LiveMattingSession
from .render import ViewMode
from .scheduler import CycleScheduler, PerformanceSample, SchedulerState

__all__ = [
    "LiveMattingConfig",
    "LiveMattingSession",
    "CycleScheduler",
    "SchedulerState",
    "PerformanceSample",
    "ViewMode",
    "MattingError",
    "ModelLoadFailure",
    "CaptureFailure",
    "InferenceFailure",
    "RenderFailure",
    "OwnershipError",
    "EndOfStream",
]
