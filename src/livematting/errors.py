from __future__ import annotations

from typing import Optional

__all__ = [
    "MattingError",
    "ModelLoadFailure",
    "CaptureFailure",
    "InferenceFailure",
    "RenderFailure",
    "OwnershipError",
    "EndOfStream",
]


class MattingError(RuntimeError):
    """
    Base class for failures surfaced by the matting loop.
    """

    def __init__(self, message: str, *, cycle: Optional[int] = None) -> None:
        super().__init__(message)
        self.cycle = cycle

    def __str__(self) -> str:
        message = super().__str__()
        if self.cycle is None:
            return message
        return f"[cycle {self.cycle}] {message}"


class ModelLoadFailure(MattingError):
    """The recurrent model could not be fetched or built."""


class CaptureFailure(MattingError):
    """The frame source is unavailable or returned an unusable frame."""


class InferenceFailure(MattingError):
    """The model call failed (device error, shape mismatch, out of memory)."""


class RenderFailure(MattingError):
    """The pixel buffer could not be produced or presented."""


class OwnershipError(MattingError):
    """A tensor handle was used after it was moved or released."""


class EndOfStream(CaptureFailure):
    """A finite frame source has no more frames."""
