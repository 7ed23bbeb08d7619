from __future__ import annotations

import abc
import logging
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

__all__ = ["DisplaySurface", "FrameBufferSurface", "ImageDirectorySurface"]


class DisplaySurface(abc.ABC):
    """
    Destination for rendered RGBA buffers.

    ``backdrop`` is the colour the host shows behind the buffer for the active
    view, or ``None`` when the buffer is displayed as-is.
    """

    @abc.abstractmethod
    def present(self, pixels: np.ndarray, backdrop: Optional[Tuple[int, int, int]] = None) -> None:
        ...

    def close(self) -> None:
        pass


class FrameBufferSurface(DisplaySurface):
    """Keeps the most recent buffer in memory (optionally a short history)."""

    def __init__(self, history: int = 1) -> None:
        self.history = max(1, history)
        self.frames: List[np.ndarray] = []
        self.backdrops: List[Optional[Tuple[int, int, int]]] = []
        self.presented = 0

    @property
    def last(self) -> Optional[np.ndarray]:
        return self.frames[-1] if self.frames else None

    def present(self, pixels: np.ndarray, backdrop: Optional[Tuple[int, int, int]] = None) -> None:
        self.frames.append(pixels)
        self.backdrops.append(backdrop)
        del self.frames[: -self.history]
        del self.backdrops[: -self.history]
        self.presented += 1


class ImageDirectorySurface(DisplaySurface):
    """
    Writes each buffer to ``<output_dir>/<index>.png``.

    With ``composite`` enabled, buffers with a backdrop are flattened over it,
    which mirrors what a viewer sees on screen.
    """

    def __init__(self, output_dir: Path, composite: bool = False, prefix: str = "frame") -> None:
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.composite = composite
        self.prefix = prefix
        self.presented = 0

    def present(self, pixels: np.ndarray, backdrop: Optional[Tuple[int, int, int]] = None) -> None:
        image = Image.fromarray(np.ascontiguousarray(pixels, dtype=np.uint8))
        if self.composite and backdrop is not None:
            background = Image.new("RGBA", image.size, backdrop + (255,))
            image = Image.alpha_composite(background, image)
        destination = self.output_dir / f"{self.prefix}_{self.presented:06d}.png"
        image.save(destination)
        self.presented += 1
        logger.debug(f"Wrote {destination}")
