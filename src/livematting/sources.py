from __future__ import annotations

import abc
import logging
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import torch
from PIL import Image
from torchvision.transforms import functional as TF

from .errors import CaptureFailure, EndOfStream

logger = logging.getLogger(__name__)

__all__ = [
    "FrameSource",
    "TensorFrameSource",
    "ImageSequenceSource",
    "WebcamSource",
    "IMAGE_EXTENSIONS",
]

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".bmp", ".tiff", ".webp"}


class FrameSource(abc.ABC):
    """
    Yields normalised ``[1,H,W,3]`` float frames in ``[0,1]``.

    The spatial size is fixed for the lifetime of a source; a frame of a
    different size raises :class:`CaptureFailure`.
    """

    def __init__(self, size: Optional[Tuple[int, int]] = None, device: torch.device | str = "cpu") -> None:
        self.size = size
        self.device = torch.device(device)

    @abc.abstractmethod
    def read(self) -> np.ndarray:
        """Return the next frame as an ``H x W x 3`` RGB array (uint8 or float)."""

    def capture(self) -> torch.Tensor:
        array = self.read()
        frame = self._to_tensor(array)
        height, width = frame.shape[1:3]
        if self.size is None:
            self.size = (height, width)
        elif (height, width) != tuple(self.size):
            raise CaptureFailure(
                f"Frame size changed mid-session: expected {tuple(self.size)}, got {(height, width)}."
            )
        return frame

    def _to_tensor(self, array: np.ndarray) -> torch.Tensor:
        if array.ndim != 3 or array.shape[2] != 3:
            raise CaptureFailure(f"Expected an HxWx3 RGB frame, got shape {array.shape}.")
        # to_tensor scales uint8 to [0,1] and returns CHW
        chw = TF.to_tensor(np.ascontiguousarray(array))
        return chw.float().clamp(0, 1).permute(1, 2, 0).unsqueeze(0).to(self.device)

    def close(self) -> None:
        pass


class TensorFrameSource(FrameSource):
    """Replays in-memory frames, looping when ``loop`` is set."""

    def __init__(
        self,
        frames: Sequence[np.ndarray],
        loop: bool = False,
        device: torch.device | str = "cpu",
    ) -> None:
        super().__init__(device=device)
        self.frames = list(frames)
        self.loop = loop
        self.position = 0

    def read(self) -> np.ndarray:
        if self.position >= len(self.frames):
            if not self.loop or not self.frames:
                raise EndOfStream("No more frames.")
            self.position = 0
        frame = self.frames[self.position]
        self.position += 1
        return frame


class ImageSequenceSource(FrameSource):
    """
    Reads the images of a directory in sorted order, resizing them to the
    session size.
    """

    def __init__(
        self,
        directory: Path,
        size: Optional[Tuple[int, int]] = None,
        loop: bool = False,
        device: torch.device | str = "cpu",
    ) -> None:
        super().__init__(size=size, device=device)
        self.directory = Path(directory)
        if not self.directory.is_dir():
            raise CaptureFailure(f"Input directory {self.directory} does not exist.")
        self.paths: List[Path] = sorted(self._iter_images(self.directory))
        if not self.paths:
            raise CaptureFailure(f"No images found in {self.directory}.")
        self.loop = loop
        self._cursor: Iterator[Path] = iter(self.paths)

    def read(self) -> np.ndarray:
        try:
            path = next(self._cursor)
        except StopIteration:
            if not self.loop:
                raise EndOfStream(f"Image sequence {self.directory} exhausted.") from None
            self._cursor = iter(self.paths)
            path = next(self._cursor)

        try:
            with Image.open(path) as img:
                img = img.convert("RGB")
                if self.size is not None and (img.height, img.width) != tuple(self.size):
                    img = img.resize((self.size[1], self.size[0]), Image.BILINEAR)
                return np.asarray(img, dtype=np.uint8)
        except OSError as exc:
            raise CaptureFailure(f"Failed to read {path}: {exc}") from exc

    @staticmethod
    def _iter_images(path: Path) -> Iterable[Path]:
        for file in path.rglob("*"):
            if file.suffix.lower() in IMAGE_EXTENSIONS:
                yield file


class WebcamSource(FrameSource):
    """
    OpenCV capture device. Frames are converted from BGR and resized to the
    configured session size.
    """

    def __init__(
        self,
        index: int = 0,
        size: Tuple[int, int] = (480, 640),
        device: torch.device | str = "cpu",
    ) -> None:
        super().__init__(size=size, device=device)
        import cv2

        self._cv2 = cv2
        self.index = index
        self.capture_device = cv2.VideoCapture(index)
        if not self.capture_device.isOpened():
            raise CaptureFailure(f"Cannot open camera {index}.")
        self.capture_device.set(cv2.CAP_PROP_FRAME_WIDTH, size[1])
        self.capture_device.set(cv2.CAP_PROP_FRAME_HEIGHT, size[0])
        logger.info(f"Camera {index} opened at requested size {size[1]}x{size[0]}")

    def read(self) -> np.ndarray:
        ok, frame_bgr = self.capture_device.read()
        if not ok or frame_bgr is None:
            raise CaptureFailure(f"Camera {self.index} returned no frame.")
        rgb = self._cv2.cvtColor(frame_bgr, self._cv2.COLOR_BGR2RGB)
        height, width = self.size
        if rgb.shape[:2] != (height, width):
            rgb = self._cv2.resize(rgb, (width, height), interpolation=self._cv2.INTER_LINEAR)
        return rgb

    def close(self) -> None:
        self.capture_device.release()
