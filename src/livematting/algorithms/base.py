from __future__ import annotations

import abc
import logging
from pathlib import Path
from typing import Any, ClassVar, NamedTuple, Optional

import torch

from ..errors import ModelLoadFailure
from ..utils.downloads import download_file, sha256_file

logger = logging.getLogger(__name__)


class InferenceOutput(NamedTuple):
    """Model outputs in channels-last layout."""

    fgr: torch.Tensor
    pha: torch.Tensor
    r1o: torch.Tensor
    r2o: torch.Tensor
    r3o: torch.Tensor
    r4o: torch.Tensor


class RecurrentMattingModel(abc.ABC):
    """
    Abstract base class for recurrent video matting models.

    Frames and hidden states cross this boundary channels-last
    (``[1,H,W,C]``). A rank-0 hidden state means "no prior state"; subclasses
    translate it into whatever their backend expects.
    """

    MODEL_NAME: ClassVar[str]
    WEIGHTS_URL: ClassVar[Optional[str]]
    WEIGHTS_SHA256: ClassVar[Optional[str]] = None
    SUPPORTS_FP16: ClassVar[bool] = True
    WEIGHTS_EXTENSION: ClassVar[str] = ".torchscript"

    def __init__(
        self,
        weights_root: Path,
        device: torch.device,
        use_fp16: bool = False,
    ) -> None:
        self.device = torch.device(device)
        self.use_fp16 = use_fp16 and self.SUPPORTS_FP16 and self.device.type == "cuda"
        try:
            self.model = self._load(Path(weights_root))
        except ModelLoadFailure:
            raise
        except Exception as exc:
            raise ModelLoadFailure(f"Failed to load model '{self.weights_name()}': {exc}") from exc
        logger.info(f"Loaded {self.weights_name()} on {self.device} (fp16={self.use_fp16})")

    def weights_name(self) -> str:
        return self.MODEL_NAME

    def weights_url(self) -> Optional[str]:
        return self.WEIGHTS_URL

    def weights_path(self, root: Path) -> Path:
        return root / f"{self.weights_name()}{self.WEIGHTS_EXTENSION}"

    def ensure_weights(self, root: Path) -> Path:
        path = self.weights_path(root)
        if path.exists() and path.stat().st_size > 0:
            if not self.WEIGHTS_SHA256 or sha256_file(path) == self.WEIGHTS_SHA256.lower():
                return path

        url = self.weights_url()
        if not url:
            raise ModelLoadFailure(f"No download source available for model '{self.weights_name()}'.")
        return download_file(url, path, self.WEIGHTS_SHA256)

    @abc.abstractmethod
    def _load(self, root: Path) -> Any:
        ...

    @abc.abstractmethod
    def infer(
        self,
        frame: torch.Tensor,
        r1: torch.Tensor,
        r2: torch.Tensor,
        r3: torch.Tensor,
        r4: torch.Tensor,
        downsample_ratio: float,
    ) -> InferenceOutput:
        ...

    @staticmethod
    def is_placeholder(state: torch.Tensor) -> bool:
        return state.dim() == 0

    @staticmethod
    def to_channels_first(tensor: torch.Tensor) -> torch.Tensor:
        return tensor.permute(0, 3, 1, 2)

    @staticmethod
    def to_channels_last(tensor: torch.Tensor) -> torch.Tensor:
        return tensor.permute(0, 2, 3, 1)
