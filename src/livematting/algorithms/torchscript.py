from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import torch

from .base import InferenceOutput, RecurrentMattingModel

__all__ = ["RVMMobileNetV3", "RVMResNet50"]

RELEASE_URL = "https://github.com/PeterL1n/RobustVideoMatting/releases/download/v1.0.0/"


class RVMTorchScript(RecurrentMattingModel):
    """
    Robust Video Matting exported to TorchScript.

    The scripted network takes ``(src, r1, r2, r3, r4, downsample_ratio)``
    channels-first, with ``None`` hidden states on the first frame.
    """

    MODEL_NAME = "rvm_mobilenetv3"
    WEIGHTS_URL = None
    WEIGHTS_EXTENSION = ".torchscript"

    def weights_name(self) -> str:
        precision = "fp16" if self.use_fp16 else "fp32"
        return f"{self.MODEL_NAME}_{precision}"

    def weights_url(self) -> Optional[str]:
        return f"{RELEASE_URL}{self.weights_name()}{self.WEIGHTS_EXTENSION}"

    @property
    def dtype(self) -> torch.dtype:
        return torch.float16 if self.use_fp16 else torch.float32

    def _load(self, root: Path) -> torch.jit.ScriptModule:
        weights = self.ensure_weights(root)
        model = torch.jit.load(weights.as_posix(), map_location=self.device)
        model.eval()
        return model

    def _state_in(self, state: torch.Tensor) -> Optional[torch.Tensor]:
        if self.is_placeholder(state):
            return None
        return self.to_channels_first(state).to(self.device, self.dtype)

    def infer(
        self,
        frame: torch.Tensor,
        r1: torch.Tensor,
        r2: torch.Tensor,
        r3: torch.Tensor,
        r4: torch.Tensor,
        downsample_ratio: float,
    ) -> InferenceOutput:
        src = self.to_channels_first(frame).to(self.device, self.dtype)
        rec = [self._state_in(state) for state in (r1, r2, r3, r4)]

        with torch.inference_mode():
            fgr, pha, *rec_out = self.model(src, *rec, float(downsample_ratio))

        outputs: List[torch.Tensor] = [
            self.to_channels_last(tensor).float() for tensor in (fgr, pha, *rec_out)
        ]
        return InferenceOutput(*outputs)


class RVMMobileNetV3(RVMTorchScript):
    MODEL_NAME = "rvm_mobilenetv3"


class RVMResNet50(RVMTorchScript):
    MODEL_NAME = "rvm_resnet50"
