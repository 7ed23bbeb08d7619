from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
import onnxruntime as ort
import torch

from .base import InferenceOutput, RecurrentMattingModel
from .torchscript import RELEASE_URL

__all__ = ["ONNXRecurrentModel", "RVMMobileNetV3ONNX", "RVMResNet50ONNX"]

logger = logging.getLogger(__name__)

OUTPUT_NAMES = ["fgr", "pha", "r1o", "r2o", "r3o", "r4o"]


class ONNXRecurrentModel(RecurrentMattingModel):
    """
    ONNXRuntime-backed recurrent matting model.

    Inputs are ``src``, ``r1i``..``r4i`` and ``downsample_ratio``; the first
    frame feeds ``zeros([1,1,1,1])`` for every hidden state.
    """

    WEIGHTS_EXTENSION = ".onnx"

    def __init__(
        self,
        weights_root: Path,
        device: torch.device,
        use_fp16: bool = False,
        use_tensorrt: bool = False,
    ) -> None:
        self.session: ort.InferenceSession | None = None
        self.use_tensorrt = use_tensorrt
        super().__init__(weights_root, device, use_fp16=use_fp16)

    def weights_name(self) -> str:
        precision = "fp16" if self.use_fp16 else "fp32"
        return f"{self.MODEL_NAME}_{precision}"

    def weights_url(self) -> Optional[str]:
        return f"{RELEASE_URL}{self.weights_name()}{self.WEIGHTS_EXTENSION}"

    @property
    def np_dtype(self) -> type:
        return np.float16 if self.use_fp16 else np.float32

    def _load(self, root: Path) -> ort.InferenceSession:
        onnx_path = self.ensure_weights(root)

        session_options = ort.SessionOptions()
        session_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL

        providers = self._build_providers(tensorrt=self.use_tensorrt)
        try:
            session = self._create_session(onnx_path, session_options, providers)
        except Exception:
            if not self.use_tensorrt:
                raise
            logger.warning("TensorRT provider failed to initialize; retrying without TensorRT.")
            providers = self._build_providers(tensorrt=False)
            session = self._create_session(onnx_path, session_options, providers)

        active = session.get_providers()
        if self.device.type == "cuda" and "CUDAExecutionProvider" not in active:
            raise RuntimeError(
                "onnxruntime did not initialize the CUDAExecutionProvider. "
                "Install `onnxruntime-gpu` and ensure the NVIDIA driver/CUDA stack is available."
            )
        if self.use_tensorrt and "TensorrtExecutionProvider" not in active:
            logger.warning("TensorRT Execution Provider requested but not available; falling back to CUDA.")

        input_names = {item.name for item in session.get_inputs()}
        expected = {"src", "r1i", "r2i", "r3i", "r4i", "downsample_ratio"}
        if not expected <= input_names:
            raise RuntimeError(f"{onnx_path.name} is missing inputs {sorted(expected - input_names)}.")
        self.session = session
        return session

    @staticmethod
    def _create_session(
        onnx_path: Path,
        session_options: ort.SessionOptions,
        providers: List[Tuple[str, Dict[str, str]]],
    ) -> ort.InferenceSession:
        return ort.InferenceSession(
            onnx_path.as_posix(),
            sess_options=session_options,
            providers=[name for name, _ in providers],
            provider_options=[options for _, options in providers],
        )

    def _build_providers(self, *, tensorrt: bool) -> List[Tuple[str, Dict[str, str]]]:
        if self.device.type != "cuda":
            return [("CPUExecutionProvider", {})]

        device_id = self.device.index if self.device.index is not None else 0
        cuda_options = {
            "device_id": str(device_id),
            "arena_extend_strategy": "kNextPowerOfTwo",
            "cudnn_conv_use_max_workspace": "1",
            "do_copy_in_default_stream": "1",
        }
        providers: List[Tuple[str, Dict[str, str]]] = [("CUDAExecutionProvider", cuda_options)]

        if tensorrt:
            trt_options = {
                "device_id": str(device_id),
                "trt_fp16_enable": "True" if self.use_fp16 else "False",
                "trt_max_workspace_size": str(1 << 30),
            }
            providers.insert(0, ("TensorrtExecutionProvider", trt_options))

        return providers

    def _to_numpy(self, tensor: torch.Tensor) -> np.ndarray:
        return np.ascontiguousarray(tensor.detach().to("cpu").numpy().astype(self.np_dtype))

    def _state_in(self, state: torch.Tensor) -> np.ndarray:
        if self.is_placeholder(state):
            return np.zeros((1, 1, 1, 1), dtype=self.np_dtype)
        return self._to_numpy(self.to_channels_first(state))

    def infer(
        self,
        frame: torch.Tensor,
        r1: torch.Tensor,
        r2: torch.Tensor,
        r3: torch.Tensor,
        r4: torch.Tensor,
        downsample_ratio: float,
    ) -> InferenceOutput:
        if self.session is None:
            raise RuntimeError("ONNX session not initialized.")

        ort_inputs = {
            "src": self._to_numpy(self.to_channels_first(frame)),
            "r1i": self._state_in(r1),
            "r2i": self._state_in(r2),
            "r3i": self._state_in(r3),
            "r4i": self._state_in(r4),
            "downsample_ratio": np.array([downsample_ratio], dtype=np.float32),
        }
        outputs = self.session.run(OUTPUT_NAMES, ort_inputs)
        tensors = [
            self.to_channels_last(torch.from_numpy(array).to(self.device).float())
            for array in outputs
        ]
        return InferenceOutput(*tensors)


class RVMMobileNetV3ONNX(ONNXRecurrentModel):
    MODEL_NAME = "rvm_mobilenetv3"


class RVMResNet50ONNX(ONNXRecurrentModel):
    MODEL_NAME = "rvm_resnet50"
