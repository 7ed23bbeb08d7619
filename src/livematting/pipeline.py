from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import torch

from .algorithms.base import RecurrentMattingModel
from .algorithms.onnx_base import ONNXRecurrentModel, RVMMobileNetV3ONNX, RVMResNet50ONNX
from .algorithms.torchscript import RVMMobileNetV3, RVMResNet50
from .errors import MattingError, ModelLoadFailure
from .render import ViewMode, ViewRenderer
from .resources import TensorLedger
from .scheduler import (
    CycleScheduler,
    FixedRateClock,
    ImmediateClock,
    PerformanceSample,
    RefreshClock,
    SchedulerState,
)
from .sources import FrameSource
from .state import RecurrentStateStore
from .surfaces import DisplaySurface

logger = logging.getLogger(__name__)


MODEL_REGISTRY: Dict[str, type[RecurrentMattingModel]] = {
    "rvm-mobilenetv3": RVMMobileNetV3,
    "rvm-resnet50": RVMResNet50,
    "rvm-mobilenetv3-onnx": RVMMobileNetV3ONNX,
    "rvm-resnet50-onnx": RVMResNet50ONNX,
}


@dataclass
class LiveMattingConfig:
    model_name: str = "rvm-mobilenetv3"
    weights_dir: Path = field(default_factory=lambda: Path("~/.cache/livematting").expanduser())
    device: str = "cuda:0"
    use_fp16: bool = False
    use_tensorrt: bool = False
    downsample_ratio: float = 0.5
    view_mode: str = ViewMode.PLAIN_WHITE.value
    refresh_rate: Optional[float] = 60.0
    reset_on_recover: bool = True
    frame_width: int = 640
    frame_height: int = 480

    def torch_device(self) -> torch.device:
        return torch.device(self.device)

    @property
    def frame_size(self) -> Tuple[int, int]:
        return self.frame_height, self.frame_width

    def build_clock(self) -> RefreshClock:
        if not self.refresh_rate:
            return ImmediateClock()
        return FixedRateClock(self.refresh_rate)


def load_model(config: LiveMattingConfig) -> RecurrentMattingModel:
    if config.model_name not in MODEL_REGISTRY:
        raise ModelLoadFailure(f"Unknown model '{config.model_name}'. Choices: {list(MODEL_REGISTRY)}")
    if not 0.0 < config.downsample_ratio <= 1.0:
        raise ModelLoadFailure(f"downsample_ratio must be in (0, 1], got {config.downsample_ratio}.")

    device = config.torch_device()
    if device.type == "cuda":
        if not torch.cuda.is_available():
            raise ModelLoadFailure("CUDA is not available. Install PyTorch with CUDA support or use --device cpu.")
        torch.backends.cudnn.benchmark = True

    model_cls = MODEL_REGISTRY[config.model_name]
    if issubclass(model_cls, ONNXRecurrentModel):
        return model_cls(
            config.weights_dir,
            device,
            config.use_fp16,
            use_tensorrt=config.use_tensorrt,
        )
    return model_cls(config.weights_dir, device, config.use_fp16)


class LiveMattingSession:
    """
    Host-facing facade over the cycle scheduler.

    Owns the tensor ledger, the recurrent state store and the renderer; the
    frame source and display surface are supplied by the host and closed
    with the session.
    """

    def __init__(
        self,
        config: LiveMattingConfig,
        source: FrameSource,
        surface: DisplaySurface,
        model: Optional[RecurrentMattingModel] = None,
        clock: Optional[RefreshClock] = None,
    ) -> None:
        self.config = config
        self.model = model if model is not None else load_model(config)
        self.ledger = TensorLedger()
        self.store = RecurrentStateStore(self.ledger, device=self.model.device)
        self.scheduler = CycleScheduler(
            self.model,
            source,
            surface,
            ledger=self.ledger,
            store=self.store,
            renderer=ViewRenderer(self.ledger),
            clock=clock if clock is not None else config.build_clock(),
            downsample_ratio=config.downsample_ratio,
            view_mode=config.view_mode,
            reset_on_recover=config.reset_on_recover,
        )

    @property
    def state(self) -> SchedulerState:
        return self.scheduler.state

    @property
    def source(self) -> FrameSource:
        return self.scheduler.source

    @property
    def surface(self) -> DisplaySurface:
        return self.scheduler.surface

    def start(self) -> None:
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()

    def set_view_mode(self, mode: Union[ViewMode, str]) -> None:
        self.scheduler.set_view_mode(mode)

    def replace_source(self, source: FrameSource) -> None:
        previous = self.scheduler.source
        self.scheduler.set_source(source)
        if previous is not source:
            previous.close()

    def get_performance_sample(self) -> Optional[PerformanceSample]:
        return self.scheduler.get_performance_sample()

    def get_last_error(self) -> Optional[MattingError]:
        return self.scheduler.get_last_error()

    def add_observer(self, on_sample=None, on_fault=None) -> None:
        self.scheduler.add_observer(on_sample=on_sample, on_fault=on_fault)

    async def join(self) -> None:
        await self.scheduler.join()

    async def close(self) -> None:
        await self.scheduler.close()
        self.scheduler.source.close()
        self.scheduler.surface.close()
        logger.debug(
            f"Session closed: {self.ledger.allocated} tensors tracked, {self.ledger.outstanding} outstanding"
        )
