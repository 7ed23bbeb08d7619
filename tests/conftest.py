"""
Shared pytest fixtures for the livematting test suite.

Provides a deterministic CPU recurrent model, in-memory frame sources and
surfaces so the loop can be exercised without weights or a camera.
"""

import asyncio
import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
import pytest
import torch

from livematting.algorithms.base import InferenceOutput, RecurrentMattingModel
from livematting.render import ViewRenderer
from livematting.resources import TensorLedger
from livematting.sources import FrameSource, TensorFrameSource
from livematting.state import RecurrentStateStore
from livematting.surfaces import DisplaySurface, FrameBufferSurface


class FakeRecurrentModel(RecurrentMattingModel):
    """
    Deterministic stand-in for a recurrent matting network.

    Hidden state k has ``CHANNELS[k-1]`` channels at ``1 / 2**k`` of the
    downsampled frame size and depends on the previous state, so any
    perturbation of the recurrent chain shows up in later cycles.
    """

    MODEL_NAME = "fake"
    WEIGHTS_URL = None
    CHANNELS = (4, 8, 12, 16)

    def __init__(self, fail_on_call: Optional[int] = None, gate: Optional[threading.Event] = None) -> None:
        self.fail_on_call = fail_on_call
        self.gate = gate
        self.entered = threading.Event()
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self.ratios: List[float] = []
        self.input_ranks: List[Tuple[int, ...]] = []
        super().__init__(Path("."), torch.device("cpu"))

    def _load(self, root: Path) -> None:
        return None

    def native_shapes(self, height: int, width: int, ratio: float) -> List[Tuple[int, ...]]:
        shapes = []
        for k, channels in enumerate(self.CHANNELS, start=1):
            scale = ratio / (2**k)
            shapes.append((1, max(1, int(height * scale)), max(1, int(width * scale)), channels))
        return shapes

    def infer(self, frame, r1, r2, r3, r4, downsample_ratio):
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.entered.set()
        try:
            if self.gate is not None:
                self.gate.wait(timeout=5)
            if self.fail_on_call is not None and self.calls == self.fail_on_call:
                raise RuntimeError("device lost")
            self.ratios.append(downsample_ratio)
            self.input_ranks.append(tuple(state.dim() for state in (r1, r2, r3, r4)))

            _, height, width, _ = frame.shape
            fgr = frame.clone()
            pha = frame.mean(dim=-1, keepdim=True)
            level = float(pha.mean())
            states = []
            for shape, prev in zip(self.native_shapes(height, width, downsample_ratio), (r1, r2, r3, r4)):
                base = torch.full(shape, level) + torch.linspace(-0.5, 0.5, shape[-1])
                if prev.dim() == 0:
                    states.append(torch.tanh(base))
                else:
                    states.append(torch.tanh(prev * 0.5 + base))
            return InferenceOutput(fgr, pha, *states)
        finally:
            self.active -= 1


class FailingSource(FrameSource):
    """Serves frames until ``fail_after`` reads, then raises."""

    def __init__(self, frames: Sequence[np.ndarray], fail_after: int, error: Exception) -> None:
        super().__init__()
        self.inner = TensorFrameSource(frames, loop=True)
        self.fail_after = fail_after
        self.error = error
        self.reads = 0

    def read(self) -> np.ndarray:
        self.reads += 1
        if self.reads > self.fail_after:
            raise self.error
        return self.inner.read()


class BrokenSurface(DisplaySurface):
    def __init__(self, fail_after: int = 0) -> None:
        self.fail_after = fail_after
        self.presented = 0

    def present(self, pixels, backdrop=None) -> None:
        if self.presented >= self.fail_after:
            raise OSError("display surface gone")
        self.presented += 1


def make_frames(count: int = 8, height: int = 64, width: int = 64, seed: int = 0) -> List[np.ndarray]:
    rng = np.random.default_rng(seed)
    return [rng.integers(0, 256, (height, width, 3), dtype=np.uint8) for _ in range(count)]


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def frames() -> List[np.ndarray]:
    return make_frames()


@pytest.fixture
def model() -> FakeRecurrentModel:
    return FakeRecurrentModel()


@pytest.fixture
def source(frames) -> TensorFrameSource:
    return TensorFrameSource(frames, loop=True)


@pytest.fixture
def surface() -> FrameBufferSurface:
    return FrameBufferSurface(history=4)


@pytest.fixture
def ledger() -> TensorLedger:
    return TensorLedger()


@pytest.fixture
def store(ledger) -> RecurrentStateStore:
    return RecurrentStateStore(ledger)


@pytest.fixture
def renderer(ledger) -> ViewRenderer:
    return ViewRenderer(ledger)
