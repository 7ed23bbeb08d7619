"""
Conversion of inference outputs into RGBA pixel buffers.

Each :class:`ViewMode` selects one tagged view variant carrying exactly the
tensors it needs. Matte variants own their ``fgr``/``pha`` handles and the
renderer releases them once the pixels are materialised; :class:`HiddenView`
only borrows the selected recurrent output, which stays owned by the cycle
until it is promoted into the store.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple, Union

import numpy as np
import torch

from .errors import RenderFailure
from .resources import OwnedTensor, TensorLedger

logger = logging.getLogger(__name__)

__all__ = [
    "ViewMode",
    "TrackedOutput",
    "MatteView",
    "AlphaView",
    "ForegroundView",
    "HiddenView",
    "View",
    "select_view",
    "ViewRenderer",
    "hidden_mosaic",
]

RGB = Tuple[int, int, int]


class ViewMode(enum.Enum):
    PLAIN_WHITE = "plain-white"
    PLAIN_GREEN = "plain-green"
    ALPHA_ONLY = "alpha-only"
    FOREGROUND_ONLY = "foreground-only"
    HIDDEN_1 = "hidden-1"
    HIDDEN_2 = "hidden-2"
    HIDDEN_3 = "hidden-3"
    HIDDEN_4 = "hidden-4"

    @classmethod
    def parse(cls, value: Union[str, "ViewMode"]) -> "ViewMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown view mode '{value}'. Choices: {[mode.value for mode in cls]}") from None

    @property
    def hidden_index(self) -> Optional[int]:
        if self.value.startswith("hidden-"):
            return int(self.value.rsplit("-", 1)[1])
        return None

    @property
    def label(self) -> str:
        return _LABELS[self]

    @property
    def backdrop(self) -> Optional[RGB]:
        """Colour shown behind the buffer by the host, ``None`` for transparent."""
        return _BACKDROPS[self]


_LABELS = {
    ViewMode.PLAIN_WHITE: "White Background",
    ViewMode.PLAIN_GREEN: "Green Background",
    ViewMode.ALPHA_ONLY: "Alpha",
    ViewMode.FOREGROUND_ONLY: "Foreground",
    ViewMode.HIDDEN_1: "Recurrent State 1",
    ViewMode.HIDDEN_2: "Recurrent State 2",
    ViewMode.HIDDEN_3: "Recurrent State 3",
    ViewMode.HIDDEN_4: "Recurrent State 4",
}

_BACKDROPS = {
    ViewMode.PLAIN_WHITE: (255, 255, 255),
    ViewMode.PLAIN_GREEN: (120, 255, 155),
    ViewMode.ALPHA_ONLY: (0, 0, 0),
    ViewMode.FOREGROUND_ONLY: None,
    ViewMode.HIDDEN_1: None,
    ViewMode.HIDDEN_2: None,
    ViewMode.HIDDEN_3: None,
    ViewMode.HIDDEN_4: None,
}


class TrackedOutput(NamedTuple):
    fgr: OwnedTensor
    pha: OwnedTensor
    r1o: OwnedTensor
    r2o: OwnedTensor
    r3o: OwnedTensor
    r4o: OwnedTensor

    def hidden(self, index: int) -> OwnedTensor:
        return (self.r1o, self.r2o, self.r3o, self.r4o)[index - 1]


@dataclass
class MatteView:
    fgr: OwnedTensor
    pha: OwnedTensor


@dataclass
class AlphaView:
    pha: OwnedTensor


@dataclass
class ForegroundView:
    fgr: OwnedTensor


@dataclass
class HiddenView:
    index: int
    state: torch.Tensor


View = Union[MatteView, AlphaView, ForegroundView, HiddenView]


def select_view(mode: ViewMode, output: TrackedOutput) -> View:
    """
    Build the view variant for ``mode``. ``fgr``/``pha`` handles are moved
    into the view only when the mode displays them.
    """
    if mode in (ViewMode.PLAIN_WHITE, ViewMode.PLAIN_GREEN):
        return MatteView(fgr=output.fgr.move(), pha=output.pha.move())
    if mode is ViewMode.ALPHA_ONLY:
        return AlphaView(pha=output.pha.move())
    if mode is ViewMode.FOREGROUND_ONLY:
        return ForegroundView(fgr=output.fgr.move())
    index = mode.hidden_index
    if index is None:
        raise RenderFailure(f"Unhandled view mode {mode!r}.")
    return HiddenView(index=index, state=output.hidden(index).tensor)


def _to_byte(tensor: torch.Tensor) -> torch.Tensor:
    return tensor.float().mul(255).round().clamp(0, 255).to(torch.uint8)


def _constant(height: int, width: int, channels: int, device: torch.device) -> torch.Tensor:
    return torch.full((height, width, channels), 255, dtype=torch.uint8, device=device)


def hidden_mosaic(state: torch.Tensor) -> torch.Tensor:
    """
    Tile a ``[1,H,W,C]`` hidden state into an ``(H*C/4) x (4W)`` RGBA grid.

    Channels are split into four bands; each band stacks its channel maps
    vertically and the bands are laid side by side.
    """
    if state.dim() != 4 or state.shape[0] != 1:
        raise RenderFailure(f"Hidden state must have shape [1,H,W,C], got {tuple(state.shape)}.")
    _, height, width, channels = state.shape
    if channels % 4 != 0:
        raise RenderFailure(f"Hidden state channel count {channels} is not divisible by 4.")

    maps = state[0].permute(2, 0, 1).float()  # C,H,W
    bands = maps.reshape(4, (channels // 4) * height, width)
    grid = torch.cat(tuple(bands), dim=1)
    grey = grid.clamp(-1, 1).add(1).mul(127.5).round().to(torch.uint8)
    rgb = grey.unsqueeze(-1).expand(-1, -1, 3)
    alpha = _constant(grey.shape[0], grey.shape[1], 1, grey.device)
    return torch.cat([rgb, alpha], dim=-1)


class ViewRenderer:
    """
    Produces ``uint8`` RGBA buffers of shape ``H x W x 4`` from view variants.
    """

    def __init__(self, ledger: TensorLedger) -> None:
        self.ledger = ledger

    def render(self, view: View) -> np.ndarray:
        try:
            if isinstance(view, MatteView):
                rgba = self._matte(view.fgr.tensor, view.pha.tensor)
            elif isinstance(view, AlphaView):
                rgba = self._alpha(view.pha.tensor)
            elif isinstance(view, ForegroundView):
                rgba = self._foreground(view.fgr.tensor)
            elif isinstance(view, HiddenView):
                rgba = hidden_mosaic(view.state)
            else:
                raise RenderFailure(f"Unsupported view variant {type(view).__name__}.")
            pixels = np.ascontiguousarray(rgba.cpu().numpy())
        finally:
            self.ledger.release_all(self._owned(view))
        return pixels

    @staticmethod
    def _owned(view: View) -> Tuple[OwnedTensor, ...]:
        if isinstance(view, MatteView):
            return view.fgr, view.pha
        if isinstance(view, AlphaView):
            return (view.pha,)
        if isinstance(view, ForegroundView):
            return (view.fgr,)
        return ()

    @staticmethod
    def _matte(fgr: torch.Tensor, pha: torch.Tensor) -> torch.Tensor:
        rgb = _to_byte(fgr.squeeze(0))
        alpha = _to_byte(pha.squeeze(0))
        if rgb.shape[:2] != alpha.shape[:2]:
            raise RenderFailure(
                f"Foreground {tuple(rgb.shape)} and alpha {tuple(alpha.shape)} sizes differ."
            )
        return torch.cat([rgb, alpha], dim=-1)

    @staticmethod
    def _alpha(pha: torch.Tensor) -> torch.Tensor:
        alpha = _to_byte(pha.squeeze(0))
        rgb = _constant(alpha.shape[0], alpha.shape[1], 3, alpha.device)
        return torch.cat([rgb, alpha], dim=-1)

    @staticmethod
    def _foreground(fgr: torch.Tensor) -> torch.Tensor:
        rgb = _to_byte(fgr.squeeze(0))
        alpha = _constant(rgb.shape[0], rgb.shape[1], 1, rgb.device)
        return torch.cat([rgb, alpha], dim=-1)
