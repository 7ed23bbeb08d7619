from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, List, NamedTuple, Tuple

import torch

from .errors import OwnershipError
from .resources import OwnedTensor, TensorLedger

logger = logging.getLogger(__name__)

__all__ = ["RecurrentStateSet", "RecurrentTensors", "RecurrentStateStore"]

STATE_SIZE = 4


class RecurrentStateSet(NamedTuple):
    """Owned hidden states r1..r4, moved into the store as a unit."""

    r1: OwnedTensor
    r2: OwnedTensor
    r3: OwnedTensor
    r4: OwnedTensor


class RecurrentTensors(NamedTuple):
    """Borrowed view of the current hidden states, valid for one inference call."""

    r1: torch.Tensor
    r2: torch.Tensor
    r3: torch.Tensor
    r4: torch.Tensor


class RecurrentStateStore:
    """
    Single holder of the current recurrent state set.

    The store starts with four rank-0 zero tensors, which models treat as
    "no prior state". Only the scheduler calls :meth:`promote` and
    :meth:`reset`.
    """

    def __init__(self, ledger: TensorLedger, device: torch.device | str = "cpu") -> None:
        self.ledger = ledger
        self.device = torch.device(device)
        self._borrows = 0
        self._placeholder = True
        self._current: RecurrentStateSet = self._zero_set()

    def _zero_set(self) -> RecurrentStateSet:
        return RecurrentStateSet(
            *(
                self.ledger.track(torch.tensor(0.0, device=self.device), label=f"r{idx}-init")
                for idx in range(1, STATE_SIZE + 1)
            )
        )

    @property
    def is_placeholder(self) -> bool:
        return self._placeholder

    @property
    def borrowed(self) -> bool:
        return self._borrows > 0

    def current(self) -> RecurrentTensors:
        return RecurrentTensors(*(handle.tensor for handle in self._current))

    @contextmanager
    def borrow(self) -> Iterator[RecurrentTensors]:
        self._borrows += 1
        try:
            yield self.current()
        finally:
            self._borrows -= 1

    def shapes(self) -> List[Tuple[int, ...]]:
        return [tuple(handle.tensor.shape) for handle in self._current]

    def promote(self, new_set: RecurrentStateSet) -> None:
        if self.borrowed:
            raise OwnershipError("Cannot promote recurrent state while it is borrowed.")
        if not isinstance(new_set, RecurrentStateSet) or not all(handle.valid for handle in new_set):
            raise OwnershipError("promote() requires a fully owned RecurrentStateSet.")
        stale, self._current = self._current, new_set
        self._placeholder = False
        self.ledger.release_all(stale)

    def reset(self) -> None:
        if self.borrowed:
            raise OwnershipError("Cannot reset recurrent state while it is borrowed.")
        stale, self._current = self._current, self._zero_set()
        self._placeholder = True
        self.ledger.release_all(stale)
        logger.debug("Recurrent state reset to zero placeholder.")
