"""
Ownership tracking for tensors allocated by the matting loop.

Every tensor produced during a cycle is wrapped in an :class:`OwnedTensor`
handle registered with a :class:`TensorLedger`. Handles are single-owner:
``move()`` transfers the tensor into a new handle and empties the old one, and
releasing a handle empties it. The ledger only accepts handles, so a plain
tensor obtained as a borrow (for example from the recurrent state store) can
never be released by accident.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

import torch

from .errors import OwnershipError

logger = logging.getLogger(__name__)

__all__ = ["OwnedTensor", "TensorLedger", "CycleScope"]


class OwnedTensor:
    """
    Move-only handle to a tracked tensor.
    """

    __slots__ = ("_tensor", "_token", "_ledger", "label")

    def __init__(self, tensor: torch.Tensor, token: int, ledger: "TensorLedger", label: str = "") -> None:
        self._tensor: Optional[torch.Tensor] = tensor
        self._token = token
        self._ledger = ledger
        self.label = label

    @property
    def valid(self) -> bool:
        return self._tensor is not None

    @property
    def token(self) -> int:
        return self._token

    @property
    def tensor(self) -> torch.Tensor:
        if self._tensor is None:
            raise OwnershipError(f"Handle {self!r} no longer owns a tensor.")
        return self._tensor

    def move(self) -> "OwnedTensor":
        """Transfer ownership to a new handle; this handle becomes empty."""
        tensor = self.tensor
        moved = OwnedTensor(tensor, self._token, self._ledger, self.label)
        self._tensor = None
        return moved

    def _take(self, ledger: "TensorLedger") -> tuple[int, torch.Tensor]:
        if ledger is not self._ledger:
            raise OwnershipError(f"Handle {self!r} belongs to a different ledger.")
        tensor = self.tensor
        self._tensor = None
        return self._token, tensor

    def __repr__(self) -> str:
        state = "owned" if self.valid else "empty"
        shape = tuple(self._tensor.shape) if self._tensor is not None else None
        return f"OwnedTensor(label={self.label!r}, token={self._token}, shape={shape}, {state})"


class TensorLedger:
    """
    Counts allocations and releases of tracked tensors.

    Releasing drops the ledger's reference to the tensor; on CUDA devices the
    caching allocator reclaims the block once no other references remain.
    """

    def __init__(self) -> None:
        self._live: Dict[int, torch.Tensor] = {}
        self._next_token = 0
        self.allocated = 0
        self.released = 0

    @property
    def outstanding(self) -> int:
        return len(self._live)

    def track(self, tensor: torch.Tensor, label: str = "") -> OwnedTensor:
        if not isinstance(tensor, torch.Tensor):
            raise TypeError(f"Expected a torch.Tensor, got {type(tensor).__name__}.")
        token = self._next_token
        self._next_token += 1
        self._live[token] = tensor
        self.allocated += 1
        return OwnedTensor(tensor, token, self, label)

    def release(self, handle: OwnedTensor) -> None:
        if not isinstance(handle, OwnedTensor):
            raise TypeError(
                "Only OwnedTensor handles can be released; borrowed tensors are owned elsewhere."
            )
        token, _ = handle._take(self)
        if self._live.pop(token, None) is None:
            raise OwnershipError(f"Tensor token {token} was already released.")
        self.released += 1

    def release_all(self, handles: Iterable[OwnedTensor]) -> None:
        for handle in handles:
            self.release(handle)

    def scope(self) -> "CycleScope":
        return CycleScope(self)


class CycleScope:
    """
    Tracks the handles created during one cycle and releases the ones still
    owned when the scope exits, whatever the exit path.
    """

    def __init__(self, ledger: TensorLedger) -> None:
        self.ledger = ledger
        self._handles: List[OwnedTensor] = []
        self._closed = False

    def track(self, tensor: torch.Tensor, label: str = "") -> OwnedTensor:
        if self._closed:
            raise OwnershipError("Cannot track tensors on a closed scope.")
        handle = self.ledger.track(tensor, label)
        self._handles.append(handle)
        return handle

    def release(self, handle: OwnedTensor) -> None:
        self.ledger.release(handle)

    def release_all(self, handles: Iterable[OwnedTensor]) -> None:
        self.ledger.release_all(handles)

    @property
    def owned(self) -> List[OwnedTensor]:
        return [handle for handle in self._handles if handle.valid]

    def close(self) -> int:
        leftovers = self.owned
        self._closed = True
        self._handles = []
        if leftovers:
            logger.debug(
                f"Releasing {len(leftovers)} tensor(s) still owned at scope exit: "
                + ", ".join(handle.label or str(handle.token) for handle in leftovers)
            )
        for handle in leftovers:
            self.ledger.release(handle)
        return len(leftovers)

    def __enter__(self) -> "CycleScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

