"""
Cooperative capture -> infer -> render -> promote loop.

One asyncio task drives the loop. Between cycles it waits for the next
refresh tick; inside a cycle every blocking step (capture, the model call,
pixel materialisation) runs in a worker thread so the event loop stays
responsive, but steps never overlap and only one cycle is ever in flight.
"""

from __future__ import annotations

import abc
import asyncio
import enum
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from .algorithms.base import InferenceOutput, RecurrentMattingModel
from .errors import (
    CaptureFailure,
    EndOfStream,
    InferenceFailure,
    MattingError,
    RenderFailure,
)
from .render import TrackedOutput, ViewMode, ViewRenderer, select_view
from .resources import TensorLedger
from .sources import FrameSource
from .state import RecurrentStateSet, RecurrentStateStore
from .surfaces import DisplaySurface

logger = logging.getLogger(__name__)

__all__ = [
    "SchedulerState",
    "PerformanceSample",
    "RefreshClock",
    "ImmediateClock",
    "FixedRateClock",
    "execute_cycle",
    "CycleScheduler",
]

OUTPUT_LABELS = ("fgr", "pha", "r1o", "r2o", "r3o", "r4o")


class SchedulerState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    FAULTED = "faulted"


@dataclass(frozen=True)
class PerformanceSample:
    cycle: int
    capture_to_inference_ms: float
    total_cycle_ms: float
    timestamp: float

    @property
    def fps(self) -> float:
        if self.total_cycle_ms <= 0:
            return 0.0
        return 1000.0 / self.total_cycle_ms


class RefreshClock(abc.ABC):
    """Suspends the loop until the next display refresh opportunity."""

    @abc.abstractmethod
    async def tick(self) -> None:
        ...


class ImmediateClock(RefreshClock):
    """Yields to the event loop once per tick; used offline and in tests."""

    async def tick(self) -> None:
        await asyncio.sleep(0)


class FixedRateClock(RefreshClock):
    """
    Ticks on a fixed grid of ``1 / rate`` seconds, like a display's vsync.

    A cycle that overruns its slot waits for the next grid point rather than
    firing immediately, so late frames are dropped instead of queued.
    """

    def __init__(self, rate: float = 60.0) -> None:
        if rate <= 0:
            raise ValueError("Refresh rate must be positive.")
        self.interval = 1.0 / rate
        self._anchor: Optional[float] = None

    async def tick(self) -> None:
        now = asyncio.get_running_loop().time()
        if self._anchor is None:
            self._anchor = now
            await asyncio.sleep(0)
            return
        periods = max(1, math.ceil((now - self._anchor) / self.interval))
        await asyncio.sleep(max(0.0, self._anchor + periods * self.interval - now))


def _check_output(raw: InferenceOutput, cycle: int) -> None:
    fgr, pha = raw[0], raw[1]
    if fgr.dim() != 4 or fgr.shape[-1] != 3:
        raise InferenceFailure(f"Foreground has shape {tuple(fgr.shape)}, expected [1,H,W,3].", cycle=cycle)
    if pha.dim() != 4 or pha.shape[-1] != 1:
        raise InferenceFailure(f"Alpha has shape {tuple(pha.shape)}, expected [1,H,W,1].", cycle=cycle)
    for idx, state in enumerate(raw[2:], start=1):
        if state.dim() != 4:
            raise InferenceFailure(
                f"Hidden state r{idx}o has shape {tuple(state.shape)}, expected [1,H,W,C].", cycle=cycle
            )


async def execute_cycle(
    *,
    store: RecurrentStateStore,
    ledger: TensorLedger,
    source: FrameSource,
    model: RecurrentMattingModel,
    renderer: ViewRenderer,
    surface: DisplaySurface,
    view_mode: ViewMode,
    downsample_ratio: float,
    cycle: int = 0,
) -> PerformanceSample:
    """
    Run one capture -> infer -> render -> promote cycle.

    Every tensor tracked here is either released before returning or moved
    into ``store``; on failure the store keeps its previous state and the
    tracked tensors are released before the error propagates.
    """
    started = time.perf_counter()

    with ledger.scope() as scope:
        try:
            captured = await asyncio.to_thread(source.capture)
        except CaptureFailure as exc:
            exc.cycle = cycle
            raise
        except Exception as exc:
            raise CaptureFailure(f"Frame capture failed: {exc}", cycle=cycle) from exc
        frame = scope.track(captured, "frame")
        captured_at = time.perf_counter()

        with store.borrow() as rec:
            try:
                raw = await asyncio.to_thread(model.infer, frame.tensor, *rec, downsample_ratio)
            except Exception as exc:
                raise InferenceFailure(f"Inference failed: {exc}", cycle=cycle) from exc
        inferred_at = time.perf_counter()
        scope.release(frame)

        if not isinstance(raw, (tuple, list)) or len(raw) != len(OUTPUT_LABELS):
            raise InferenceFailure(f"Model returned {type(raw).__name__}, expected 6 tensors.", cycle=cycle)
        try:
            output = TrackedOutput(*(scope.track(tensor, label) for tensor, label in zip(raw, OUTPUT_LABELS)))
        except TypeError as exc:
            raise InferenceFailure(f"Model returned a non-tensor output: {exc}", cycle=cycle) from exc
        _check_output(raw, cycle)

        view = select_view(view_mode, output)
        backdrop = None if view_mode.hidden_index is not None else view_mode.backdrop
        try:
            pixels = await asyncio.to_thread(renderer.render, view)
            await asyncio.to_thread(surface.present, pixels, backdrop)
        except RenderFailure as exc:
            exc.cycle = cycle
            raise
        except Exception as exc:
            raise RenderFailure(f"Rendering failed: {exc}", cycle=cycle) from exc
        scope.release_all(handle for handle in (output.fgr, output.pha) if handle.valid)

        new_state = RecurrentStateSet(output.r1o.move(), output.r2o.move(), output.r3o.move(), output.r4o.move())
        try:
            store.promote(new_state)
        except Exception:
            scope.release_all(handle for handle in new_state if handle.valid)
            raise

    finished = time.perf_counter()
    return PerformanceSample(
        cycle=cycle,
        capture_to_inference_ms=(inferred_at - captured_at) * 1000.0,
        total_cycle_ms=(finished - started) * 1000.0,
        timestamp=time.time(),
    )


SampleObserver = Callable[[PerformanceSample], None]
FaultObserver = Callable[[MattingError], None]


class CycleScheduler:
    """
    State machine driving :func:`execute_cycle` once per refresh tick.

    ``start``/``stop`` are plain methods and must be called from the thread
    running the event loop. ``stop`` is cooperative: a cycle already in flight
    completes and releases its tensors before the loop goes idle.
    """

    def __init__(
        self,
        model: RecurrentMattingModel,
        source: FrameSource,
        surface: DisplaySurface,
        *,
        ledger: Optional[TensorLedger] = None,
        store: Optional[RecurrentStateStore] = None,
        renderer: Optional[ViewRenderer] = None,
        clock: Optional[RefreshClock] = None,
        downsample_ratio: float = 0.5,
        view_mode: Union[ViewMode, str] = ViewMode.PLAIN_WHITE,
        reset_on_recover: bool = True,
    ) -> None:
        self.model = model
        self.source = source
        self.surface = surface
        self.ledger = ledger if ledger is not None else TensorLedger()
        self.store = store if store is not None else RecurrentStateStore(self.ledger)
        self.renderer = renderer if renderer is not None else ViewRenderer(self.ledger)
        self.clock = clock if clock is not None else ImmediateClock()
        self.downsample_ratio = float(downsample_ratio)
        self.reset_on_recover = reset_on_recover
        self._view_mode = ViewMode.parse(view_mode)

        self._state = SchedulerState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._generation = 0
        self._in_cycle = False
        self._cycles = 0
        self._last_sample: Optional[PerformanceSample] = None
        self._last_error: Optional[MattingError] = None
        self._source_changed = False
        self._sample_observers: List[SampleObserver] = []
        self._fault_observers: List[FaultObserver] = []

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def in_cycle(self) -> bool:
        return self._in_cycle

    @property
    def cycles_started(self) -> int:
        return self._cycles

    @property
    def view_mode(self) -> ViewMode:
        return self._view_mode

    def set_view_mode(self, mode: Union[ViewMode, str]) -> None:
        self._view_mode = ViewMode.parse(mode)
        logger.debug(f"View mode set to {self._view_mode.value}")

    def get_performance_sample(self) -> Optional[PerformanceSample]:
        return self._last_sample

    def get_last_error(self) -> Optional[MattingError]:
        return self._last_error

    def add_observer(
        self,
        on_sample: Optional[SampleObserver] = None,
        on_fault: Optional[FaultObserver] = None,
    ) -> None:
        if on_sample is not None:
            self._sample_observers.append(on_sample)
        if on_fault is not None:
            self._fault_observers.append(on_fault)

    def set_source(self, source: FrameSource) -> None:
        """Swap the frame source; recurrent state is reset on the next recovery."""
        if self._in_cycle:
            raise RuntimeError("Cannot replace the frame source while a cycle is in flight.")
        self.source = source
        self._source_changed = True

    def start(self) -> None:
        if self._state is SchedulerState.RUNNING:
            logger.debug("start() ignored: loop already running")
            return
        if self._state is SchedulerState.STOPPING:
            self._state = SchedulerState.RUNNING
            logger.info("Pending stop cancelled; loop keeps running")
            return
        if self._state is SchedulerState.FAULTED:
            self._recover()
        elif self._source_changed:
            self.store.reset()
            self._source_changed = False

        self._state = SchedulerState.RUNNING
        self._generation += 1
        self._task = asyncio.get_running_loop().create_task(self._run(self._generation))
        logger.info(f"Matting loop started (view={self._view_mode.value})")

    def stop(self) -> None:
        if self._state is SchedulerState.IDLE:
            return
        if self._state is SchedulerState.RUNNING and self._in_cycle:
            self._state = SchedulerState.STOPPING
            logger.info("Stop requested; letting the in-flight cycle finish")
            return
        if self._state is SchedulerState.STOPPING:
            return

        # RUNNING between cycles, or FAULTED: nothing is in flight.
        self._state = SchedulerState.IDLE
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.store.reset()
        logger.info("Matting loop stopped")

    async def join(self) -> None:
        task = self._task
        if task is None:
            return
        await asyncio.gather(task, return_exceptions=True)

    async def close(self) -> None:
        self.stop()
        await self.join()
        if not self.store.is_placeholder:
            self.store.reset()

    def _recover(self) -> None:
        reset = self.reset_on_recover or self._source_changed
        if reset:
            self.store.reset()
        logger.info(
            f"Recovering from {type(self._last_error).__name__}; "
            + ("recurrent state reset" if reset else "recurrent state preserved")
        )
        self._last_error = None
        self._source_changed = False

    def _active(self, generation: int) -> bool:
        return generation == self._generation and self._state is SchedulerState.RUNNING

    async def _run(self, generation: int) -> None:
        try:
            while self._active(generation):
                await self.clock.tick()
                if not self._active(generation):
                    break

                self._in_cycle = True
                self._cycles += 1
                cycle_task = asyncio.ensure_future(
                    execute_cycle(
                        store=self.store,
                        ledger=self.ledger,
                        source=self.source,
                        model=self.model,
                        renderer=self.renderer,
                        surface=self.surface,
                        view_mode=self._view_mode,
                        downsample_ratio=self.downsample_ratio,
                        cycle=self._cycles,
                    )
                )
                try:
                    sample = await asyncio.shield(cycle_task)
                except asyncio.CancelledError:
                    # The device call is never aborted; wait for the cycle to settle.
                    try:
                        await cycle_task
                    except Exception as exc:
                        self._fault(exc)
                    raise
                except EndOfStream as exc:
                    logger.info(f"Frame source exhausted after {self._cycles - 1} cycle(s): {exc}")
                    self._state = SchedulerState.IDLE
                    self.store.reset()
                    return
                except Exception as exc:
                    self._fault(exc)
                    return
                finally:
                    self._in_cycle = False

                self._record(sample)
        finally:
            if generation == self._generation and self._state is SchedulerState.STOPPING:
                self._state = SchedulerState.IDLE
                self.store.reset()
                logger.info("Matting loop stopped")

    def _record(self, sample: PerformanceSample) -> None:
        self._last_sample = sample
        for observer in self._sample_observers:
            try:
                observer(sample)
            except Exception:
                logger.exception("Performance observer raised")

    def _fault(self, exc: Exception) -> None:
        if isinstance(exc, MattingError):
            error = exc
        else:
            error = MattingError(f"Unexpected failure: {exc}", cycle=self._cycles)
            error.__cause__ = exc
        self._last_error = error
        self._state = SchedulerState.FAULTED
        logger.error(f"Matting loop faulted: {error}", exc_info=exc)
        for observer in self._fault_observers:
            try:
                observer(error)
            except Exception:
                logger.exception("Fault observer raised")
