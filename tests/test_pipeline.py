"""
Tests for configuration, model loading and the session facade.
"""

import pytest
import torch

from conftest import FakeRecurrentModel, make_frames, wait_until
from livematting.errors import ModelLoadFailure
from livematting.pipeline import MODEL_REGISTRY, LiveMattingConfig, LiveMattingSession, load_model
from livematting.render import ViewMode
from livematting.scheduler import FixedRateClock, ImmediateClock, SchedulerState
from livematting.sources import FrameSource, TensorFrameSource
from livematting.surfaces import FrameBufferSurface


class ClosingSource(TensorFrameSource):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.closed = False

    def close(self) -> None:
        self.closed = True


def _session(**overrides):
    config = LiveMattingConfig(device="cpu", refresh_rate=None, **overrides)
    source = ClosingSource(make_frames(), loop=True)
    return LiveMattingSession(config, source, FrameBufferSurface(), model=FakeRecurrentModel())


class TestConfig:
    def test_defaults(self):
        config = LiveMattingConfig()
        assert config.downsample_ratio == 0.5
        assert config.view_mode == "plain-white"
        assert config.frame_size == (480, 640)
        assert config.torch_device() == torch.device("cuda:0")

    def test_clock_selection(self):
        assert isinstance(LiveMattingConfig(refresh_rate=30).build_clock(), FixedRateClock)
        assert isinstance(LiveMattingConfig(refresh_rate=None).build_clock(), ImmediateClock)

    def test_registry_keys(self):
        assert set(MODEL_REGISTRY) == {
            "rvm-mobilenetv3",
            "rvm-resnet50",
            "rvm-mobilenetv3-onnx",
            "rvm-resnet50-onnx",
        }


class TestLoadModel:
    def test_unknown_model(self):
        with pytest.raises(ModelLoadFailure):
            load_model(LiveMattingConfig(model_name="modnet", device="cpu"))

    def test_invalid_downsample_ratio(self):
        with pytest.raises(ModelLoadFailure):
            load_model(LiveMattingConfig(device="cpu", downsample_ratio=0.0))

    def test_cuda_required_for_cuda_device(self, monkeypatch):
        monkeypatch.setattr(torch.cuda, "is_available", lambda: False)
        with pytest.raises(ModelLoadFailure):
            load_model(LiveMattingConfig(device="cuda:0"))

    def test_missing_weights_without_network(self, tmp_path, monkeypatch):
        def offline(*args, **kwargs):
            raise OSError("network unreachable")

        monkeypatch.setattr("livematting.algorithms.base.download_file", offline)
        with pytest.raises(ModelLoadFailure) as excinfo:
            load_model(LiveMattingConfig(device="cpu", weights_dir=tmp_path))
        assert "network unreachable" in str(excinfo.value)


class TestSession:
    @pytest.mark.asyncio
    async def test_start_stop_and_metrics(self):
        session = _session()
        assert session.state is SchedulerState.IDLE
        assert session.get_performance_sample() is None

        session.start()
        await wait_until(lambda: session.get_performance_sample() is not None)
        session.stop()
        await session.join()

        assert session.state is SchedulerState.IDLE
        assert session.get_last_error() is None
        assert session.ledger.outstanding == 4
        await session.close()
        assert session.source.closed

    @pytest.mark.asyncio
    async def test_set_view_mode(self):
        session = _session(view_mode="alpha-only")
        assert session.scheduler.view_mode is ViewMode.ALPHA_ONLY

        session.set_view_mode(ViewMode.HIDDEN_2)
        assert session.scheduler.view_mode is ViewMode.HIDDEN_2
        with pytest.raises(ValueError):
            session.set_view_mode("sepia")
        await session.close()

    @pytest.mark.asyncio
    async def test_observers_receive_samples(self):
        session = _session()
        samples = []
        session.add_observer(on_sample=samples.append)
        session.start()
        await wait_until(lambda: len(samples) >= 3)
        await session.close()
        assert all(sample.total_cycle_ms >= 0 for sample in samples)

    @pytest.mark.asyncio
    async def test_replace_source_closes_previous(self):
        session = _session()
        previous = session.source
        replacement = ClosingSource(make_frames(seed=3), loop=True)

        session.replace_source(replacement)
        assert previous.closed
        assert session.source is replacement

        session.start()
        await wait_until(lambda: session.get_performance_sample() is not None)
        await session.close()
        assert replacement.closed

    @pytest.mark.asyncio
    async def test_store_lives_on_model_device(self):
        session = _session()
        assert session.store.current().r1.device == session.model.device
        assert isinstance(session.source, FrameSource)
        await session.close()
