from __future__ import annotations

import threading
import warnings

import numpy as np
import pytest

from simcam.config import OverlapPolicy, PipelineOptions
from simcam.device.compute import ComputeDevice, LinearBuffer, Surface
from simcam.device.kernels import (
    DISTORT_ENTRY,
    SHARPEN_ENTRY,
    ComputeKernel,
    KernelLibrary,
    distort_kernel,
    sharpen_kernel,
)
from simcam.errors import (
    AllocationError,
    ConfigurationError,
    KernelResolutionError,
    ParameterMismatchWarning,
    PipelineStateError,
    ReadbackError,
)
from simcam.params import CameraParameters
from simcam.pipeline.orchestrator import CameraPipeline, PipelineState
from simcam.pipeline.sources import FrameRecorder


class CountingSource:
    """Renders frame n as a flat image of value n % 256."""

    def __init__(self, pipeline_ref: list | None = None):
        self.calls = 0
        self.states: list[PipelineState] = []
        self._pipeline_ref = pipeline_ref

    def render(self, target: Surface, params: CameraParameters) -> None:
        if self._pipeline_ref:
            self.states.append(self._pipeline_ref[0].state)
        target.data[..., :3] = self.calls % 256
        target.data[..., 3] = 255
        self.calls += 1


class FlakyDevice(ComputeDevice):
    """Synchronous device whose n-th readbacks fail."""

    def __init__(self, fail_on: set[int]):
        super().__init__(asynchronous=False)
        self.fail_on = set(fail_on)
        self.reads = 0

    def _read_buffer(self, buffer: LinearBuffer) -> bytes:
        i = self.reads
        self.reads += 1
        if i in self.fail_on:
            raise ReadbackError("simulated transfer failure")
        return super()._read_buffer(buffer)


class FailOnceDevice(ComputeDevice):
    """Synchronous device whose first surface allocation fails."""

    def __init__(self):
        super().__init__(asynchronous=False)
        self.failed = False

    def create_surface(self, name: str, width: int, height: int, random_write: bool = False) -> Surface:
        if not self.failed:
            self.failed = True
            raise AllocationError(f"simulated out of memory for {name}")
        return super().create_surface(name, width, height, random_write=random_write)


def _pipeline(device: ComputeDevice | None = None, source=None, **options) -> tuple[CameraPipeline, FrameRecorder]:
    rec = FrameRecorder()
    pipeline = CameraPipeline(
        CameraParameters(width=256, height=256),
        source if source is not None else CountingSource(),
        sink=rec,
        device=device if device is not None else ComputeDevice(asynchronous=False),
        options=PipelineOptions(**options),
    )
    return pipeline, rec


def test_single_frame_lifecycle():
    pipeline, rec = _pipeline()
    pipeline.start()
    assert pipeline.state is PipelineState.IDLE
    assert pipeline.params.fx == pytest.approx(128.0)
    assert pipeline.params.cx == 128.5

    assert pipeline.trigger() is True
    assert pipeline.state is PipelineState.READBACK_PENDING
    assert pipeline.buffers.locked

    out = pipeline.tick()
    assert out is not None
    assert pipeline.state is PipelineState.IDLE
    assert not pipeline.buffers.locked
    assert out.output_bytes is pipeline.buffers.output_bytes
    assert len(out.output_bytes) == 256 * 256 * 3
    assert out.camera_parameters is pipeline.params
    assert rec.indices == [0]
    assert pipeline.metrics["delivered"] == 1
    assert pipeline.metrics["stages_dispatched"] == 3
    pipeline.close()


def test_frames_delivered_in_trigger_order():
    pipeline, rec = _pipeline()
    pipeline.start()
    for _ in range(5):
        assert pipeline.trigger()
        pipeline.tick()
    assert rec.indices == [0, 1, 2, 3, 4]
    for k, frame in enumerate(rec.frames):
        assert frame == bytes([k]) * (256 * 256 * 3)
    pipeline.close()


def test_at_most_one_frame_in_flight_with_queue():
    ref: list = []
    source = CountingSource(ref)
    pipeline, rec = _pipeline(source=source, overlap_policy=OverlapPolicy.QUEUE, max_queued_triggers=2)
    ref.append(pipeline)
    pipeline.start()

    assert pipeline.trigger()
    assert pipeline.trigger()
    assert pipeline.trigger()
    assert pipeline.trigger() is False
    assert source.calls == 1
    assert pipeline.queued_triggers == 2
    assert pipeline.metrics["triggers_deferred"] == 2
    assert pipeline.metrics["triggers_dropped"] == 1

    pipeline.tick()
    assert rec.indices == [0]
    assert source.calls == 2
    assert pipeline.state is PipelineState.READBACK_PENDING
    pipeline.tick()
    pipeline.tick()
    pipeline.tick()
    assert rec.indices == [0, 1, 2]
    assert pipeline.state is PipelineState.IDLE
    assert source.states == [PipelineState.RENDERING] * 3
    pipeline.close()


def test_drop_policy_refuses_overlapping_trigger():
    pipeline, rec = _pipeline(overlap_policy=OverlapPolicy.DROP)
    pipeline.start()
    assert pipeline.trigger()
    assert pipeline.trigger() is False
    pipeline.tick()
    pipeline.tick()
    assert rec.indices == [0]
    assert pipeline.metrics["triggers_dropped"] == 1
    pipeline.close()


def test_readback_failure_only_drops_that_frame():
    pipeline, rec = _pipeline(device=FlakyDevice(fail_on={1}))
    pipeline.start()
    for _ in range(3):
        pipeline.trigger()
        pipeline.tick()
    assert rec.indices == [0, 2]
    assert rec.frames[1] == bytes([2]) * (256 * 256 * 3)
    assert pipeline.metrics["readback_failed"] == 1
    assert pipeline.metrics["delivered"] == 2
    assert pipeline.state is PipelineState.IDLE
    pipeline.close()


def test_coefficient_update_is_staged_while_in_flight():
    pipeline, rec = _pipeline()
    pipeline.start()
    pipeline.trigger()
    pipeline.update_coefficients(k1=0.1)
    assert pipeline.params.k1 == 0.0
    pipeline.tick()
    assert rec.parameters[0].k1 == 0.0

    pipeline.trigger()
    pipeline.tick()
    assert rec.parameters[1].k1 == 0.1
    pipeline.close()


def test_invalid_update_is_rejected_immediately():
    pipeline, _ = _pipeline()
    pipeline.start()
    with pytest.raises(ConfigurationError):
        pipeline.update_coefficients(p1=0.9)
    assert pipeline.params.p1 == 0.0
    pipeline.close()


def test_resize_reallocates_buffers():
    pipeline, rec = _pipeline()
    pipeline.start()
    params = pipeline.resize(512, 256)
    assert params.fx == pytest.approx(256.0)
    assert pipeline.buffers.size == (512, 256)
    pipeline.trigger()
    pipeline.tick()
    assert len(rec.frames[0]) == 512 * 256 * 3
    assert rec.parameters[0].width == 512
    pipeline.close()


def test_resize_during_frame_waits_for_idle():
    pipeline, rec = _pipeline()
    pipeline.start()
    pipeline.trigger()
    pipeline.resize(512, 256)
    assert pipeline.buffers.size == (256, 256)
    pipeline.tick()
    assert len(rec.frames[0]) == 256 * 256 * 3
    assert pipeline.buffers.size == (512, 256)
    pipeline.close()


def test_allocation_failure_halts_until_next_resize():
    pipeline, rec = _pipeline(device=FailOnceDevice())
    pipeline.start()
    assert pipeline.halted
    assert pipeline.trigger() is False
    assert pipeline.metrics["render_requested"] == 0

    pipeline.resize(512, 256)
    assert not pipeline.halted
    assert pipeline.trigger()
    pipeline.tick()
    assert rec.indices == [0]
    pipeline.close()


def test_missing_kernel_aborts_start():
    library = KernelLibrary([ComputeKernel(SHARPEN_ENTRY, (8, 8), sharpen_kernel)])
    pipeline = CameraPipeline(
        CameraParameters(width=256, height=256),
        CountingSource(),
        device=ComputeDevice(asynchronous=False),
        library=library,
    )
    with pytest.raises(KernelResolutionError):
        pipeline.start()
    assert not pipeline.started


def test_invalid_parameters_abort_start():
    pipeline = CameraPipeline(CameraParameters(width=100, height=256), CountingSource(), device=ComputeDevice(asynchronous=False))
    with pytest.raises(ConfigurationError):
        pipeline.start()


def test_trigger_requires_start():
    pipeline, _ = _pipeline()
    with pytest.raises(PipelineStateError):
        pipeline.trigger()


def test_close_abandons_pending_readback():
    pipeline, rec = _pipeline()
    pipeline.start()
    pipeline.trigger()
    request = pipeline._in_flight.request
    pipeline.close()
    assert request.invalidated
    assert pipeline.state is PipelineState.CLOSED
    assert pipeline.buffers.released
    assert len(rec) == 0
    assert pipeline.tick() is None
    with pytest.raises(PipelineStateError):
        pipeline.trigger()
    pipeline.close()


def test_identity_correction_returns_rendered_image():
    rng = np.random.default_rng(3)
    image = rng.integers(0, 256, size=(256, 256, 4), dtype=np.uint8)

    class Still:
        def render(self, target: Surface, params: CameraParameters) -> None:
            target.data[...] = image

    pipeline, rec = _pipeline(source=Still(), enable_lens_distortion_correction=True)
    pipeline.start()
    pipeline.trigger()
    pipeline.tick()
    assert pipeline.metrics["stages_dispatched"] == 4
    assert rec.frames[0] == np.ascontiguousarray(image[..., :3]).tobytes()
    pipeline.close()


def test_sink_error_propagates_and_pipeline_recovers():
    calls = []

    def sink(output):
        calls.append(output.frame_index)
        if len(calls) == 1:
            raise RuntimeError("consumer failed")

    pipeline = CameraPipeline(
        CameraParameters(width=256, height=256), CountingSource(), sink=sink, device=ComputeDevice(asynchronous=False)
    )
    pipeline.start()
    pipeline.trigger()
    with pytest.raises(RuntimeError):
        pipeline.tick()
    assert pipeline.state is PipelineState.IDLE
    pipeline.trigger()
    pipeline.tick()
    assert calls == [0, 1]
    pipeline.close()


@pytest.mark.integration
def test_asynchronous_device_delivers_all_frames():
    rec = FrameRecorder()
    with CameraPipeline(
        CameraParameters(width=640, height=480, k1=-0.05),
        CountingSource(),
        sink=rec,
        options=PipelineOptions(enable_lens_distortion_correction=True, sharpening_strength=0.2),
    ) as pipeline:
        requested = 0
        while requested < 4:
            if pipeline.trigger():
                requested += 1
            pipeline.tick()
        pipeline.flush(timeout=30.0)
    assert rec.indices == [0, 1, 2, 3]
    assert pipeline.device.closed


class ShortReadDevice(ComputeDevice):
    """Synchronous device whose n-th readbacks come back one word short."""

    def __init__(self, short_on: set[int]):
        super().__init__(asynchronous=False)
        self.short_on = set(short_on)
        self.reads = 0

    def _read_buffer(self, buffer: LinearBuffer) -> bytes:
        data = super()._read_buffer(buffer)
        i = self.reads
        self.reads += 1
        return data[:-4] if i in self.short_on else data


class GatedDevice(ComputeDevice):
    """Asynchronous device whose readbacks block until `gate` is set."""

    def __init__(self):
        super().__init__(asynchronous=True)
        self.gate = threading.Event()

    def _read_buffer(self, buffer: LinearBuffer) -> bytes:
        self.gate.wait(timeout=10.0)
        return super()._read_buffer(buffer)


def test_short_readback_drops_frame():
    pipeline, rec = _pipeline(device=ShortReadDevice(short_on={0}))
    pipeline.start()
    pipeline.trigger()
    assert pipeline.tick() is None
    assert len(rec) == 0
    assert pipeline.state is PipelineState.IDLE

    pipeline.trigger()
    pipeline.tick()
    assert rec.indices == [1]
    assert rec.frames[0] == bytes([1]) * (256 * 256 * 3)
    assert pipeline.metrics["readback_failed"] == 1
    assert pipeline.metrics["delivered"] == 1
    pipeline.close()


def test_failed_dispatch_drops_frame():
    calls = []

    def faulty_distort(uniforms, src, dst, extent):
        calls.append(extent)
        if len(calls) == 1:
            raise RuntimeError("kernel fault")
        distort_kernel(uniforms, src, dst, extent)

    library = KernelLibrary.default()
    library.register(ComputeKernel(DISTORT_ENTRY, (8, 8), faulty_distort))
    rec = FrameRecorder()
    pipeline = CameraPipeline(
        CameraParameters(width=256, height=256),
        CountingSource(),
        sink=rec,
        device=ComputeDevice(asynchronous=False),
        library=library,
    )
    pipeline.start()
    pipeline.trigger()
    request = pipeline._in_flight.request
    pipeline.tick()
    assert isinstance(request.error, ReadbackError)
    assert len(rec) == 0
    assert pipeline.metrics["readback_failed"] == 1

    pipeline.trigger()
    pipeline.tick()
    assert rec.indices == [1]
    assert rec.frames[0] == bytes([1]) * (256 * 256 * 3)
    pipeline.close()


@pytest.mark.integration
def test_close_invalidates_readback_running_on_device():
    device = GatedDevice()
    pipeline, rec = _pipeline(device=device)
    pipeline.start()
    pipeline.trigger()
    request = pipeline._in_flight.request
    assert not request.done
    assert pipeline.tick() is None
    assert pipeline.state is PipelineState.READBACK_PENDING

    timer = threading.Timer(0.05, device.gate.set)
    timer.start()
    pipeline.close()
    timer.join()

    assert request.invalidated
    assert request.done
    with pytest.raises(ReadbackError):
        request.data()
    assert len(rec) == 0
    assert pipeline.state is PipelineState.CLOSED
    assert pipeline.buffers.released
    device.close()


def test_sink_closing_pipeline_leaves_it_closed():
    holder: list[CameraPipeline] = []
    pipeline = CameraPipeline(
        CameraParameters(width=256, height=256),
        CountingSource(),
        sink=lambda output: holder[0].close(),
        device=ComputeDevice(asynchronous=False),
    )
    holder.append(pipeline)
    pipeline.start()
    pipeline.trigger()
    assert pipeline.tick() is not None
    assert pipeline.state is PipelineState.CLOSED
    assert pipeline.buffers.released
    with pytest.raises(PipelineStateError):
        pipeline.trigger()


def test_coefficient_reload_keeps_user_focal_length_silently():
    pipeline = CameraPipeline(
        CameraParameters(width=256, height=256, fx=300.0),
        CountingSource(),
        device=ComputeDevice(asynchronous=False),
    )
    with pytest.warns(ParameterMismatchWarning):
        pipeline.start()
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        params = pipeline.update_coefficients(k1=0.05)
        pipeline.update_coefficients(k1=0.06)
    assert params.fx == 300.0
    assert params.k1 == 0.05
    assert (params.cx, params.cy) == (128.5, 128.5)
    assert pipeline.params.k1 == 0.06
    pipeline.close()


def test_halting_drops_deferred_triggers():
    pipeline, rec = _pipeline(device=ComputeDevice(asynchronous=False, max_surface_dim=400))
    pipeline.start()
    assert pipeline.trigger()
    assert pipeline.trigger()
    pipeline.resize(512, 256)
    pipeline.tick()
    assert rec.indices == [0]
    assert pipeline.halted
    assert pipeline.queued_triggers == 0
    assert pipeline.metrics["triggers_deferred"] == 1
    assert pipeline.metrics["triggers_dropped"] == 1
    assert pipeline.metrics["render_requested"] == 1
    pipeline.close()
