from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum

from simcam.config import OverlapPolicy, PipelineOptions, SensorConfig
from simcam.device.compute import ComputeDevice, ReadbackRequest
from simcam.device.kernels import KernelLibrary
from simcam.errors import AllocationError, PipelineStateError, ReadbackError
from simcam.params import CameraParameters, LensGeometry, derive_camera_parameters
from simcam.pipeline.buffers import FrameBufferSet
from simcam.pipeline.metrics import PipelineMetrics
from simcam.pipeline.sources import OutputSink, RenderSource
from simcam.pipeline.stages import StageExecutor, StageId, build_stage_chain

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    RENDERING = "rendering"
    DISPATCHING = "dispatching"
    READBACK_PENDING = "readback_pending"
    DELIVERING = "delivering"
    CLOSED = "closed"


@dataclass(frozen=True)
class OutputData:
    """
    One delivered frame.

    output_bytes: width*height*3 bytes, row-major BGR8 without padding. The
    buffer is reused by the next frame, so sinks copy what they keep.
    camera_parameters: the parameters the frame was rendered with.
    """

    output_bytes: bytearray
    camera_parameters: CameraParameters
    frame_index: int


@dataclass
class _InFlightFrame:
    index: int
    params: CameraParameters
    request: ReadbackRequest


class CameraPipeline:
    """
    Per-frame camera sensor pipeline driven by an external tick loop.

    trigger() renders and submits sharpen -> distort -> [correct] -> pack and
    requests an asynchronous readback of the packed buffer; tick() polls that
    readback and delivers the frame to the sink. At most one frame is in
    flight; triggers arriving meanwhile are deferred to a later tick or
    dropped, depending on `options.overlap_policy`.
    """

    def __init__(
        self,
        params: CameraParameters,
        source: RenderSource,
        sink: OutputSink | None = None,
        lens: LensGeometry | None = None,
        device: ComputeDevice | None = None,
        library: KernelLibrary | None = None,
        options: PipelineOptions | None = None,
        metrics: PipelineMetrics | None = None,
    ):
        self.source = source
        self.sink = sink
        self.lens = lens if lens is not None else LensGeometry()
        self.options = (options if options is not None else PipelineOptions()).validate()
        self._owns_device = device is None
        self.device = device if device is not None else ComputeDevice()
        self.library = library if library is not None else KernelLibrary.default()
        self.metrics = metrics if metrics is not None else PipelineMetrics()
        self.buffers = FrameBufferSet(self.device)
        self.chain = build_stage_chain(self.options.enable_lens_distortion_correction)
        self.stages = {stage: StageExecutor(stage) for stage, _, _ in self.chain}

        self.params: CameraParameters | None = None
        self.state = PipelineState.IDLE
        self._requested_params = params
        self._started = False
        self._halted = False
        self._queued = 0
        self._next_index = 0
        self._in_flight: _InFlightFrame | None = None
        self._staged_params: CameraParameters | None = None

    @classmethod
    def from_config(
        cls,
        cfg: SensorConfig,
        source: RenderSource,
        sink: OutputSink | None = None,
        device: ComputeDevice | None = None,
        library: KernelLibrary | None = None,
        metrics: PipelineMetrics | None = None,
    ) -> CameraPipeline:
        return cls(
            cfg.camera,
            source,
            sink=sink,
            lens=cfg.lens,
            device=device,
            library=library,
            options=cfg.pipeline,
            metrics=metrics,
        )

    @property
    def started(self) -> bool:
        return self._started

    @property
    def halted(self) -> bool:
        """True while buffer allocation has failed; cleared by the next successful resize."""
        return self._halted

    @property
    def in_flight(self) -> bool:
        return self.state not in (PipelineState.IDLE, PipelineState.CLOSED)

    @property
    def queued_triggers(self) -> int:
        return self._queued

    def start(self) -> CameraPipeline:
        """
        Derive intrinsics, resolve kernels and allocate buffers.

        ConfigurationError and KernelResolutionError abort startup. An
        AllocationError is logged and leaves the pipeline halted: triggers are
        refused until a later configuration change allocates successfully.
        """
        if self.state is PipelineState.CLOSED:
            raise PipelineStateError("pipeline is closed")
        if self._started:
            raise PipelineStateError("pipeline already started")
        params = derive_camera_parameters(self._requested_params, self.lens)
        for executor in self.stages.values():
            executor.configure(self.library)
        self.params = params
        self._started = True
        self._allocate(params)
        logger.info(
            "camera pipeline started: %dx%d, fx=%.3f fy=%.3f, correction=%s, sharpening=%.2f",
            params.width,
            params.height,
            params.fx,
            params.fy,
            self.options.enable_lens_distortion_correction,
            self.options.sharpening_strength,
        )
        return self

    def _allocate(self, params: CameraParameters) -> bool:
        try:
            self.buffers.ensure_allocated(params)
        except AllocationError as e:
            self._halted = True
            logger.error("frame buffer allocation failed, image production halted: %s", e)
            return False
        self._halted = False
        return True

    def _check_open(self) -> None:
        if self.state is PipelineState.CLOSED:
            raise PipelineStateError("pipeline is closed")
        if not self._started:
            raise PipelineStateError("pipeline is not started")

    def trigger(self) -> bool:
        """
        Request one frame. Returns True if the frame was started or deferred,
        False if it was refused (dropped, or the pipeline is halted).
        """
        self._check_open()
        if self.state is PipelineState.IDLE:
            self._apply_staged()
        if self._halted:
            self.metrics.record("triggers_dropped")
            logger.debug("trigger refused: pipeline halted")
            return False
        if self.state is not PipelineState.IDLE:
            if self.options.overlap_policy is OverlapPolicy.QUEUE and self._queued < self.options.max_queued_triggers:
                self._queued += 1
                self.metrics.record("triggers_deferred")
                return True
            self.metrics.record("triggers_dropped")
            logger.debug("trigger dropped: frame %d still in flight", self._in_flight.index if self._in_flight else -1)
            return False
        self._run_frame()
        return True

    def tick(self) -> OutputData | None:
        """
        Advance the pipeline once: poll the pending readback, deliver a
        completed frame, apply staged configuration, then start one deferred
        trigger. Returns the delivered frame, if any.
        """
        if self.state is PipelineState.CLOSED or not self._started:
            return None
        delivered = None
        if self.state is PipelineState.READBACK_PENDING:
            delivered = self._poll_readback()
        if self.state is PipelineState.IDLE:
            self._apply_staged()
            if self._queued and not self._halted:
                self._queued -= 1
                self._run_frame()
            elif self._halted and self._queued:
                self.metrics.record("triggers_dropped", self._queued)
                logger.debug("%d deferred trigger(s) dropped: pipeline halted", self._queued)
                self._queued = 0
        return delivered

    def _run_frame(self) -> None:
        params = self.params
        assert params is not None
        buffers = self.buffers
        index = self._next_index
        self._next_index += 1

        buffers.locked = True
        try:
            self.state = PipelineState.RENDERING
            self.metrics.record("render_requested")
            self.source.render(buffers.render_target, params)

            self.state = PipelineState.DISPATCHING
            for stage, src_name, dst_name in self.chain:
                executor = self.stages[stage]
                executor.bind_parameters(params, self.options.sharpening_strength)
                gx, gy = executor.group_counts(params)
                executor.dispatch(self.device, buffers.surface(src_name), buffers.surface(dst_name), gx, gy)
                self.metrics.record("stages_dispatched")

            request = self.device.request_readback(buffers.packed_buffer)
            self.metrics.record("readback_requested")
        except Exception:
            logger.exception("frame %d failed before readback", index)
            self.device.finish()
            self._end_frame()
            raise

        self._in_flight = _InFlightFrame(index=index, params=params, request=request)
        self.state = PipelineState.READBACK_PENDING

    def _poll_readback(self) -> OutputData | None:
        frame = self._in_flight
        assert frame is not None
        if not frame.request.done:
            return None
        self._in_flight = None

        try:
            data = frame.request.data()
        except ReadbackError as e:
            self.metrics.record("readback_failed")
            logger.warning("readback of frame %d failed, frame dropped: %s", frame.index, e)
            self._end_frame()
            return None
        self.metrics.record("readback_completed")

        out = self.buffers.output_bytes
        assert out is not None
        n = len(out)
        if len(data) < n:
            self.metrics.record("readback_failed")
            logger.warning("readback of frame %d returned %d bytes, expected %d; frame dropped", frame.index, len(data), n)
            self._end_frame()
            return None
        out[:] = data[:n]

        self.state = PipelineState.DELIVERING
        output = OutputData(output_bytes=out, camera_parameters=frame.params, frame_index=frame.index)
        try:
            if self.sink is not None:
                self.sink(output)
            self.metrics.record("delivered")
        finally:
            self._end_frame()
        return output

    def _end_frame(self) -> None:
        self.buffers.locked = False
        # The sink may have closed the pipeline during delivery.
        if self.state is not PipelineState.CLOSED:
            self.state = PipelineState.IDLE

    def update_parameters(self, params: CameraParameters) -> CameraParameters:
        """
        Replace the camera parameters. Validation happens now; while a frame
        is in flight the change is staged and applied once it returns to idle.
        A width/height change reallocates the frame buffers. Intrinsics are
        re-derived only when the size or fx/fy change.
        """
        if self.state is PipelineState.CLOSED:
            raise PipelineStateError("pipeline is closed")
        if not self._started:
            self._requested_params = params.validate()
            return params
        current = self._staged_params if self._staged_params is not None else self.params
        if (
            current is not None
            and params.image_size == current.image_size
            and (params.fx, params.fy) == (current.fx, current.fy)
        ):
            # Intrinsics were derived at start or at the last resize.
            derived = replace(params, cx=current.cx, cy=current.cy).validate()
        else:
            derived = derive_camera_parameters(params, self.lens)
        if self.state is PipelineState.IDLE:
            self._apply(derived)
        else:
            self._staged_params = derived
            logger.debug("parameter update staged until frame %d completes", self._in_flight.index if self._in_flight else -1)
        return derived

    def update_coefficients(self, **coeffs: float) -> CameraParameters:
        """Hot-reload distortion coefficients (k1, k2, p1, p2, k3)."""
        if not self._started:
            return self.update_parameters(self._requested_params.with_coefficients(**coeffs))
        base = self._staged_params if self._staged_params is not None else self.params
        assert base is not None
        return self.update_parameters(base.with_coefficients(**coeffs))

    def resize(self, width: int, height: int) -> CameraParameters:
        """Change the image size; intrinsics are re-derived from the lens geometry."""
        if not self._started:
            return self.update_parameters(self._requested_params.resized(width, height, self.lens))
        base = self._staged_params if self._staged_params is not None else self.params
        assert base is not None
        return self.update_parameters(base.resized(width, height, self.lens))

    def _apply_staged(self) -> None:
        if self._staged_params is not None:
            staged, self._staged_params = self._staged_params, None
            self._apply(staged)

    def _apply(self, params: CameraParameters) -> None:
        self.params = params
        if not self.buffers.allocated or self.buffers.size != (params.width, params.height):
            self._allocate(params)

    def flush(self, timeout: float | None = None) -> int:
        """
        Block until no frame is in flight and no trigger is deferred.

        Convenience for batch tools; the cooperative path is trigger()/tick().
        Returns the number of frames delivered meanwhile.
        """
        delivered = 0
        while self.state is not PipelineState.CLOSED and (self.in_flight or self._queued):
            if self.state is PipelineState.READBACK_PENDING and self._in_flight is not None:
                if not self._in_flight.request.wait(timeout):
                    logger.warning("flush timed out waiting for frame %d", self._in_flight.index)
                    break
            if self.tick() is not None:
                delivered += 1
        return delivered

    def close(self) -> None:
        """
        Abandon any pending readback, drain the device queue and release all
        buffers. Safe to call more than once.
        """
        if self.state is PipelineState.CLOSED:
            return
        if self._in_flight is not None:
            logger.info("abandoning pending readback of frame %d", self._in_flight.index)
            self._in_flight.request.invalidate()
            self._in_flight = None
        self._queued = 0
        self._staged_params = None
        try:
            self.device.finish()
        finally:
            self.buffers.locked = False
            self.buffers.release()
            if self._owns_device:
                self.device.close()
            self.state = PipelineState.CLOSED
            logger.info("camera pipeline closed: %s", self.metrics.snapshot())

    def __enter__(self) -> CameraPipeline:
        if not self._started:
            self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
