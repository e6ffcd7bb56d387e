from simcam.pipeline.buffers import FrameBufferSet
from simcam.pipeline.metrics import PipelineMetrics
from simcam.pipeline.orchestrator import CameraPipeline, OutputData, PipelineState
from simcam.pipeline.sources import FrameRecorder, OutputSink, RenderSource, StaticImageSource
from simcam.pipeline.stages import StageExecutor, StageId, build_stage_chain

__all__ = [
    "CameraPipeline",
    "FrameBufferSet",
    "FrameRecorder",
    "OutputData",
    "OutputSink",
    "PipelineMetrics",
    "PipelineState",
    "RenderSource",
    "StageExecutor",
    "StageId",
    "StaticImageSource",
    "build_stage_chain",
]
