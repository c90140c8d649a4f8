"""
Layer 1 – Capture
Camera access, frame downsampling and the periodic detection loop.
"""
from .camera import CameraHandler, Frame, StaticFrameSource
from .downsampler import DownsampledFrame, FrameDownsampler
from .scheduler import DetectionResult, DetectionScheduler, SchedulerState

__all__ = [
    'CameraHandler',
    'DetectionResult',
    'DetectionScheduler',
    'DownsampledFrame',
    'Frame',
    'FrameDownsampler',
    'SchedulerState',
    'StaticFrameSource',
]
