"""
Document capture pipeline.

Layers:
    layer1_capture        camera source, downsampler, detection loop scheduler
    layer2_detection      edge detector, quadrilateral geometry, corner scaler
    layer3_rectification  perspective rectifier
    layer4_enhancement    enhancement engine
    layer5_document       capture session, document assembler, storage sinks
"""
from .config import PipelineConfig
from .coordinator import CaptureOutcome, ScanCoordinator

__version__ = "1.0.0"

__all__ = ['CaptureOutcome', 'PipelineConfig', 'ScanCoordinator']
