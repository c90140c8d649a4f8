"""
Layer 5 – Document
Capture session, paginated document assembly and delivery to storage.
"""
from .session import CapturedPage, CaptureSession, SlotReservation, make_preview
from .assembler import AssembledDocument, DocumentAssembler, MIXED_MODE, summarize_mode
from .saver import DirectorySink, DocumentSink

__all__ = [
    'AssembledDocument',
    'CapturedPage',
    'CaptureSession',
    'DirectorySink',
    'DocumentAssembler',
    'DocumentSink',
    'MIXED_MODE',
    'SlotReservation',
    'make_preview',
    'summarize_mode',
]
