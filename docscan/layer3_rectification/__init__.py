"""
Layer 3 – Rectification
Perspective correction of the captured frame to a fixed page raster.
"""
from .rectifier import PerspectiveRectifier

__all__ = ['PerspectiveRectifier']
