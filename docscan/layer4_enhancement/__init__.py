"""
Layer 4 – Enhancement
Shadow removal, brightness, contrast, sharpening and color/monochrome conversion.
"""
from .enhancer import EnhancementEngine, EnhancementSettings, draw_page_badge

__all__ = ['EnhancementEngine', 'EnhancementSettings', 'draw_page_badge']
