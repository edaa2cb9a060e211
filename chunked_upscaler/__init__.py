"""
Chunked Image Upscaler

Tile-based integer upscaling with seam blending, progress/ETA reporting
and cooperative cancellation.
"""

__version__ = "1.0.0"
