"""
Chunked Upscaling Pipeline

Four stages, leaf-first:
1. Planner - overlapping tile grid over the source image
2. Tile upscaler - nearest-neighbour enlargement + edge-adaptive filter
3. Stitcher - (y, x)-ordered placement with overlap blending
4. Controller - job orchestration, progress/ETA, cancellation
"""
