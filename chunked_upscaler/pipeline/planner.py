"""
Tile Planning

Computes the overlapping tile grid that covers a source image and cuts
individual tiles out of the source buffer on demand.
"""

import math
from typing import List

from chunked_upscaler.modules.upscale.models import SourceImage, Tile, TileRect


def _axis_count(length: int, tile_size: int, effective: int) -> int:
    # An axis shorter than one tile is never split
    if length < tile_size:
        return 1
    return math.ceil(length / effective)


def _axis_origin(index: int, effective: int, overlap: int) -> int:
    shift = overlap // 2 if index > 0 else 0
    return max(0, index * effective - shift)


def plan_tiles(width: int, height: int, tile_size: int, overlap: int) -> List[TileRect]:
    """
    Plan an overlapping, row-major tile grid over a width x height image.

    Neighbouring tiles start `tile_size - overlap` pixels apart, pulled back
    by half the overlap so each seam is shared. The union of the returned
    rectangles covers every pixel; no rectangle is empty or larger than
    tile_size on either axis. An axis shorter than tile_size is covered by
    a single tile; longer axes, including one of exactly tile_size,
    follow the stepping rule.

    Raises:
        ValueError: on non-positive dimensions or an overlap that is negative
            or not smaller than tile_size.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"image dimensions must be positive, got {width}x{height}")
    if tile_size <= 0:
        raise ValueError(f"tile_size must be positive, got {tile_size}")
    if overlap < 0 or overlap >= tile_size:
        raise ValueError(f"overlap must be in [0, {tile_size}), got {overlap}")

    effective = tile_size - overlap
    cols = _axis_count(width, tile_size, effective)
    rows = _axis_count(height, tile_size, effective)

    tiles: List[TileRect] = []
    for row in range(rows):
        y = _axis_origin(row, effective, overlap)
        tile_height = min(tile_size, height - y)
        for col in range(cols):
            x = _axis_origin(col, effective, overlap)
            tile_width = min(tile_size, width - x)
            tiles.append(TileRect(x=x, y=y, width=tile_width, height=tile_height))

    return tiles


def cut_tile(source: SourceImage, rect: TileRect) -> Tile:
    """Copy the pixels under `rect` out of the source image."""
    if (
        rect.x < 0 or rect.y < 0
        or rect.x + rect.width > source.width
        or rect.y + rect.height > source.height
    ):
        raise ValueError(
            f"tile {rect} lies outside the {source.width}x{source.height} source"
        )

    region = source.pixels[rect.y:rect.y + rect.height, rect.x:rect.x + rect.width]
    return Tile(rect=rect, pixels=region.copy())
