"""
Tile Stitching

Reassembles processed tiles into the final image. Overlap seams are
blended by averaging RGB with whatever an earlier tile already wrote.
"""

from typing import Iterable, List

import numpy as np

from chunked_upscaler.core.exceptions import ProcessingError
from chunked_upscaler.core.logging import get_logger, with_logging
from chunked_upscaler.modules.upscale.models import CHANNELS, FinalImage, ProcessedTile

logger = get_logger(__name__)


def _blend_tile(incoming: np.ndarray, existing: np.ndarray) -> np.ndarray:
    """
    Compute the pixels to commit for one tile into its own buffer.

    Where the canvas is already opaque the RGB channels become the
    unweighted average of incoming and existing values; elsewhere the
    incoming pixel is written unchanged. Alpha is never blended.
    """
    blended = np.array(incoming, dtype=np.uint8, copy=True)
    covered = existing[..., 3] > 0
    if covered.any():
        mean = (incoming[..., :3].astype(np.uint16) + existing[..., :3].astype(np.uint16)) / 2.0
        rgb = blended[..., :3]
        rgb[covered] = np.rint(mean[covered]).astype(np.uint8)
    return blended


@with_logging("stitching")
def stitch(
    processed_tiles: Iterable[ProcessedTile],
    source_width: int,
    source_height: int,
    scale_factor: int
) -> FinalImage:
    """
    Merge processed tiles into one (source_height*scale, source_width*scale) image.

    Tiles are placed in (y, x) order regardless of the order they arrive in.
    The canvas is written from this single thread only; each tile's blend is
    computed in a private buffer and then committed.

    Raises:
        ProcessingError: if a tile does not fit the canvas or if any output
            pixel is left uncovered.
    """
    tiles: List[ProcessedTile] = sorted(processed_tiles, key=lambda t: t.sort_key)
    if not tiles:
        raise ProcessingError("No tiles to stitch", stage="stitching")

    final_width = source_width * scale_factor
    final_height = source_height * scale_factor
    canvas = np.zeros((final_height, final_width, CHANNELS), dtype=np.uint8)

    logger.info("stitching_tiles", tile_count=len(tiles), final_width=final_width, final_height=final_height)

    for index, tile in enumerate(tiles):
        if tile.scale_factor != scale_factor:
            raise ProcessingError(
                f"Tile at ({tile.x}, {tile.y}) was upscaled x{tile.scale_factor}, expected x{scale_factor}",
                stage="stitching"
            )

        dest_x = tile.x * scale_factor
        dest_y = tile.y * scale_factor
        if (
            dest_x < 0 or dest_y < 0
            or dest_x + tile.width > final_width
            or dest_y + tile.height > final_height
        ):
            raise ProcessingError(
                f"Tile at ({tile.x}, {tile.y}) with size {tile.width}x{tile.height} "
                f"does not fit a {final_width}x{final_height} canvas",
                stage="stitching"
            )

        region = canvas[dest_y:dest_y + tile.height, dest_x:dest_x + tile.width]
        if index == 0:
            region[...] = tile.pixels
        else:
            region[...] = _blend_tile(tile.pixels, region)

    uncovered = int(np.count_nonzero(canvas[..., 3] == 0))
    if uncovered:
        raise ProcessingError(
            f"Stitched image has {uncovered} uncovered pixels",
            stage="stitching",
            details={"uncovered_pixels": uncovered}
        )

    return FinalImage(pixels=canvas, scale_factor=scale_factor)
