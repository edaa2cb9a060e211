import numpy as np
import pytest

from chunked_upscaler.core.exceptions import ProcessingCancelled
from chunked_upscaler.modules.upscale.models import Tile, TileRect, UpscaleConfig
from chunked_upscaler.pipeline.cancellation import CancelToken
from chunked_upscaler.pipeline.tile_upscaler import (
    FilterParams,
    enhance_details,
    nearest_neighbor_resize,
    upscale_tile
)


def _tile(pixels, x=0, y=0):
    height, width = pixels.shape[:2]
    return Tile(rect=TileRect(x=x, y=y, width=width, height=height), pixels=pixels)


def _solid(width, height, value):
    pixels = np.full((height, width, 4), value, dtype=np.uint8)
    pixels[..., 3] = 255
    return pixels


@pytest.mark.parametrize("scale_factor", [2, 3, 4, 5, 6, 7, 8])
def test_output_dimensions(make_source, scale_factor):
    tile = _tile(make_source(5, 3).pixels.copy(), x=12, y=34)
    config = UpscaleConfig(scale_factor=scale_factor, tile_size=16, overlap=2)

    processed = upscale_tile(tile, config, CancelToken())

    assert processed.pixels.shape == (3 * scale_factor, 5 * scale_factor, 4)
    assert (processed.x, processed.y) == (12, 34)
    assert processed.scale_factor == scale_factor


def test_full_size_tile():
    tile = _tile(_solid(512, 512, 80))

    processed = upscale_tile(tile, UpscaleConfig(scale_factor=4), CancelToken())

    assert (processed.width, processed.height) == (2048, 2048)


def test_nearest_neighbor_replicates_pixels(make_source):
    pixels = make_source(4, 3).pixels

    resized = nearest_neighbor_resize(pixels, 3)

    assert resized.shape == (9, 12, 4)
    for y in range(3):
        for x in range(4):
            block = resized[y * 3:(y + 1) * 3, x * 3:(x + 1) * 3]
            assert (block == pixels[y, x]).all()


def test_alpha_forced_opaque():
    pixels = _solid(6, 6, 50)
    pixels[..., 3] = 0

    out = enhance_details(pixels)

    assert (out[..., 3] == 255).all()


def test_flat_region_gets_contrast_boost_and_border_is_untouched():
    out = enhance_details(_solid(5, 5, 100))

    assert (out[1:-1, 1:-1, :3] == 110).all()
    assert (out[0, :, :3] == 100).all()
    assert (out[-1, :, :3] == 100).all()
    assert (out[:, 0, :3] == 100).all()
    assert (out[:, -1, :3] == 100).all()


def test_flat_region_clamps_to_255():
    out = enhance_details(_solid(3, 3, 240))
    assert tuple(out[1, 1]) == (255, 255, 255, 255)


def test_edge_pixel_is_sharpened():
    pixels = np.zeros((3, 3, 4), dtype=np.uint8)
    pixels[..., 3] = 255
    # Red: centre 0 surrounded by 100 -> variance 8 * 100^2 / 9 > 400
    pixels[..., 0] = 100
    pixels[1, 1, 0] = 0
    pixels[..., 1] = 20
    pixels[1, 1, 1] = 100
    pixels[1, 1, 2] = 10

    out = enhance_details(pixels)

    # R: 0*1.5 - 0.125*400 clamps to 0; G: 150 - 10; B: 15 - 0
    assert tuple(out[1, 1]) == (0, 140, 15, 255)


def test_variance_at_threshold_is_not_an_edge():
    pixels = np.zeros((3, 3, 4), dtype=np.uint8)
    pixels[..., 3] = 255
    # One neighbour differs by 60 -> variance exactly 400
    pixels[0, 0, 0] = 60
    pixels[1, 1, 1] = 50

    out = enhance_details(pixels)

    assert tuple(out[1, 1, :3]) == (0, 55, 0)


def test_filter_does_not_depend_on_traversal_order(make_source):
    pixels = make_source(17, 11, seed=3).pixels

    out = enhance_details(pixels)

    # Mirrored input gives mirrored output only if neighbours are read unfiltered
    assert np.array_equal(enhance_details(pixels[:, ::-1]), out[:, ::-1])
    assert np.array_equal(enhance_details(pixels[::-1, :]), out[::-1, :])


def test_isolated_dark_pixel_marks_its_neighbours_as_edges():
    pixels = _solid(5, 5, 100)
    pixels[2, 2, 0] = 0

    out = enhance_details(pixels)

    # Green: 100*1.5 - 0.125*400
    assert out[2, 2, 1] == 100
    assert out[2, 1, 1] == 100
    # Corner-interior pixel also sees the dark neighbour diagonally
    assert out[1, 1, 1] == 100


def test_tiny_buffer_only_sets_alpha():
    pixels = _solid(2, 2, 33)
    pixels[..., 3] = 10

    out = enhance_details(pixels)

    assert (out[..., :3] == 33).all()
    assert (out[..., 3] == 255).all()


def test_upscale_is_deterministic(make_source):
    tile = _tile(make_source(20, 20).pixels.copy())
    config = UpscaleConfig(scale_factor=3, tile_size=32, overlap=4)

    first = upscale_tile(tile, config, CancelToken())
    second = upscale_tile(tile, config, CancelToken())

    assert np.array_equal(first.pixels, second.pixels)


def test_cancelled_token_stops_tile():
    token = CancelToken()
    token.cancel()

    with pytest.raises(ProcessingCancelled):
        upscale_tile(_tile(_solid(4, 4, 1)), UpscaleConfig(scale_factor=2), token)


def test_filter_params_ignore_knobs_by_default():
    config = UpscaleConfig(sharpness=100, noise_reduction=100)
    assert FilterParams.for_config(config, use_tuning=False) == FilterParams()


def test_filter_params_tuning():
    neutral = FilterParams.for_config(UpscaleConfig(sharpness=50, noise_reduction=0), use_tuning=True)
    assert neutral == FilterParams()

    strong = FilterParams.for_config(UpscaleConfig(sharpness=100, noise_reduction=100), use_tuning=True)
    assert strong.threshold == pytest.approx(800.0)
    assert strong.center_weight == pytest.approx(2.0)
    assert strong.neighbor_weight == pytest.approx(0.25)
