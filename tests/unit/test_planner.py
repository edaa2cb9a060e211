import numpy as np
import pytest

from chunked_upscaler.modules.upscale.models import TileRect
from chunked_upscaler.pipeline.planner import plan_tiles, cut_tile


def _coverage(width, height, tiles):
    covered = np.zeros((height, width), dtype=np.int32)
    for t in tiles:
        covered[t.y:t.y + t.height, t.x:t.x + t.width] += 1
    return covered


def test_plan_default_grid():
    tiles = plan_tiles(1000, 600, 512, 16)

    assert len(tiles) == 6
    assert [(t.x, t.y) for t in tiles] == [
        (0, 0), (488, 0), (984, 0),
        (0, 488), (488, 488), (984, 488),
    ]
    assert [t.width for t in tiles[:3]] == [512, 512, 16]
    assert [t.height for t in tiles[::3]] == [512, 112]


def test_small_image_is_single_tile():
    assert plan_tiles(100, 100, 512, 16) == [TileRect(x=0, y=0, width=100, height=100)]


def test_axis_shorter_than_tile_size_is_not_split():
    # 500 > tile_size - overlap but still below tile_size
    tiles = plan_tiles(500, 20, 512, 16)
    assert tiles == [TileRect(x=0, y=0, width=500, height=20)]


def test_axis_of_exactly_tile_size_is_split():
    tiles = plan_tiles(512, 512, 512, 16)

    assert len(tiles) == 4
    assert [(t.x, t.y) for t in tiles] == [(0, 0), (488, 0), (0, 488), (488, 488)]
    assert [t.width for t in tiles] == [512, 24, 512, 24]
    assert [t.height for t in tiles] == [512, 512, 24, 24]


def test_exact_tile_size_without_overlap_is_single_tile():
    assert plan_tiles(64, 64, 64, 0) == [TileRect(x=0, y=0, width=64, height=64)]


@pytest.mark.parametrize("width,height,tile_size,overlap", [
    (1, 1, 512, 16),
    (512, 512, 512, 16),
    (513, 1025, 512, 16),
    (2000, 37, 64, 8),
    (97, 97, 10, 3),
    (50, 50, 8, 0),
    (1920, 1080, 512, 16),
])
def test_tiles_cover_image_within_bounds(width, height, tile_size, overlap):
    tiles = plan_tiles(width, height, tile_size, overlap)

    for t in tiles:
        assert 0 < t.width <= tile_size
        assert 0 < t.height <= tile_size
        assert t.x >= 0 and t.y >= 0
        assert t.x + t.width <= width
        assert t.y + t.height <= height

    assert (_coverage(width, height, tiles) > 0).all()


def test_tiles_are_row_major():
    tiles = plan_tiles(1300, 900, 256, 32)
    assert tiles == sorted(tiles, key=lambda t: t.sort_key)


def test_plan_is_deterministic():
    assert plan_tiles(777, 333, 128, 12) == plan_tiles(777, 333, 128, 12)


@pytest.mark.parametrize("width,height,tile_size,overlap", [
    (0, 10, 512, 16),
    (10, -1, 512, 16),
    (10, 10, 0, 0),
    (10, 10, 16, 16),
    (10, 10, 16, -1),
])
def test_invalid_arguments_raise(width, height, tile_size, overlap):
    with pytest.raises(ValueError):
        plan_tiles(width, height, tile_size, overlap)


def test_cut_tile_copies_region(make_source):
    source = make_source(40, 30)
    rect = TileRect(x=5, y=7, width=10, height=4)

    tile = cut_tile(source, rect)

    assert tile.rect == rect
    assert tile.pixels.shape == (4, 10, 4)
    assert np.array_equal(tile.pixels, source.pixels[7:11, 5:15])
    assert not np.shares_memory(tile.pixels, source.pixels)


def test_cut_tile_outside_source_raises(make_source):
    source = make_source(40, 30)
    with pytest.raises(ValueError):
        cut_tile(source, TileRect(x=35, y=0, width=10, height=10))
