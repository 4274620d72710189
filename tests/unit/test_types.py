"""
Unit tests for tile keys, ranges and viewports
"""

import os
import sys

import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.types import (
    DataUnavailable,
    InvalidCoordinate,
    InvalidTileKey,
    RenderError,
    StorageError,
    TileKey,
    TileRange,
    Viewport,
)


class TestTileKey:
    """Test cases for TileKey"""

    def test_valid_key(self):
        """Keys inside the grid validate and name themselves z_x_y"""
        key = TileKey(10, 557, 364).validate()
        assert key.name == "10_557_364"

    @pytest.mark.parametrize("z,x,y", [(10, 1024, 0), (10, 0, 1024), (3, -1, 0), (-1, 0, 0), (31, 0, 0)])
    def test_off_grid_keys(self, z, x, y):
        """x/y must be in [0, 2**zoom) and zoom in [0, 30]"""
        with pytest.raises(InvalidTileKey):
            TileKey(z, x, y).validate()

    def test_non_integer_key(self):
        """Floats are not tile coordinates"""
        with pytest.raises(InvalidTileKey):
            TileKey(10, 1.5, 2).validate()

    def test_parse(self):
        """Tile file names parse with or without the .png suffix"""
        assert TileKey.parse("10_557_364.png") == TileKey(10, 557, 364)
        assert TileKey.parse("0_0_0") == TileKey(0, 0, 0)

    @pytest.mark.parametrize(
        "name",
        [
            "",
            "10_557.png",
            "a_b_c.png",
            "10_-1_2.png",
            "2_4_0.png",
            "10_1_1.jpg",
            "1_" + "9" * 5000 + "_0.png",  # too many digits for int()
            "1_\u0661_0.png",               # non-ASCII digit
        ],
    )
    def test_parse_rejects_malformed(self, name):
        """Malformed or off-grid names raise InvalidTileKey"""
        with pytest.raises(InvalidTileKey):
            TileKey.parse(name)

    def test_keys_are_hashable(self):
        """Equal keys hash equal (used as dict keys for in-flight renders)"""
        assert len({TileKey(1, 0, 0), TileKey(1, 0, 0), TileKey(1, 1, 0)}) == 2


class TestTileRange:
    """Test cases for TileRange"""

    def test_batch_size(self):
        """/render/10/555/560/360/370 covers 6 * 11 = 66 tiles"""
        rng = TileRange(10, 555, 560, 360, 370).validate()
        keys = list(rng.keys())
        assert len(rng) == 66
        assert len(keys) == 66
        assert len(set(keys)) == 66
        assert keys[0] == TileKey(10, 555, 360)
        assert keys[-1] == TileKey(10, 560, 370)

    def test_reversed_range(self):
        """x_from > x_to is rejected"""
        with pytest.raises(InvalidTileKey):
            TileRange(10, 560, 555, 360, 370).validate()

    def test_off_grid_range(self):
        """Bounds must lie on the grid"""
        with pytest.raises(InvalidTileKey):
            TileRange(2, 0, 4, 0, 0).validate()


class TestViewport:
    """Test cases for Viewport"""

    def test_north_below_south(self):
        """north < south is rejected"""
        with pytest.raises(InvalidCoordinate):
            Viewport(zoom=5, north=10.0, south=20.0, east=5.0, west=0.0)

    def test_antimeridian(self):
        """Viewports wrapping the antimeridian are not supported"""
        with pytest.raises(InvalidCoordinate):
            Viewport(zoom=5, north=10.0, south=0.0, east=-170.0, west=170.0)

    def test_bbox(self):
        """bbox is (west, south, east, north)"""
        vp = Viewport(zoom=5, north=2.0, south=1.0, east=4.0, west=3.0)
        assert vp.bbox == (3.0, 1.0, 4.0, 2.0)


class TestErrors:
    """Test cases for the error taxonomy"""

    def test_retryable_flags(self):
        """Only data and storage failures are retryable"""
        assert DataUnavailable("x").retryable
        assert StorageError("x").retryable
        assert not InvalidTileKey("x").retryable
        assert isinstance(InvalidTileKey("x"), RenderError)
