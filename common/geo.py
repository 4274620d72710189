from __future__ import annotations

from typing import Tuple
import math
import numpy as np

from common.types import InvalidCoordinate, TileKey, TileRange, Viewport


# --- Web Mercator constants ---
MAX_LATITUDE = 85.0511287798      # atan(sinh(pi)) in degrees; y tile == 0 / 2**z
MAX_LONGITUDE = 180.0
DEFAULT_TILE_SIZE = 256


def _check(lat: float, lon: float) -> None:
    if math.isnan(lat) or math.isnan(lon):
        raise InvalidCoordinate("lat/lon must not be NaN")
    if abs(lat) > MAX_LATITUDE:
        raise InvalidCoordinate(f"latitude {lat} outside Web Mercator range ±{MAX_LATITUDE}")
    if abs(lon) > MAX_LONGITUDE:
        raise InvalidCoordinate(f"longitude {lon} outside [-180, 180]")


# -------------------------
# Geo -> tile space
# -------------------------
def project(zoom: int, lat: float, lon: float) -> Tuple[float, float]:
    """
    Project WGS84 (lat, lon) in degrees to fractional tile coordinates at `zoom`.

        n = 2^zoom
        x = n * (lon + 180) / 360
        y = n * (1 - ln(tan(phi) + sec(phi)) / pi) / 2

    Raises InvalidCoordinate outside the Mercator domain.
    """
    _check(lat, lon)
    n = float(1 << int(zoom))
    phi = math.radians(lat)
    x = n * (lon + 180.0) / 360.0
    y = n * (1.0 - math.log(math.tan(phi) + 1.0 / math.cos(phi)) / math.pi) / 2.0
    return x, y


def project_array(zoom: int, lats: np.ndarray, lons: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Vectorized project(). Returns (xs, ys, valid) where `valid` flags rows
    inside the Mercator domain; xs/ys of invalid rows are NaN.
    """
    lats = np.asarray(lats, dtype=float)
    lons = np.asarray(lons, dtype=float)
    with np.errstate(invalid="ignore"):
        valid = (np.abs(lats) <= MAX_LATITUDE) & (np.abs(lons) <= MAX_LONGITUDE)
    n = float(1 << int(zoom))
    phi = np.radians(np.where(valid, lats, 0.0))
    xs = n * (lons + 180.0) / 360.0
    ys = n * (1.0 - np.log(np.tan(phi) + 1.0 / np.cos(phi)) / math.pi) / 2.0
    xs = np.where(valid, xs, np.nan)
    ys = np.where(valid, ys, np.nan)
    return xs, ys, valid


def unproject(zoom: int, x_tile: float, y_tile: float) -> Tuple[float, float]:
    """Inverse of project(): fractional tile coordinates -> (lat, lon) degrees."""
    n = float(1 << int(zoom))
    lon = x_tile / n * 360.0 - 180.0
    lat = math.degrees(math.atan(math.sinh(math.pi * (1.0 - 2.0 * y_tile / n))))
    return lat, lon


def tile_bounds(key: TileKey) -> Tuple[float, float, float, float]:
    """Return (west, south, east, north) in degrees for a tile."""
    north, west = unproject(key.zoom, key.x, key.y)
    south, east = unproject(key.zoom, key.x + 1, key.y + 1)
    return west, south, east, north


# -------------------------
# Tile space -> pixels
# -------------------------
def pixel_offset(
    tile_xy: Tuple[float, float],
    origin: Tuple[int, int],
    tile_size: int = DEFAULT_TILE_SIZE,
) -> Tuple[float, float]:
    """
    Fractional pixel position of a tile-space coordinate inside the tile at `origin`.
    Row 0 is the tile's north edge, so v grows southwards like y.
    """
    u = (tile_xy[0] - origin[0]) * tile_size
    v = (tile_xy[1] - origin[1]) * tile_size
    return u, v


def to_pixel(
    tile_xy: Tuple[float, float],
    origin: Tuple[int, int],
    tile_size: int = DEFAULT_TILE_SIZE,
) -> Tuple[int, int]:
    """
    Integer pixel indices (floor) of a tile-space coordinate inside the tile at `origin`.
    A result outside [0, tile_size) means the point belongs to another tile.
    """
    u, v = pixel_offset(tile_xy, origin, tile_size)
    return int(math.floor(u)), int(math.floor(v))


# -------------------------
# Viewport helpers
# -------------------------
def tile_range_for_viewport(viewport: Viewport) -> TileRange:
    """
    Inclusive tile range covering a viewport. Bounds are clamped to the
    Mercator domain and to the tile grid.
    """
    z = int(viewport.zoom)
    TileKey(z, 0, 0).validate()
    last = (1 << z) - 1
    north = min(max(viewport.north, -MAX_LATITUDE), MAX_LATITUDE)
    south = min(max(viewport.south, -MAX_LATITUDE), MAX_LATITUDE)
    west = min(max(viewport.west, -MAX_LONGITUDE), MAX_LONGITUDE)
    east = min(max(viewport.east, -MAX_LONGITUDE), MAX_LONGITUDE)

    x0, y0 = project(z, north, west)
    x1, y1 = project(z, south, east)

    def _clamp(v: float) -> int:
        return int(min(last, max(0, math.floor(v))))

    return TileRange(z, _clamp(x0), _clamp(x1), _clamp(y0), _clamp(y1)).validate()
