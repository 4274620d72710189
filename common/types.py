from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Iterator, Tuple


MAX_ZOOM = 30

_TILE_NAME_RE = re.compile(r"^([0-9]{1,10})_([0-9]{1,10})_([0-9]{1,10})(?:\.png)?$")


# -------------------------
# Errors
# -------------------------
class TileServiceError(Exception):
    """Base class for every error raised by the tile service."""


class InvalidCoordinate(TileServiceError, ValueError):
    """Latitude/longitude outside the Web Mercator domain (per point, point is dropped)."""


class TileNotFound(TileServiceError):
    """Tile has not been rendered yet. Expected during cache warm-up."""


class RenderError(TileServiceError):
    """A tile could not be rendered. `retryable` tells the dispatcher whether to try again."""
    retryable = False


class InvalidTileKey(RenderError, ValueError):
    """Malformed z/x/y; a caller bug, rejected at the API boundary."""


class DataUnavailable(RenderError):
    """Point source unreachable or the query failed."""
    retryable = True


class StorageError(RenderError):
    """Cache read/write or PNG encode failure."""
    retryable = True


# -------------------------
# Data model
# -------------------------
@dataclass(frozen=True, slots=True)
class Point:
    lat: float
    lon: float


@dataclass(frozen=True, slots=True)
class TileKey:
    """
    Identifies one raster tile.

    Invariant (checked by validate()): 0 <= zoom <= MAX_ZOOM and 0 <= x, y < 2**zoom.
    """
    zoom: int
    x: int
    y: int

    def validate(self) -> "TileKey":
        for v in (self.zoom, self.x, self.y):
            if isinstance(v, bool) or not isinstance(v, int):
                raise InvalidTileKey(f"tile coordinates must be integers: {self}")
        if not (0 <= self.zoom <= MAX_ZOOM):
            raise InvalidTileKey(f"zoom {self.zoom} outside [0, {MAX_ZOOM}]")
        n = 1 << self.zoom
        if not (0 <= self.x < n) or not (0 <= self.y < n):
            raise InvalidTileKey(f"x/y outside [0, {n}) at zoom {self.zoom}: {self}")
        return self

    @property
    def name(self) -> str:
        return f"{self.zoom}_{self.x}_{self.y}"

    @classmethod
    def parse(cls, name: str) -> "TileKey":
        """Parse `z_x_y` or `z_x_y.png` into a validated key."""
        m = _TILE_NAME_RE.match(name or "")
        if m is None:
            raise InvalidTileKey(f"malformed tile name: {name!r}")
        return cls(int(m.group(1)), int(m.group(2)), int(m.group(3))).validate()


@dataclass(frozen=True, slots=True)
class TileRange:
    """Inclusive rectangle of tiles at one zoom level."""
    zoom: int
    x_from: int
    x_to: int
    y_from: int
    y_to: int

    def validate(self) -> "TileRange":
        TileKey(self.zoom, self.x_from, self.y_from).validate()
        TileKey(self.zoom, self.x_to, self.y_to).validate()
        if self.x_from > self.x_to or self.y_from > self.y_to:
            raise InvalidTileKey(f"reversed tile range: {self}")
        return self

    def __len__(self) -> int:
        return (self.x_to - self.x_from + 1) * (self.y_to - self.y_from + 1)

    def keys(self) -> Iterator[TileKey]:
        for y in range(self.y_from, self.y_to + 1):
            for x in range(self.x_from, self.x_to + 1):
                yield TileKey(self.zoom, x, y)

    def to_dict(self) -> dict:
        return {
            "zoom": self.zoom,
            "x_from": self.x_from,
            "x_to": self.x_to,
            "y_from": self.y_from,
            "y_to": self.y_to,
        }


@dataclass(frozen=True, slots=True)
class Viewport:
    """
    Map client viewport, supplied per request.

    Attributes:
        zoom: map zoom level.
        north, south: latitude bounds (deg); north >= south.
        east, west: longitude bounds (deg); west <= east (no antimeridian wrap).
    """
    zoom: int
    north: float
    south: float
    east: float
    west: float

    def __post_init__(self) -> None:
        for v in (self.north, self.south, self.east, self.west):
            if math.isnan(v):
                raise InvalidCoordinate("viewport bounds must not be NaN")
        if self.north < self.south:
            raise InvalidCoordinate(f"north {self.north} < south {self.south}")
        if self.west > self.east:
            raise InvalidCoordinate("viewports crossing the antimeridian are not supported")

    @property
    def bbox(self) -> Tuple[float, float, float, float]:
        # [west, south, east, north]
        return (self.west, self.south, self.east, self.north)
