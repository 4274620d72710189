from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Tuple

import cv2
import numpy as np

from common.config import StyleConfig
from common.geo import DEFAULT_TILE_SIZE, pixel_offset, project_array, tile_bounds
from common.logging_setup import get_logger, log_duration
from common.types import DataUnavailable, RenderError, StorageError, TileKey
from tiles.datasource import PointSource
from tiles.tile_cache import TileCache


log = get_logger(__name__)


@dataclass(frozen=True)
class DotStyle:
    """How a single point is drawn: filled disc, RGB color, per-dot opacity."""
    radius: int = 2
    color: Tuple[int, int, int] = (220, 40, 40)
    opacity: float = 0.5

    @classmethod
    def from_config(cls, cfg: StyleConfig) -> "DotStyle":
        return cls(radius=int(cfg.radius), color=tuple(int(c) for c in cfg.color), opacity=float(cfg.opacity))


def _disc_kernel(radius: int) -> np.ndarray:
    d = 2 * int(radius) + 1
    return cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (d, d)).astype(np.float32)


def rasterize(pixels: np.ndarray, style: DotStyle, tile_size: int = DEFAULT_TILE_SIZE) -> np.ndarray:
    """
    Draw integer pixel centers (M, 2) as (u, v) onto a transparent BGRA canvas.

    Each dot is a disc of `style.radius`; where n discs overlap the pixel alpha
    is 1 - (1 - opacity)^n. The result does not depend on point order.
    """
    canvas = np.zeros((tile_size, tile_size, 4), dtype=np.uint8)
    if len(pixels) == 0:
        return canvas

    hits = np.zeros((tile_size, tile_size), dtype=np.float32)
    np.add.at(hits, (pixels[:, 1], pixels[:, 0]), 1.0)
    if style.radius > 0:
        coverage = cv2.filter2D(hits, -1, _disc_kernel(style.radius), borderType=cv2.BORDER_CONSTANT)
    else:
        coverage = hits
    coverage = np.rint(coverage)

    alpha = 1.0 - np.power(1.0 - style.opacity, coverage)
    a8 = np.clip(np.rint(alpha * 255.0), 0, 255).astype(np.uint8)
    drawn = a8 > 0
    r, g, b = style.color
    canvas[drawn, 0] = b
    canvas[drawn, 1] = g
    canvas[drawn, 2] = r
    canvas[..., 3] = a8
    return canvas


def encode_png(canvas: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", canvas)
    if not ok:
        raise StorageError("PNG encode failed")
    return buf.tobytes()


class TileRenderer:
    """
    Renders one tile from the point source into the cache.

    render(key):
      1) cache hit  -> return False (no query, no rasterization)
      2) bbox query -> project -> pixel offsets -> clip to [0, tile_size)
      3) rasterize  -> PNG -> atomic cache.put -> return True
    """

    def __init__(
        self,
        cache: TileCache,
        source: PointSource,
        style: DotStyle = DotStyle(),
        tile_size: int = DEFAULT_TILE_SIZE,
    ):
        self.cache = cache
        self.source = source
        self.style = style
        self.tile_size = int(tile_size)
        self._lock = threading.Lock()
        self._stats = {"rasterized": 0, "cache_hits": 0, "points_drawn": 0, "points_dropped": 0}

    def render(self, key: TileKey) -> bool:
        key.validate()
        if self.cache.has(key):
            self._bump(cache_hits=1)
            log.debug("cache hit", extra={"extra": {"tile": key.name}})
            return False

        with log_duration(log, "tile rendered", tile=key.name) as ctx:
            pts = self._query(key)
            pixels, dropped = self.tile_pixels(key, pts)
            canvas = rasterize(pixels, self.style, self.tile_size)
            self.cache.put(key, encode_png(canvas))
            ctx.update(points=int(len(pixels)), dropped=int(dropped))

        self._bump(rasterized=1, points_drawn=len(pixels), points_dropped=dropped)
        return True

    def tile_pixels(self, key: TileKey, pts: np.ndarray) -> Tuple[np.ndarray, int]:
        """
        Project (lat, lon) rows into the tile's pixel grid.
        Returns (pixels (M, 2) int as (u, v), number of rows outside the Mercator domain).
        """
        if len(pts) == 0:
            return np.empty((0, 2), dtype=np.int64), 0
        xs, ys, valid = project_array(key.zoom, pts[:, 0], pts[:, 1])
        dropped = int(np.count_nonzero(~valid))
        u, v = pixel_offset((xs[valid], ys[valid]), (key.x, key.y), self.tile_size)
        u = np.floor(u).astype(np.int64)
        v = np.floor(v).astype(np.int64)
        inside = (u >= 0) & (u < self.tile_size) & (v >= 0) & (v < self.tile_size)
        return np.stack([u[inside], v[inside]], axis=1), dropped

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats)

    # -------- internals --------

    def _query(self, key: TileKey) -> np.ndarray:
        try:
            return self.source.query_bbox(*tile_bounds(key))
        except RenderError:
            raise
        except Exception as e:
            raise DataUnavailable(f"point query for {key.name} failed: {e}") from e

    def _bump(self, **counts: int) -> None:
        with self._lock:
            for k, v in counts.items():
                self._stats[k] += int(v)
