from __future__ import annotations

"""
Point sources (Data Source Adapter).

Every adapter answers one question: which (lat, lon) rows fall inside a
bounding box. Results are numpy arrays of shape (N, 2), columns (lat, lon).

SqlitePointSource mirrors the wide-column layout

    (zoom, x, y)  ->  (lat, lng)
    partition key     clustering columns

where (zoom, x, y) is the tile containing the point at a fixed, coarse
`partition_zoom`. A bbox query first narrows to the partitions overlapping the
box, then filters on the clustering columns.
"""

import sqlite3
import threading
from pathlib import Path
from typing import Iterable, Optional, Tuple

import numpy as np

from common.config import DataSourceConfig
from common.geo import MAX_LATITUDE, project_array
from common.logging_setup import get_logger
from common.types import DataUnavailable


log = get_logger(__name__)

_EMPTY = np.empty((0, 2), dtype=float)


def _as_points(points) -> np.ndarray:
    arr = np.asarray(points, dtype=float)
    if arr.size == 0:
        return _EMPTY.copy()
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise ValueError("points must have shape (N, 2) as (lat, lon)")
    return arr


class PointSource:
    """Read-only, thread-safe point query interface."""

    def query_bbox(self, west: float, south: float, east: float, north: float) -> np.ndarray:
        raise NotImplementedError

    def count(self) -> int:
        raise NotImplementedError

    def close(self) -> None:
        pass


class MemoryPointSource(PointSource):
    """Points held in a numpy array; bbox queries are a vectorized mask."""

    def __init__(self, points=()):
        self._pts = _as_points(points)

    @classmethod
    def from_csv(cls, path: str, *, delimiter: str = ",", skip_header: Optional[bool] = None) -> "MemoryPointSource":
        """
        Load `lat,lon` from the first two CSV columns; extra columns are ignored.
        A first line that does not start with two numbers is treated as a header.
        """
        p = Path(path)
        try:
            if skip_header is None:
                with p.open("r") as f:
                    first = f.readline().split(delimiter)
                try:
                    [float(v) for v in first[:2]]
                    skip_header = False
                except ValueError:
                    skip_header = True
            pts = np.loadtxt(p, delimiter=delimiter, skiprows=1 if skip_header else 0, usecols=(0, 1), ndmin=2)
        except (OSError, ValueError) as e:
            raise DataUnavailable(f"cannot load points from {path}: {e}") from e
        log.info("loaded csv points", extra={"extra": {"path": str(p), "points": int(len(pts))}})
        return cls(pts)

    def query_bbox(self, west: float, south: float, east: float, north: float) -> np.ndarray:
        lat = self._pts[:, 0]
        lon = self._pts[:, 1]
        m = (lat >= south) & (lat <= north) & (lon >= west) & (lon <= east)
        return self._pts[m]

    def count(self) -> int:
        return int(len(self._pts))


class SqlitePointSource(PointSource):
    """
    SQLite-backed partitioned store. One connection is opened at construction
    and shared by all render workers; access is serialized with a lock.
    """

    def __init__(self, path: str, table: str = "points", partition_zoom: int = 8):
        if not table.isidentifier():
            raise ValueError(f"invalid table name: {table!r}")
        self.path = str(path)
        self.table = table
        self.partition_zoom = int(partition_zoom)
        self._lock = threading.Lock()
        try:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
            self._conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    zoom INTEGER NOT NULL,
                    x INTEGER NOT NULL,
                    y INTEGER NOT NULL,
                    lat REAL NOT NULL,
                    lng REAL NOT NULL,
                    PRIMARY KEY (zoom, x, y, lat, lng)
                ) WITHOUT ROWID
                """
            )
            self._conn.commit()
        except sqlite3.Error as e:
            raise DataUnavailable(f"cannot open point store {self.path}: {e}") from e

    # -------- partitions --------

    def _partition_keys(self, lats: np.ndarray, lons: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        xs, ys, valid = project_array(self.partition_zoom, lats, lons)
        last = (1 << self.partition_zoom) - 1
        px = np.clip(np.floor(np.nan_to_num(xs)), 0, last).astype(np.int64)
        py = np.clip(np.floor(np.nan_to_num(ys)), 0, last).astype(np.int64)
        return px, py, valid

    def _partition_range(self, west: float, south: float, east: float, north: float) -> Tuple[int, int, int, int]:
        lat = np.array([min(north, MAX_LATITUDE), max(south, -MAX_LATITUDE)])
        lon = np.array([max(west, -180.0), min(east, 180.0)])
        px, py, _ = self._partition_keys(lat, lon)
        return int(px[0]), int(px[1]), int(py[0]), int(py[1])

    # -------- public API --------

    def add_points(self, points: Iterable[Tuple[float, float]]) -> int:
        """Insert (lat, lon) rows, computing their partition key. Rows outside the Mercator domain are skipped."""
        pts = _as_points(list(points) if not isinstance(points, np.ndarray) else points)
        if len(pts) == 0:
            return 0
        px, py, valid = self._partition_keys(pts[:, 0], pts[:, 1])
        rows = [
            (self.partition_zoom, int(x), int(y), float(lat), float(lon))
            for x, y, (lat, lon), ok in zip(px, py, pts, valid)
            if ok
        ]
        try:
            with self._lock:
                self._conn.executemany(
                    f"INSERT OR IGNORE INTO {self.table} (zoom, x, y, lat, lng) VALUES (?, ?, ?, ?, ?)",
                    rows,
                )
                self._conn.commit()
        except sqlite3.Error as e:
            raise DataUnavailable(f"insert into {self.table} failed: {e}") from e
        if len(rows) < len(pts):
            log.warning("skipped points outside Mercator range", extra={"extra": {"skipped": len(pts) - len(rows)}})
        return len(rows)

    def query_bbox(self, west: float, south: float, east: float, north: float) -> np.ndarray:
        x0, x1, y0, y1 = self._partition_range(west, south, east, north)
        sql = (
            f"SELECT lat, lng FROM {self.table} "
            "WHERE zoom = ? AND x BETWEEN ? AND ? AND y BETWEEN ? AND ? "
            "AND lat BETWEEN ? AND ? AND lng BETWEEN ? AND ?"
        )
        params = (self.partition_zoom, x0, x1, y0, y1, south, north, west, east)
        try:
            with self._lock:
                rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise DataUnavailable(f"point query failed: {e}") from e
        if not rows:
            return _EMPTY.copy()
        return np.asarray(rows, dtype=float)

    def count(self) -> int:
        try:
            with self._lock:
                (n,) = self._conn.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()
        except sqlite3.Error as e:
            raise DataUnavailable(f"count failed: {e}") from e
        return int(n)

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def open_point_source(cfg: DataSourceConfig) -> PointSource:
    """Open the configured adapter once at startup; the result is shared by all workers."""
    if cfg.kind == "sqlite":
        src: PointSource = SqlitePointSource(cfg.path, table=cfg.table, partition_zoom=cfg.partition_zoom)
    elif cfg.kind == "csv":
        src = MemoryPointSource.from_csv(cfg.path)
    elif cfg.kind == "memory":
        src = MemoryPointSource()
    else:
        raise ValueError(f"unknown datasource kind: {cfg.kind}")
    log.info("point source opened", extra={"extra": {"kind": cfg.kind, "path": cfg.path}})
    return src
