"""
Unit tests for point sources
"""

import os
import sys

import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.config import DataSourceConfig
from common.types import DataUnavailable
from tiles.datasource import MemoryPointSource, SqlitePointSource, open_point_source

MUNICH = (48.15981, 11.52284)
BERLIN = (52.52, 13.405)
SYDNEY = (-33.8688, 151.2093)

# west, south, east, north around Munich
MUNICH_BBOX = (11.0, 47.9, 12.0, 48.4)


class TestMemoryPointSource:
    """Test cases for MemoryPointSource"""

    def test_query_bbox(self):
        """Only points inside the box are returned"""
        src = MemoryPointSource([MUNICH, BERLIN, SYDNEY])
        out = src.query_bbox(*MUNICH_BBOX)
        assert out.shape == (1, 2)
        assert tuple(out[0]) == MUNICH

    def test_empty(self):
        """An empty source returns an (0, 2) array"""
        src = MemoryPointSource()
        assert src.count() == 0
        assert src.query_bbox(-180, -85, 180, 85).shape == (0, 2)

    def test_bad_shape(self):
        """Points must be (lat, lon) pairs"""
        with pytest.raises(ValueError):
            MemoryPointSource([[1.0, 2.0, 3.0]])

    def test_from_csv_with_header(self, tmp_path):
        """CSV loader skips a header line"""
        p = tmp_path / "points.csv"
        p.write_text("lat,lon\n48.15981,11.52284\n52.52,13.405\n")
        src = MemoryPointSource.from_csv(str(p))
        assert src.count() == 2
        assert src.query_bbox(*MUNICH_BBOX).shape == (1, 2)

    def test_from_csv_without_header(self, tmp_path):
        """CSV without header keeps the first row"""
        p = tmp_path / "points.csv"
        p.write_text("48.15981,11.52284\n")
        assert MemoryPointSource.from_csv(str(p)).count() == 1

    def test_from_csv_extra_columns(self, tmp_path):
        """Columns after lat,lon are ignored and do not hide the first row"""
        p = tmp_path / "points.csv"
        p.write_text("48.15981,11.52284,munich\n52.52,13.405,berlin\n")
        src = MemoryPointSource.from_csv(str(p))
        assert src.count() == 2
        assert src.query_bbox(*MUNICH_BBOX).shape == (1, 2)

    def test_from_csv_missing_file(self, tmp_path):
        """Unreadable input surfaces as DataUnavailable"""
        with pytest.raises(DataUnavailable):
            MemoryPointSource.from_csv(str(tmp_path / "nope.csv"))


class TestSqlitePointSource:
    """Test cases for the partitioned SQLite store"""

    def test_add_and_query(self):
        """Points are stored under their partition and found by bbox"""
        src = SqlitePointSource(":memory:", partition_zoom=8)
        assert src.add_points([MUNICH, BERLIN, SYDNEY]) == 3
        assert src.count() == 3
        out = src.query_bbox(*MUNICH_BBOX)
        assert out.shape == (1, 2)
        assert out[0] == pytest.approx(np.array(MUNICH))

    def test_query_spans_partitions(self):
        """A box covering many partitions returns points from all of them"""
        src = SqlitePointSource(":memory:", partition_zoom=10)
        src.add_points([MUNICH, BERLIN])
        out = src.query_bbox(10.0, 47.0, 14.0, 53.0)
        assert out.shape == (2, 2)

    def test_partition_keys(self):
        """Rows carry the (zoom, x, y) partition of their point"""
        src = SqlitePointSource(":memory:", partition_zoom=10)
        src.add_points([MUNICH])
        row = src._conn.execute("SELECT zoom, x, y FROM points").fetchone()
        assert row == (10, 544, 355)

    def test_skips_out_of_range(self):
        """Points beyond the Mercator limit are not stored"""
        src = SqlitePointSource(":memory:")
        assert src.add_points([(89.0, 0.0), MUNICH]) == 1

    def test_duplicates_ignored(self):
        """The primary key makes inserts idempotent"""
        src = SqlitePointSource(":memory:")
        src.add_points([MUNICH])
        src.add_points([MUNICH])
        assert src.count() == 1

    def test_persists_to_file(self, tmp_path):
        """A file-backed store is readable by a second connection"""
        path = str(tmp_path / "db" / "points.sqlite")
        SqlitePointSource(path).add_points([MUNICH, BERLIN])
        assert SqlitePointSource(path).count() == 2

    def test_closed_connection(self):
        """Query failures surface as DataUnavailable"""
        src = SqlitePointSource(":memory:")
        src.close()
        with pytest.raises(DataUnavailable):
            src.query_bbox(*MUNICH_BBOX)

    def test_bad_table_name(self):
        """Table names must be identifiers"""
        with pytest.raises(ValueError):
            SqlitePointSource(":memory:", table="points; DROP TABLE x")


class TestOpenPointSource:
    """Test cases for open_point_source()"""

    def test_memory(self):
        """kind=memory yields an empty in-process source"""
        src = open_point_source(DataSourceConfig(kind="memory"))
        assert isinstance(src, MemoryPointSource)

    def test_sqlite(self, tmp_path):
        """kind=sqlite opens the configured file"""
        src = open_point_source(DataSourceConfig(kind="sqlite", path=str(tmp_path / "p.sqlite"), partition_zoom=6))
        assert isinstance(src, SqlitePointSource)
        assert src.partition_zoom == 6

    def test_unknown_kind(self):
        """Unknown kinds are rejected"""
        with pytest.raises(ValueError):
            open_point_source(DataSourceConfig(kind="cassandra"))
