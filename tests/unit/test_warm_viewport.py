"""
Unit tests for the viewport warm-up client
"""

import os
import sys
from unittest.mock import Mock

import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.geo import tile_range_for_viewport
from common.types import TileKey, Viewport
from scripts.warm_viewport import poll_tile, trigger_render, warm_viewport

KEY = TileKey(10, 557, 364)
VP = Viewport(zoom=10, north=48.25, south=48.06, east=11.72, west=11.36)


def response(status, content=b"", json_body=None):
    r = Mock()
    r.status_code = status
    r.content = content
    r.text = content.decode() if content else ""
    r.json.return_value = json_body or {}
    return r


class TestPollTile:
    """Test cases for poll_tile()"""

    def test_backoff_until_ready(self):
        """404s are retried with doubling delays until the tile appears"""
        session = Mock()
        session.get.side_effect = [response(404), response(404), response(200, b"png")]
        sleeps = []
        out = poll_tile(session, "http://tiles:4321/", KEY, backoff_s=0.2, sleep=sleeps.append)
        assert out == b"png"
        assert sleeps == [pytest.approx(0.2), pytest.approx(0.4)]
        session.get.assert_called_with("http://tiles:4321/tile/10_557_364.png", timeout=10.0)

    def test_deadline(self):
        """A tile that never appears returns None once the deadline passes"""
        session = Mock()
        session.get.return_value = response(404)
        sleeps = []
        assert poll_tile(session, "http://tiles", KEY, deadline_s=0.0, sleep=sleeps.append) is None
        assert sleeps == []

    def test_server_error(self):
        """Errors other than 404 are raised"""
        session = Mock()
        session.get.return_value = response(500, b"boom")
        with pytest.raises(RuntimeError, match="Tile server error 500"):
            poll_tile(session, "http://tiles", KEY, sleep=lambda s: None)


class TestTriggerRender:
    """Test cases for trigger_render()"""

    def test_accepted(self):
        """202 responses are returned as JSON"""
        session = Mock()
        session.get.return_value = response(202, json_body={"accepted": 4})
        assert trigger_render(session, "http://render:7000", VP) == {"accepted": 4}
        args, kwargs = session.get.call_args
        assert args[0] == "http://render:7000/render/viewport"
        assert kwargs["params"]["zoom"] == 10

    def test_rejected(self):
        """4xx responses raise"""
        session = Mock()
        session.get.return_value = response(400, b"bad")
        with pytest.raises(RuntimeError, match="Render API error 400"):
            trigger_render(session, "http://render:7000", VP)


class TestWarmViewport:
    """Test cases for warm_viewport()"""

    def test_all_tiles_ready(self):
        """Every tile of the viewport is fetched after triggering the render"""
        n = len(tile_range_for_viewport(VP))
        session = Mock()
        session.get.side_effect = [response(202, json_body={"accepted": n})] + [response(200, b"png")] * n
        out = warm_viewport(VP, session=session, sleep=lambda s: None)
        assert out["accepted"] == n
        assert out["tiles"] == n
        assert out["ready"] == n
        assert out["missing"] == []
