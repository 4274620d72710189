#!/usr/bin/env python3
"""
Warm the tiles of one map viewport over HTTP, the way the browser client does:

  1) GET {render_url}/render/viewport?zoom&north&south&east&west   (202)
  2) poll {tile_url}/tile/{z}_{x}_{y}.png with exponential backoff until 200

Examples:
  python scripts/warm_viewport.py --zoom 10 --bbox 11.36 48.06 11.72 48.25
  python scripts/warm_viewport.py --zoom 12 --bbox 11.36 48.06 11.72 48.25 \
      --render-url http://localhost:7000 --tile-url http://localhost:4321 --deadline 60
"""
from __future__ import annotations

import argparse
import os
import sys
import time
from typing import Callable, Dict, List, Optional

import requests

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from common.geo import tile_range_for_viewport
from common.logging_setup import get_logger, setup_logging
from common.types import TileKey, Viewport


log = get_logger("warm_viewport")


def trigger_render(session: requests.Session, render_url: str, vp: Viewport, timeout: float = 10.0) -> Dict:
    """Ask the Render API to queue every tile of the viewport."""
    params = {"zoom": vp.zoom, "north": vp.north, "south": vp.south, "east": vp.east, "west": vp.west}
    r = session.get(f"{render_url.rstrip('/')}/render/viewport", params=params, timeout=timeout)
    if r.status_code not in (200, 202):
        raise RuntimeError(f"Render API error {r.status_code}: {r.text[:200]}")
    return r.json()


def poll_tile(
    session: requests.Session,
    tile_url: str,
    key: TileKey,
    *,
    deadline_s: float = 30.0,
    backoff_s: float = 0.2,
    max_backoff_s: float = 5.0,
    timeout: float = 10.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[bytes]:
    """
    Fetch one tile, retrying 404s with exponential backoff until `deadline_s`.
    Returns the PNG bytes, or None if it never appeared.
    """
    url = f"{tile_url.rstrip('/')}/tile/{key.name}.png"
    t_end = time.monotonic() + deadline_s
    delay = backoff_s
    while True:
        r = session.get(url, timeout=timeout)
        if r.status_code == 200:
            return r.content
        if r.status_code != 404:
            raise RuntimeError(f"Tile server error {r.status_code} for {key.name}: {r.text[:200]}")
        if time.monotonic() + delay > t_end:
            return None
        sleep(delay)
        delay = min(delay * 2.0, max_backoff_s)


def warm_viewport(
    vp: Viewport,
    *,
    render_url: str = "http://localhost:7000",
    tile_url: str = "http://localhost:4321",
    deadline_s: float = 30.0,
    session: Optional[requests.Session] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, object]:
    session = session or requests.Session()
    accepted = trigger_render(session, render_url, vp)
    rng = tile_range_for_viewport(vp)
    ready = 0
    missing: List[str] = []
    for key in rng.keys():
        if poll_tile(session, tile_url, key, deadline_s=deadline_s, sleep=sleep) is None:
            missing.append(key.name)
        else:
            ready += 1
    out = {"accepted": accepted.get("accepted"), "tiles": len(rng), "ready": ready, "missing": missing}
    log.info("viewport warmed", extra={"extra": {**rng.to_dict(), "ready": ready, "missing": len(missing)}})
    return out


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Trigger and wait for the tiles of a map viewport")
    ap.add_argument("--zoom", type=int, required=True)
    ap.add_argument("--bbox", nargs=4, type=float, required=True, metavar=("WEST", "SOUTH", "EAST", "NORTH"))
    ap.add_argument("--render-url", default="http://localhost:7000")
    ap.add_argument("--tile-url", default="http://localhost:4321")
    ap.add_argument("--deadline", type=float, default=30.0, help="Seconds to wait per tile")
    args = ap.parse_args(argv)

    setup_logging(force=True)
    west, south, east, north = args.bbox
    vp = Viewport(zoom=args.zoom, north=north, south=south, east=east, west=west)
    out = warm_viewport(vp, render_url=args.render_url, tile_url=args.tile_url, deadline_s=args.deadline)
    print(f"[ok] {out['ready']}/{out['tiles']} tiles ready")
    if out["missing"]:
        print(f"[warn] missing: {', '.join(out['missing'][:20])}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
