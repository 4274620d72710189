#!/usr/bin/env python3
"""
Pre-render every tile covering a bounding box at one or more zoom levels.

Uses the same cache, point source and render pool as the HTTP service, so tiles
rendered here are served as-is by the tile server.

Examples:
  python scripts/render_area.py --bbox 11.36 48.06 11.72 48.25 --zoom 10 11 12
  python scripts/render_area.py --bbox -180 -85 180 85 --zoom 0 1 2 3 --force
  python scripts/render_area.py --bbox 11.36 48.06 11.72 48.25 --zoom 12 --csv data/points.csv
"""
from __future__ import annotations

import argparse
import os
import sys
import time
from concurrent.futures import wait
from typing import Dict, List, Optional

# Allow `python scripts/render_area.py` from the repo root
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from common.config import load_config
from common.geo import tile_range_for_viewport
from common.logging_setup import get_logger, setup_logging
from common.types import Viewport
from tiles.datasource import MemoryPointSource
from tiles.service import TileService, build_service


def render_area(service: TileService, bbox: List[float], zooms: List[int], *, force: bool = False) -> Dict[str, int]:
    """Render all tiles in `bbox` = [west, south, east, north] for each zoom. Returns outcome counts."""
    log = get_logger("render_area")
    west, south, east, north = bbox
    totals = {"tiles": 0, "rendered": 0, "cached": 0, "failed": 0}
    for z in zooms:
        rng = tile_range_for_viewport(Viewport(zoom=z, north=north, south=south, east=east, west=west))
        if force:
            service.cache.invalidate_range(rng)
        t0 = time.perf_counter()
        futures = service.dispatcher.submit_range(rng)
        wait(futures)
        counts = {"tiles": len(futures), "rendered": 0, "cached": 0, "failed": 0}
        for fut in futures:
            if fut.exception() is not None:
                counts["failed"] += 1
            elif fut.result():
                counts["rendered"] += 1
            else:
                counts["cached"] += 1
        log.info(
            "zoom rendered",
            extra={"extra": {**rng.to_dict(), **counts, "elapsed_s": round(time.perf_counter() - t0, 3)}},
        )
        for k, v in counts.items():
            totals[k] += v
    return totals


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Pre-render point tiles for a bounding box")
    ap.add_argument("--bbox", nargs=4, type=float, required=True, metavar=("WEST", "SOUTH", "EAST", "NORTH"))
    ap.add_argument("--zoom", nargs="+", type=int, required=True, help="Zoom levels to render")
    ap.add_argument("--config", default=None, help="YAML config (default: config/params.yaml)")
    ap.add_argument("--csv", default="", help="Render from a lat,lon CSV instead of the configured store")
    ap.add_argument("--force", action="store_true", help="Invalidate cached tiles before rendering")
    args = ap.parse_args(argv)

    cfg = load_config(args.config)
    setup_logging(cfg.log_level, force=True)

    source = MemoryPointSource.from_csv(args.csv) if args.csv else None
    service = build_service(cfg, source=source)
    try:
        totals = render_area(service, args.bbox, args.zoom, force=args.force)
    finally:
        service.close()

    print(
        f"[ok] {totals['tiles']} tiles: {totals['rendered']} rendered, "
        f"{totals['cached']} cached, {totals['failed']} failed -> {cfg.tiles.cache_root}/"
    )
    return 1 if totals["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
