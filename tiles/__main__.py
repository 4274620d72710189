from __future__ import annotations

"""
Run the Render API and the Tile HTTP Server in one process.

Both apps share one tile cache, one point-source connection and one render
worker pool.

Examples:
  python -m tiles
  python -m tiles --config config/params.yaml --render-port 7000 --tile-port 4321
"""

import argparse
import asyncio
from typing import List

import uvicorn

from common.config import load_config
from common.logging_setup import get_logger, setup_logging
from tiles.server import create_render_app, create_tile_app
from tiles.service import build_service


async def _serve(servers: List[uvicorn.Server]) -> None:
    await asyncio.gather(*(s.serve() for s in servers))


def main() -> None:
    ap = argparse.ArgumentParser(description="Point tile service (Render API + Tile HTTP Server)")
    ap.add_argument("--config", default=None, help="YAML config (default: $POINT_TILES_CONFIG or config/params.yaml)")
    ap.add_argument("--host", default=None, help="Override server.host")
    ap.add_argument("--render-port", type=int, default=None, help="Override server.render_port")
    ap.add_argument("--tile-port", type=int, default=None, help="Override server.tile_port")
    args = ap.parse_args()

    cfg = load_config(args.config)
    setup_logging(cfg.log_level, force=True)
    log = get_logger("tiles")

    host = args.host or cfg.server.host
    render_port = args.render_port or cfg.server.render_port
    tile_port = args.tile_port or cfg.server.tile_port

    service = build_service(cfg)
    render_app = create_render_app(service)
    tile_app = create_tile_app(service.cache, cfg.server)

    # log_config=None keeps the JSON root handler for uvicorn's loggers too
    servers = [
        uvicorn.Server(uvicorn.Config(render_app, host=host, port=render_port, log_config=None)),
        uvicorn.Server(uvicorn.Config(tile_app, host=host, port=tile_port, log_config=None)),
    ]
    log.info("starting", extra={"extra": {"host": host, "render_port": render_port, "tile_port": tile_port}})
    try:
        asyncio.run(_serve(servers))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
