from __future__ import annotations

from dataclasses import dataclass

from common.config import ServiceConfig
from common.logging_setup import get_logger
from tiles.datasource import PointSource, open_point_source
from tiles.dispatch import RenderDispatcher
from tiles.renderer import DotStyle, TileRenderer
from tiles.tile_cache import TileCache


log = get_logger(__name__)


@dataclass
class TileService:
    """Everything built once at startup and shared by both HTTP apps."""
    config: ServiceConfig
    cache: TileCache
    source: PointSource
    renderer: TileRenderer
    dispatcher: RenderDispatcher

    def close(self) -> None:
        self.dispatcher.shutdown(wait=False)
        self.source.close()
        log.info("tile service stopped")


def build_service(cfg: ServiceConfig, source: PointSource | None = None) -> TileService:
    """Wire cache, point source, renderer and dispatcher from one config."""
    cache = TileCache(cfg.tiles.cache_root, ttl_seconds=cfg.tiles.ttl_seconds)
    if source is None:
        source = open_point_source(cfg.datasource)
    renderer = TileRenderer(cache, source, DotStyle.from_config(cfg.style), tile_size=cfg.tiles.tile_size)
    dispatcher = RenderDispatcher.from_config(renderer, cfg.render)
    log.info(
        "tile service ready",
        extra={"extra": {"cache_root": cfg.tiles.cache_root, "workers": cfg.render.workers}},
    )
    return TileService(config=cfg, cache=cache, source=source, renderer=renderer, dispatcher=dispatcher)
