from __future__ import annotations

from concurrent.futures import wait as wait_futures
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from common.config import ServerConfig, load_config
from common.geo import tile_range_for_viewport
from common.logging_setup import get_logger
from common.types import (
    DataUnavailable,
    InvalidCoordinate,
    InvalidTileKey,
    StorageError,
    TileKey,
    TileNotFound,
    TileRange,
    Viewport,
)
from tiles.service import TileService, build_service
from tiles.tile_cache import TileCache


log = get_logger(__name__)


# -------- shared error mapping --------

def _error(status: int, error: str, detail: object = None) -> JSONResponse:
    body: Dict[str, object] = {"error": error}
    if detail is not None:
        body["detail"] = detail
    return JSONResponse(body, status_code=status)


def _install_handlers(app: FastAPI, cors_origins: List[str]) -> None:
    # The browser map client is served from a different origin.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def _bad_request(request: Request, exc: RequestValidationError):
        return _error(400, "bad_request", jsonable_encoder(exc.errors()))

    @app.exception_handler(InvalidTileKey)
    async def _bad_tile(request: Request, exc: InvalidTileKey):
        return _error(400, "invalid_tile_key", str(exc))

    @app.exception_handler(InvalidCoordinate)
    async def _bad_coord(request: Request, exc: InvalidCoordinate):
        return _error(400, "invalid_coordinate", str(exc))

    @app.exception_handler(TileNotFound)
    async def _not_found(request: Request, exc: TileNotFound):
        return _error(404, "tile_not_found", str(exc))

    @app.exception_handler(DataUnavailable)
    async def _no_data(request: Request, exc: DataUnavailable):
        log.error("data source unavailable", extra={"extra": {"path": request.url.path, "error": str(exc)}})
        return _error(503, "data_unavailable", str(exc))

    @app.exception_handler(StorageError)
    async def _storage(request: Request, exc: StorageError):
        log.error("tile storage error", extra={"extra": {"path": request.url.path, "error": str(exc)}})
        return _error(500, "storage_error", str(exc))


# -------- Render API --------

def create_render_app(service: TileService) -> FastAPI:
    """
    Render API (default port 7000).

      GET|POST /render/{zoom}/{x_from}/{x_to}/{y_from}/{y_to}[?wait=true]
      GET|POST /render/viewport?zoom&north&south&east&west[&wait=true]
      POST     /invalidate/{zoom}/{x_from}/{x_to}/{y_from}/{y_to}
      GET      /health, /stats

    Renders are queued and 202 is returned at once; clients poll the tile
    server for the images. `wait=true` blocks until the batch is done (200).
    """
    cfg = service.config
    max_batch = cfg.render.max_batch_tiles

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        service.close()

    app = FastAPI(title="Point Tiles Render API", version="1.0.0", lifespan=lifespan)
    app.state.service = service
    _install_handlers(app, cfg.server.cors_origins)

    def _dispatch(rng: TileRange, wait: bool):
        rng.validate()
        if len(rng) > max_batch:
            raise InvalidTileKey(f"batch of {len(rng)} tiles exceeds max_batch_tiles={max_batch}")
        futures = service.dispatcher.submit_range(rng)
        if not wait:
            return JSONResponse({**rng.to_dict(), "accepted": len(futures)}, status_code=202)

        wait_futures(futures)
        rendered = cached = 0
        errors: List[Dict[str, str]] = []
        for key, fut in zip(rng.keys(), futures):
            err = fut.exception()
            if err is not None:
                errors.append({"tile": key.name, "error": type(err).__name__, "detail": str(err)})
            elif fut.result():
                rendered += 1
            else:
                cached += 1
        return {**rng.to_dict(), "rendered": rendered, "cached": cached, "failed": len(errors), "errors": errors[:20]}

    @app.api_route("/render/viewport", methods=["GET", "POST"])
    def render_viewport(
        zoom: int = Query(...),
        north: float = Query(...),
        south: float = Query(...),
        east: float = Query(...),
        west: float = Query(...),
        wait: bool = Query(False),
    ):
        rng = tile_range_for_viewport(Viewport(zoom=zoom, north=north, south=south, east=east, west=west))
        return _dispatch(rng, wait)

    @app.api_route("/render/{zoom}/{x_from}/{x_to}/{y_from}/{y_to}", methods=["GET", "POST"])
    def render_range(zoom: int, x_from: int, x_to: int, y_from: int, y_to: int, wait: bool = Query(False)):
        return _dispatch(TileRange(zoom, x_from, x_to, y_from, y_to), wait)

    @app.post("/invalidate/{zoom}/{x_from}/{x_to}/{y_from}/{y_to}")
    def invalidate(zoom: int, x_from: int, x_to: int, y_from: int, y_to: int):
        rng = TileRange(zoom, x_from, x_to, y_from, y_to).validate()
        if len(rng) > max_batch:
            raise InvalidTileKey(f"range of {len(rng)} tiles exceeds max_batch_tiles={max_batch}")
        return {**rng.to_dict(), "invalidated": service.cache.invalidate_range(rng)}

    @app.get("/health")
    def health():
        # count() reaches the point source; an unreachable store is a 503
        return {"status": "ok", "inflight": service.dispatcher.inflight(), "points": service.source.count()}

    @app.get("/stats")
    def stats():
        return {
            "dispatcher": service.dispatcher.stats(),
            "renderer": service.renderer.stats(),
            "cache": service.cache.stats(),
        }

    return app


# -------- Tile HTTP Server --------

def create_tile_app(cache: TileCache, server_cfg: Optional[ServerConfig] = None) -> FastAPI:
    """
    Tile HTTP Server (default port 4321). Read-only against the cache.

      GET /tile/{zoom}_{x}_{y}.png -> 200 image/png | 404 while not rendered
      GET /health, /stats
    """
    server_cfg = server_cfg or ServerConfig()
    app = FastAPI(title="Point Tiles Tile Server", version="1.0.0")
    app.state.cache = cache
    _install_handlers(app, server_cfg.cors_origins)

    @app.get("/tile/{tile_name}")
    def tile(tile_name: str):
        if not tile_name.endswith(".png"):
            raise InvalidTileKey(f"tile name must end in .png: {tile_name!r}")
        key = TileKey.parse(tile_name)
        img = cache.get(key)
        headers = {
            "Cache-Control": "public, max-age=60",
            "X-Tile-Z": str(key.zoom),
            "X-Tile-X": str(key.x),
            "X-Tile-Y": str(key.y),
        }
        return Response(content=img, media_type="image/png", headers=headers)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/stats")
    def stats():
        return {"cache": cache.stats()}

    return app


# -------- uvicorn factories --------
#   uvicorn tiles.server:get_render_app --factory --port 7000
#   uvicorn tiles.server:get_tile_app --factory --port 4321

def get_render_app() -> FastAPI:
    return create_render_app(build_service(load_config()))


def get_tile_app() -> FastAPI:
    cfg = load_config()
    return create_tile_app(TileCache(cfg.tiles.cache_root, ttl_seconds=cfg.tiles.ttl_seconds), cfg.server)
