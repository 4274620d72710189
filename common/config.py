from __future__ import annotations

"""
Service configuration.

Loaded once at startup from YAML (default `config/params.yaml`, or the path in
env POINT_TILES_CONFIG) and passed explicitly to each component. A missing file
yields the built-in defaults below.
"""

import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml


DEFAULT_CONFIG_PATH = "config/params.yaml"
CONFIG_ENV = "POINT_TILES_CONFIG"


@dataclass
class TilesConfig:
    cache_root: str = "tile"
    tile_size: int = 256
    ttl_seconds: Optional[float] = None  # None: cached tiles never expire


@dataclass
class StyleConfig:
    radius: int = 2
    color: Tuple[int, int, int] = (220, 40, 40)  # RGB
    opacity: float = 0.5


@dataclass
class RenderConfig:
    workers: int = 4
    max_retries: int = 3
    retry_backoff_s: float = 0.5
    max_batch_tiles: int = 4096


@dataclass
class DataSourceConfig:
    kind: str = "sqlite"  # sqlite | csv | memory
    path: str = "data/points.sqlite"
    table: str = "points"
    partition_zoom: int = 8


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    render_port: int = 7000
    tile_port: int = 4321
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


@dataclass
class ServiceConfig:
    tiles: TilesConfig = field(default_factory=TilesConfig)
    style: StyleConfig = field(default_factory=StyleConfig)
    render: RenderConfig = field(default_factory=RenderConfig)
    datasource: DataSourceConfig = field(default_factory=DataSourceConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    log_level: str = "INFO"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _section(cls, raw: Optional[Dict], name: str):
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ValueError(f"config section '{name}' must be a mapping")
    fields = cls.__dataclass_fields__
    unknown = set(raw) - set(fields)
    if unknown:
        raise ValueError(f"unknown keys in config section '{name}': {sorted(unknown)}")
    return cls(**{k: _coerce(fields[k].type, v, f"{name}.{k}") for k, v in raw.items()})


# field annotations are strings under `from __future__ import annotations`
_SCALARS = {"int": int, "float": float, "Optional[float]": float, "str": str}


def _coerce(type_name: str, value: Any, key: str) -> Any:
    """Convert a YAML scalar to the field's type; anything unconvertible is a ValueError."""
    conv = _SCALARS.get(type_name)
    if conv is None or (value is None and type_name.startswith("Optional")):
        return value
    if isinstance(value, bool) or value is None or isinstance(value, (list, dict)):
        raise ValueError(f"{key} must be {conv.__name__}, got {value!r}")
    try:
        out = conv(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{key} must be {conv.__name__}, got {value!r}") from e
    if conv is int and isinstance(value, float) and value != out:
        raise ValueError(f"{key} must be an integer, got {value!r}")
    return out


def _validate(cfg: ServiceConfig) -> ServiceConfig:
    if cfg.tiles.tile_size <= 0:
        raise ValueError("tiles.tile_size must be > 0")
    if cfg.tiles.ttl_seconds is not None and cfg.tiles.ttl_seconds <= 0:
        raise ValueError("tiles.ttl_seconds must be > 0 (or null)")
    if cfg.style.radius < 0:
        raise ValueError("style.radius must be >= 0")
    if not (0.0 < cfg.style.opacity <= 1.0):
        raise ValueError("style.opacity must be in (0, 1]")
    try:
        color = tuple(int(c) for c in cfg.style.color)
    except (TypeError, ValueError) as e:
        raise ValueError("style.color must be [r, g, b] with 0..255 components") from e
    if len(color) != 3 or any(c < 0 or c > 255 for c in color):
        raise ValueError("style.color must be [r, g, b] with 0..255 components")
    cfg.style.color = color  # type: ignore[assignment]
    if cfg.render.workers <= 0:
        raise ValueError("render.workers must be > 0")
    if cfg.render.max_retries < 0:
        raise ValueError("render.max_retries must be >= 0")
    if cfg.render.max_batch_tiles <= 0:
        raise ValueError("render.max_batch_tiles must be > 0")
    if cfg.datasource.kind not in ("sqlite", "csv", "memory"):
        raise ValueError(f"unknown datasource.kind: {cfg.datasource.kind}")
    if not (0 <= cfg.datasource.partition_zoom <= 30):
        raise ValueError("datasource.partition_zoom must be in [0, 30]")
    return cfg


def config_from_dict(P: Optional[Dict]) -> ServiceConfig:
    P = P or {}
    cfg = ServiceConfig(
        tiles=_section(TilesConfig, P.get("tiles"), "tiles"),
        style=_section(StyleConfig, P.get("style"), "style"),
        render=_section(RenderConfig, P.get("render"), "render"),
        datasource=_section(DataSourceConfig, P.get("datasource"), "datasource"),
        server=_section(ServerConfig, P.get("server"), "server"),
        log_level=str((P.get("logging") or {}).get("level", "INFO")).upper(),
    )
    return _validate(cfg)


def load_config(path: Optional[str] = None) -> ServiceConfig:
    """
    Build the ServiceConfig.
    Path precedence:
      - explicit `path` arg
      - env POINT_TILES_CONFIG
      - config/params.yaml
    """
    path = path or os.environ.get(CONFIG_ENV) or DEFAULT_CONFIG_PATH
    if not Path(path).exists():
        return _validate(ServiceConfig())
    with open(path, "r") as f:
        return config_from_dict(yaml.safe_load(f))
