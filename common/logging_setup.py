from __future__ import annotations

import json
import logging
import os
import sys
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional


# Set on the root logger once our handler is installed.
_CONFIGURED_FLAG = "_point_tiles_configured"


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line:
      { "t": 169, "lvl": "INFO", "name": "tiles.renderer", "thread": "render_0",
        "tile": "10_544_355", "msg": "text", "extra": {...} }

    Render workers log from a thread pool, so the thread name is always
    included. A "tile" key in the structured context is lifted to the top
    level so one tile's history can be followed across threads.
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "t": int(record.created * 1000),
            "lvl": record.levelname,
            "name": record.name,
            "thread": record.threadName,
        }
        ctx = getattr(record, "extra", None)
        if isinstance(ctx, dict):
            ctx = dict(ctx)
            if "tile" in ctx:
                payload["tile"] = ctx.pop("tile")
            if ctx:
                payload["extra"] = ctx
        payload["msg"] = record.getMessage()
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        # numpy scalars and paths in the context fall back to str()
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(level: Optional[str] = None, *, force: bool = False) -> None:
    """
    Configure the root logger with JSON lines on stdout.
    Level precedence:
      - explicit `level` arg (logging.level from params.yaml)
      - env LOG_LEVEL
      - INFO
    Modules call this implicitly through get_logger(); entry points call it
    again with force=True once the config file has been read.
    """
    root = logging.getLogger()
    if getattr(root, _CONFIGURED_FLAG, False) and not force:
        return

    lvl = logging.getLevelName((level or os.environ.get("LOG_LEVEL") or "INFO").upper())
    if not isinstance(lvl, int):
        lvl = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(lvl)
    setattr(root, _CONFIGURED_FLAG, True)

    # uvicorn runs with log_config=None; its loggers go through the root handler
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).handlers.clear()
        logging.getLogger(name).propagate = True


def get_logger(name: str) -> logging.Logger:
    setup_logging()
    return logging.getLogger(name)


@contextmanager
def log_duration(logger: logging.Logger, msg: str, level: int = logging.DEBUG, **fields: Any) -> Iterator[Dict[str, Any]]:
    """
    Log `msg` with the block's wall time as `ms` when the block completes.
    The yielded dict is the log context; callers add fields to it as they go.
    Nothing is logged when the block raises.
    """
    t0 = time.perf_counter()
    yield fields
    fields["ms"] = round((time.perf_counter() - t0) * 1000.0, 3)
    logger.log(level, msg, extra={"extra": fields})
