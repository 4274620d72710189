from __future__ import annotations

import os
import tempfile
import time
from pathlib import Path
from typing import Dict, Optional

from common.logging_setup import get_logger
from common.types import StorageError, TileKey, TileNotFound, TileRange


log = get_logger(__name__)


class TileCache:
    """
    Flat on-disk store of rendered tiles, one PNG per key:

        root/
          ├─ {z}_{x}_{y}.png
          └─ ...

    `has()` is an existence check only (plus an mtime check when a TTL is set),
    so the renderer can short-circuit before any query or rasterization.
    `put()` writes to a temp file in the same directory and publishes it with
    os.replace(); readers see the old tile or the new one, never a partial file.
    """
    def __init__(self, root: str = "tile", ttl_seconds: Optional[float] = None):
        self.root = Path(root)
        self.ttl_seconds = ttl_seconds
        self.root.mkdir(parents=True, exist_ok=True)

    # -------- public API --------

    def path_for(self, key: TileKey) -> Path:
        return self.root / f"{key.name}.png"

    def has(self, key: TileKey) -> bool:
        try:
            st = self.path_for(key).stat()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"stat failed for {key.name}: {e}") from e
        return not self._expired(st.st_mtime)

    def get(self, key: TileKey) -> bytes:
        if self.ttl_seconds is not None and not self.has(key):
            raise TileNotFound(key.name)
        try:
            with self.path_for(key).open("rb") as f:
                return f.read()
        except FileNotFoundError:
            raise TileNotFound(key.name) from None
        except OSError as e:
            raise StorageError(f"read failed for {key.name}: {e}") from e

    def put(self, key: TileKey, data: bytes) -> Path:
        dst = self.path_for(key)
        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{key.name}.", suffix=".tmp", dir=self.root)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, dst)
        except OSError as e:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageError(f"write failed for {key.name}: {e}") from e
        return dst

    def invalidate(self, key: TileKey) -> bool:
        try:
            self.path_for(key).unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"delete failed for {key.name}: {e}") from e
        return True

    def invalidate_range(self, rng: TileRange) -> int:
        removed = sum(1 for key in rng.keys() if self.invalidate(key))
        log.info("invalidated tiles", extra={"extra": {**rng.to_dict(), "removed": removed}})
        return removed

    def clear(self) -> int:
        removed = 0
        for p in self.root.glob("*.png"):
            try:
                key = TileKey.parse(p.name)
            except ValueError:
                continue
            if self.invalidate(key):
                removed += 1
        return removed

    def stats(self) -> Dict[str, object]:
        zooms: Dict[str, int] = {}
        n_bytes = 0
        for p in self.root.glob("*.png"):
            try:
                key = TileKey.parse(p.name)
                size = p.stat().st_size
            except (ValueError, OSError):
                continue
            zooms[str(key.zoom)] = zooms.get(str(key.zoom), 0) + 1
            n_bytes += size
        return {
            "root": str(self.root),
            "tiles": sum(zooms.values()),
            "bytes": n_bytes,
            "zooms": dict(sorted(zooms.items(), key=lambda kv: int(kv[0]))),
            "ttl_seconds": self.ttl_seconds,
        }

    # -------- internals --------

    def _expired(self, mtime: float) -> bool:
        if self.ttl_seconds is None:
            return False
        return (time.time() - mtime) > self.ttl_seconds
