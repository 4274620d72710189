from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Dict, List, Optional

from common.config import RenderConfig
from common.logging_setup import get_logger
from common.types import RenderError, TileKey, TileRange
from tiles.renderer import TileRenderer


log = get_logger(__name__)


class RenderDispatcher:
    """
    Bounded worker pool for tile renders.

    - submit(key) never runs two renders of the same key at once: while a render
      is in flight every submit for that key gets the same Future.
    - Retryable RenderErrors (DataUnavailable, StorageError) are retried with
      exponential backoff: retry_backoff_s * 2**attempt.
    - A failed tile only fails its own Future.
    """

    def __init__(
        self,
        renderer: TileRenderer,
        workers: int = 4,
        max_retries: int = 3,
        retry_backoff_s: float = 0.5,
    ):
        self.renderer = renderer
        self.max_retries = int(max_retries)
        self.retry_backoff_s = float(retry_backoff_s)
        self._pool = ThreadPoolExecutor(max_workers=int(workers), thread_name_prefix="render")
        self._lock = threading.Lock()
        self._inflight: Dict[TileKey, Future] = {}
        self._counts = {"submitted": 0, "deduplicated": 0, "rendered": 0, "cached": 0, "failed": 0, "retries": 0}

    @classmethod
    def from_config(cls, renderer: TileRenderer, cfg: RenderConfig) -> "RenderDispatcher":
        return cls(renderer, workers=cfg.workers, max_retries=cfg.max_retries, retry_backoff_s=cfg.retry_backoff_s)

    # -------- public API --------

    def submit(self, key: TileKey) -> Future:
        key.validate()
        with self._lock:
            fut = self._inflight.get(key)
            # a finished future may linger until its done-callback runs
            if fut is not None and not fut.done():
                self._counts["deduplicated"] += 1
                return fut
            fut = self._pool.submit(self._run, key)
            self._inflight[key] = fut
            self._counts["submitted"] += 1
        fut.add_done_callback(lambda f, k=key: self._done(k, f))
        return fut

    def submit_range(self, rng: TileRange) -> List[Future]:
        rng.validate()
        futures = [self.submit(key) for key in rng.keys()]
        log.info("render batch accepted", extra={"extra": {**rng.to_dict(), "tiles": len(futures)}})
        return futures

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for every in-flight render (and its bookkeeping). Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = list(self._inflight.values())
            if not pending:
                return True
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            _, not_done = wait(pending, timeout=remaining)
            if not not_done:
                # futures are done; done-callbacks may still be running
                time.sleep(0.001)

    def inflight(self) -> int:
        with self._lock:
            return len(self._inflight)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            out = dict(self._counts)
            out["inflight"] = len(self._inflight)
        return out

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait, cancel_futures=not wait)

    # -------- internals --------

    def _run(self, key: TileKey) -> bool:
        attempt = 0
        while True:
            try:
                return self.renderer.render(key)
            except RenderError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                delay = self.retry_backoff_s * (2 ** attempt)
                attempt += 1
                with self._lock:
                    self._counts["retries"] += 1
                log.warning(
                    "render failed, retrying",
                    extra={"extra": {"tile": key.name, "attempt": attempt, "delay_s": delay, "error": str(e)}},
                )
                time.sleep(delay)

    def _done(self, key: TileKey, fut: Future) -> None:
        with self._lock:
            if self._inflight.get(key) is fut:
                del self._inflight[key]
            if fut.cancelled():
                return
            err = fut.exception()
            if err is not None:
                self._counts["failed"] += 1
            elif fut.result():
                self._counts["rendered"] += 1
            else:
                self._counts["cached"] += 1
        if err is not None:
            log.error(
                "render failed",
                exc_info=(type(err), err, err.__traceback__),
                extra={"extra": {"tile": key.name, "error_type": type(err).__name__}},
            )
