"""Runs PDF renders in a bounded worker process pool."""

from __future__ import annotations

import logging
import multiprocessing as mp
import threading
from concurrent.futures import Future, ProcessPoolExecutor, TimeoutError as FutureTimeoutError
from concurrent.futures.process import BrokenProcessPool
from datetime import datetime
from typing import Optional

from .config import Settings
from .errors import RenderError
from .models import Invoice

logger = logging.getLogger(__name__)


class RenderPool:
    """Process pool for renders, with back-pressure and a per-render timeout.

    Callers block in :meth:`render` until the document is ready or the render
    fails definitively; every failure surfaces as :class:`RenderError`.
    """

    def __init__(
        self,
        max_workers: int,
        max_inflight: int,
        queue_timeout_ms: int,
        render_timeout_ms: int,
    ) -> None:
        self.max_workers = max_workers
        self.queue_timeout_ms = queue_timeout_ms
        self.render_timeout_ms = render_timeout_ms
        self._inflight = threading.BoundedSemaphore(max_inflight)
        self._lock = threading.Lock()
        self._executor: Optional[ProcessPoolExecutor] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "RenderPool":
        return cls(
            max_workers=settings.max_concurrent_renders,
            max_inflight=settings.max_inflight_renders,
            queue_timeout_ms=settings.render_queue_timeout_ms,
            render_timeout_ms=settings.render_timeout_ms,
        )

    def _create_executor(self) -> ProcessPoolExecutor:
        return ProcessPoolExecutor(
            max_workers=self.max_workers,
            mp_context=mp.get_context("spawn"),
        )

    def _get_executor(self) -> ProcessPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = self._create_executor()
            return self._executor

    def _restart_executor(self, previous: ProcessPoolExecutor) -> ProcessPoolExecutor:
        with self._lock:
            if self._executor is previous:
                logger.warning("Render pool broken; restarting workers")
                previous.shutdown(wait=False, cancel_futures=True)
                self._executor = self._create_executor()
            if self._executor is None:
                self._executor = self._create_executor()
            return self._executor

    def _submit(self, invoice: Invoice, rendered_at: datetime) -> "Future[bytes]":
        from .rendering import render_invoice

        executor = self._get_executor()
        try:
            return executor.submit(render_invoice, invoice, rendered_at)
        except BrokenProcessPool:
            return self._restart_executor(executor).submit(render_invoice, invoice, rendered_at)

    def start(self) -> None:
        self._get_executor()

    def render(self, invoice: Invoice, rendered_at: datetime) -> bytes:
        acquired = self._inflight.acquire(timeout=self.queue_timeout_ms / 1000.0)
        if not acquired:
            raise RenderError(
                RenderError.RENDER_BUSY,
                f"render queue stayed full for {self.queue_timeout_ms} ms",
            )

        future = None
        try:
            future = self._submit(invoice, rendered_at)
            return future.result(timeout=self.render_timeout_ms / 1000.0)
        except FutureTimeoutError as exc:
            if future is not None:
                future.cancel()
            raise RenderError(
                RenderError.RENDER_TIMEOUT,
                f"render exceeded {self.render_timeout_ms} ms",
            ) from exc
        except BrokenProcessPool as exc:
            self._restart_executor(self._get_executor())
            raise RenderError(RenderError.RENDER_FAILED, "render worker crashed") from exc
        finally:
            self._inflight.release()

    def shutdown(self) -> None:
        with self._lock:
            executor = self._executor
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
