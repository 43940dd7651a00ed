"""
Fire-and-forget execution for work that must not block a storage or recall call.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

import prime_memory.config as config

logger = config.logger


class BackgroundRunner:
    """
    Runs callables off the request path.

    ``thread`` mode hands work to a small thread pool; ``inline`` mode runs it
    immediately on the caller's thread. Failures are logged, never raised.
    """

    def __init__(self, mode: Optional[str] = None, max_workers: Optional[int] = None):
        self.mode = mode or config.BACKGROUND_MODE
        self._max_workers = max(1, max_workers or config.BACKGROUND_MAX_WORKERS)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers,
                    thread_name_prefix="prime-bg",
                )
            return self._executor

    def submit(self, fn: Callable[..., object], *args, label: str = "task", **kwargs) -> Optional[Future]:
        def run() -> None:
            try:
                fn(*args, **kwargs)
            except Exception as exc:
                logger.warning(
                    "background_task_failed",
                    extra={"task": label, "error": type(exc).__name__, "detail": str(exc)},
                )

        if self.mode == "inline":
            run()
            return None
        return self._get_executor().submit(run)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)


runner = BackgroundRunner()


def submit(fn: Callable[..., object], *args, label: str = "task", **kwargs) -> Optional[Future]:
    return runner.submit(fn, *args, label=label, **kwargs)
