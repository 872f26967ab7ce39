"""Supervision for the catalog's long-running loops (cache sweeper, periodic sync)."""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Coroutine, List, ParamSpec, TypeVar

from catalog_backend.core.metrics import BACKGROUND_TASK_FAILURES_TOTAL

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def resilient_task(
    *,
    task_name: str,
    retry_delay: float = 5.0,
    max_retry_delay: float = 300.0,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Restart a background coroutine whenever it raises.

    The pause before a restart doubles with every failure, up to
    ``max_retry_delay``. Failures are counted per task in
    ``catalog_background_task_failures_total``. Cancellation is never retried.

    Example:
        @resilient_task(task_name="catalog_cache_sweeper")
        async def sweeper():
            while True:
                await asyncio.sleep(60)
                cache.sweep()
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            failures = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except asyncio.CancelledError:
                    logger.info("%s cancelled", task_name)
                    raise
                except Exception as exc:
                    failures += 1
                    BACKGROUND_TASK_FAILURES_TOTAL.labels(task=task_name).inc()
                    delay = min(retry_delay * 2 ** (failures - 1), max_retry_delay)
                    logger.error(
                        "%s failed (%d so far), restarting in %.1fs: %s",
                        task_name,
                        failures,
                        delay,
                        exc,
                        exc_info=True,
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator


class GracefulShutdown:
    """Owns the application's background tasks and cancels them on stop."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self.tasks: List[asyncio.Task] = []

    def spawn(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(self._supervise(name, coro), name=name)
        self.tasks.append(task)
        return task

    @staticmethod
    async def _supervise(name: str, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            logger.info("Background task '%s' stopped", name)
        except Exception:
            BACKGROUND_TASK_FAILURES_TOTAL.labels(task=name).inc()
            logger.exception("Background task '%s' crashed", name)
            raise
        else:
            logger.warning("Background task '%s' returned; it will not be restarted", name)

    async def shutdown(self) -> None:
        pending = [task for task in self.tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            logger.info("Stopping %d background task(s)", len(pending))
            _, still_running = await asyncio.wait(pending, timeout=self.timeout)
            if still_running:
                logger.warning(
                    "%d background task(s) still running after %.1fs: %s",
                    len(still_running),
                    self.timeout,
                    ", ".join(task.get_name() for task in still_running),
                )
        self.tasks.clear()


__all__ = ["GracefulShutdown", "resilient_task"]
