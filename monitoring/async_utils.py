import asyncio
import logging
import time
from typing import Iterable, Awaitable, Optional, Callable, List


logger = logging.getLogger(__name__)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()


def seconds_until_next_tick(interval_s: float, now: Optional[float] = None) -> float:
    """Delay until the next wall-clock multiple of ``interval_s``."""
    if now is None:
        now = time.time()
    return interval_s - (now % interval_s)


async def run_periodically(
    name: str,
    interval_s: float,
    func: Callable[[], Awaitable[None]],
    run_immediately: bool = True,
    on_error: Optional[Callable[[str, Exception], None]] = None,
    align: bool = False,
) -> None:
    """Run ``func`` every ``interval_s`` seconds until cancelled.

    Failures are logged with a consecutive-failure count and never stop the loop.
    With ``align`` each run starts on a wall-clock multiple of ``interval_s``
    instead of ``interval_s`` after the previous one finished.
    """
    fail_count = 0
    if not run_immediately:
        await asyncio.sleep(seconds_until_next_tick(interval_s) if align else interval_s)
    while True:
        try:
            await func()
            fail_count = 0
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            fail_count += 1
            logger.warning("%s failed (%s consecutive): %s", name, fail_count, exc)
            if on_error is not None:
                on_error(name, exc)
        await asyncio.sleep(seconds_until_next_tick(interval_s) if align else interval_s)
