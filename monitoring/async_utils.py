import asyncio
from typing import Iterable, Awaitable, Optional, Callable, List, Set


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
        await cancel_tasks(task_list)
        if cleanup is not None:
            await cleanup()


async def cancel_tasks(tasks: Iterable[asyncio.Task]) -> None:
    pending = [t for t in tasks if not t.done()]
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


def track_task(registry: Set[asyncio.Task], coro: Awaitable) -> asyncio.Task:
    """Schedule ``coro`` and keep a strong reference until it finishes."""
    task = asyncio.ensure_future(coro)
    registry.add(task)
    task.add_done_callback(registry.discard)
    return task
