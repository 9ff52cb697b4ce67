from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from loguru import logger

from subagents.steps import SequentialStep
from subagents.workers.models import TaskResult, skipped_result

MAX_CONCURRENCY = 4

T = TypeVar("T")
R = TypeVar("R")


async def map_concurrent(
    items: Sequence[T],
    limit: int,
    fn: Callable[[T, int], Awaitable[R]],
) -> list[R]:
    """Run ``fn`` over ``items`` with at most ``limit`` calls in flight.

    Calls start in index order and ``result[i]`` always belongs to ``items[i]``.
    The first exception cancels the remaining workers and is re-raised as is.
    """
    if not items:
        return []
    results: list[R | None] = [None] * len(items)
    next_index = 0

    async def worker() -> None:
        nonlocal next_index
        while next_index < len(items):
            index = next_index
            next_index += 1
            results[index] = await fn(items[index], index)

    pool = [asyncio.create_task(worker()) for _ in range(max(1, min(limit, len(items))))]
    try:
        done, pending = await asyncio.wait(pool, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        for task in pool:
            task.cancel()
        raise
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    for task in pool:
        if task in done and not task.cancelled() and task.exception() is not None:
            raise task.exception()
    return results  # type: ignore[return-value]


def is_real_failure(result: TaskResult) -> bool:
    return result.exit_code != 0 and not result.skipped


async def run_parallel(
    tasks: Sequence[SequentialStep],
    run_one: Callable[[SequentialStep, int], Awaitable[TaskResult]],
    *,
    limit: int = MAX_CONCURRENCY,
    fail_fast: bool = False,
) -> list[TaskResult]:
    """Run a parallel group; with ``fail_fast`` unstarted tasks are skipped after a failure."""
    failed = False

    async def guarded(task: SequentialStep, index: int) -> TaskResult:
        nonlocal failed
        if fail_fast and failed:
            logger.debug("Skipping parallel task {} ({}) after failure", index, task.agent)
            return skipped_result(task.agent)
        result = await run_one(task, index)
        if result.exit_code != 0:
            failed = True
        return result

    return await map_concurrent(tasks, limit, guarded)
