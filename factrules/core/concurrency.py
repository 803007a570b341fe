"""Fan-out / fan-in helper shared by the evaluator and the scheduler."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Iterable
from typing import Any, TypeVar

T = TypeVar("T")


async def settle_all(units: Iterable[Awaitable[T]]) -> list[T | BaseException]:
    """Start every unit, wait for all of them, and return results in order.

    A unit that raises contributes its exception to the result list instead of
    cancelling its siblings. Cancellation of the caller still propagates.
    """
    tasks = [asyncio.ensure_future(unit) for unit in units]
    if not tasks:
        return []
    results: list[Any] = await asyncio.gather(*tasks, return_exceptions=True)
    return results


def first_error(results: Iterable[Any]) -> BaseException | None:
    for result in results:
        if isinstance(result, BaseException):
            return result
    return None
