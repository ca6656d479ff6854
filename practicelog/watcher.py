"""Bounded-retry watcher for things that show up late (e.g. the player root)."""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Union

logger = logging.getLogger(__name__)

Probe = Callable[[], Union[bool, Awaitable[bool]]]


@dataclass
class WatchResult:
    success: bool
    attempts: int


async def watch_until(
    probe: Probe,
    *,
    attempts: int,
    interval: float,
    initial_delay: float = 0.0,
    label: str = "watch",
) -> WatchResult:
    """Call *probe* until it returns truthy, at most *attempts* times.

    Args:
        probe: Zero-argument callable (sync or async) returning True once the
            awaited thing is in place.
        attempts: Upper bound on probe calls.
        interval: Seconds between consecutive attempts.
        initial_delay: Seconds to wait before the first attempt.
        label: Human-readable label for log messages.

    Giving up is not an error: a warning is logged and a failed WatchResult is
    returned. Cancellation of the calling task propagates unchanged.
    """
    if initial_delay > 0:
        await asyncio.sleep(initial_delay)

    for attempt in range(1, attempts + 1):
        result = probe()
        if inspect.isawaitable(result):
            result = await result
        if result:
            logger.info(f"[{label}] Ready on attempt {attempt}")
            return WatchResult(success=True, attempts=attempt)

        if attempt < attempts:
            logger.debug(f"[{label}] Not ready (attempt {attempt}/{attempts}), retrying...")
            await asyncio.sleep(interval)

    logger.warning(f"[{label}] Gave up after {attempts} attempts")
    return WatchResult(success=False, attempts=attempts)
