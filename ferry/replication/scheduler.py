"""Periodic trigger for the replication orchestrator.

Ticks never overlap: the next one starts ``interval`` seconds after the
previous one started, or right away if it ran longer than that. The stop
event is only checked between ticks, so shutdown lets an in-flight tick
finish its work.
"""

import asyncio
import logging
import time
from typing import Protocol

from ferry.schemas.replication import TickSummary

logger = logging.getLogger(__name__)


class Tickable(Protocol):
    async def tick(self) -> TickSummary: ...


async def run_periodic(
    orchestrator: Tickable,
    interval_seconds: float,
    *,
    stop_event: asyncio.Event | None = None,
    max_ticks: int | None = None,
) -> int:
    """Call ``orchestrator.tick()`` on a fixed cadence until stopped.

    Args:
        orchestrator: Anything with an async ``tick()``.
        interval_seconds: Cadence between tick starts.
        stop_event: Set to stop after the current tick.
        max_ticks: Stop after this many ticks (None = run until stopped).

    Returns:
        Number of ticks run.
    """
    if interval_seconds < 0:
        raise ValueError(f"interval_seconds must not be negative, got {interval_seconds}")

    stop_event = stop_event or asyncio.Event()
    ticks = 0

    while not stop_event.is_set():
        started = time.monotonic()
        try:
            await orchestrator.tick()
        except Exception:
            logger.exception("Replication tick failed")
        ticks += 1

        if max_ticks is not None and ticks >= max_ticks:
            break

        remaining = interval_seconds - (time.monotonic() - started)
        if remaining <= 0:
            continue
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=remaining)
        except TimeoutError:
            pass

    logger.info("Scheduler stopped after %d tick(s)", ticks)
    return ticks
