"""Helper to retry REST calls with jittered backoff."""

import asyncio
import contextlib
import random


# Default maximum duration allowed for each REST call.
DEFAULT_REQUEST_TIMEOUT = 10.0


async def call_with_retries(
    op, *, max_retries=3, base_delay=5.0, give_up=None, timeout=DEFAULT_REQUEST_TIMEOUT
):
    """Execute ``op`` with retry/backoff logic.

    ``op`` is an async function (no-arg lambda) performing the REST call; it
    is invoked again from scratch on every attempt.
    ``max_retries`` counts retries on top of the first attempt.
    ``base_delay`` is the backoff base in seconds; each wait lasts between one
    and two times the base.
    ``give_up`` is an optional predicate; exceptions it accepts are re-raised
    immediately without further attempts.
    ``timeout`` bounds every single attempt; a timeout counts as a failure.

    The last exception is re-raised once the retries are exhausted.
    """

    attempt = 0
    while True:
        attempt += 1
        try:
            task = asyncio.create_task(op())
            try:
                return await asyncio.wait_for(task, timeout=timeout)
            except asyncio.TimeoutError:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                raise
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: PERF203 - we want to catch broadly
            if give_up is not None and give_up(e):
                raise
            if attempt > max_retries:
                raise
            await asyncio.sleep(base_delay * (random.random() + 1))
