"""
Bounded external calls.

Every document-store and identity-provider call goes through `call_with_timeout`
so a hung collaborator can never hold a request forever. A call that times out is
treated as failed; the work it started may still complete in the background,
which is why every caller is either idempotent, conflict-detecting, or resumable.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, TypeVar

from campusmap.core.errors import UpstreamUnavailable

T = TypeVar("T")

logger = logging.getLogger(__name__)

_EXECUTOR = ThreadPoolExecutor(max_workers=32, thread_name_prefix="campusmap-io")


def call_with_timeout(
    fn: Callable[..., T],
    *args: Any,
    timeout_seconds: float | None,
    what: str,
    side: str,
    unavailable: tuple[type[BaseException], ...] = (),
    **kwargs: Any,
) -> T:
    """Run `fn(*args, **kwargs)` bounded by `timeout_seconds`.

    Raises:
        UpstreamUnavailable: On timeout, or when `fn` raises one of `unavailable`.
    """
    try:
        if timeout_seconds is None or timeout_seconds <= 0:
            return fn(*args, **kwargs)
        future = _EXECUTOR.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=float(timeout_seconds))
        except FutureTimeoutError as exc:
            future.cancel()
            logger.warning("%s timed out after %.2fs (%s)", what, float(timeout_seconds), side)
            raise UpstreamUnavailable(f"{what} timed out after {timeout_seconds}s", side=side) from exc
    except unavailable as exc:
        logger.warning("%s failed: %s (%s)", what, exc, side)
        raise UpstreamUnavailable(f"{what} failed: {exc}", side=side) from exc
