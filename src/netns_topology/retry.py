"""Bounded retries for transient OS failures."""

from __future__ import annotations

import logging
import time
from typing import Callable

from .errors import TransientOSError
from .planner import Operation

LOG = logging.getLogger(__name__)


def call_with_retries(
    call: Callable[[Operation], None],
    operation: Operation,
    *,
    max_retries: int,
    interval: float,
) -> None:
    """Invoke ``call(operation)``, retrying :class:`TransientOSError`.

    After ``max_retries`` retries the last transient error propagates and the
    caller treats it as fatal.  Any other exception propagates immediately.
    """

    attempt = 0
    while True:
        try:
            call(operation)
            return
        except TransientOSError as exc:
            if attempt >= max_retries:
                LOG.error("Giving up on %s after %d retries", operation, attempt)
                raise
            attempt += 1
            LOG.warning(
                "Transient failure on %s (retry %d/%d): %s",
                operation,
                attempt,
                max_retries,
                exc,
            )
            if interval > 0:
                time.sleep(interval)
