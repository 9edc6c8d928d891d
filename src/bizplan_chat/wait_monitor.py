from __future__ import annotations

import asyncio
from collections.abc import Callable

from loguru import logger


class WaitTimeMonitor:
    """One-shot "taking longer than usual" timer.

    It only reports; it never cancels or retries the response it watches.
    """

    def __init__(self) -> None:
        self._handle: asyncio.TimerHandle | None = None
        self._exceeded = False

    @property
    def armed(self) -> bool:
        return self._handle is not None

    @property
    def exceeded(self) -> bool:
        return self._exceeded

    def arm(self, estimated_wait_seconds: float, on_exceeded: Callable[[], None]) -> None:
        self.disarm()
        self._exceeded = False
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(max(0.0, estimated_wait_seconds), self._fire, on_exceeded)

    def disarm(self) -> None:
        if self._handle is None:
            return
        self._handle.cancel()
        self._handle = None

    def reset(self) -> None:
        self.disarm()
        self._exceeded = False

    def _fire(self, on_exceeded: Callable[[], None]) -> None:
        self._handle = None
        self._exceeded = True
        try:
            on_exceeded()
        except Exception as ex:
            logger.warning(f"Wait-time callback failed: {ex}")
