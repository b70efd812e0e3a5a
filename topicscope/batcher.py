"""
Time-windowed coalescing of incoming messages.

High-frequency topics can deliver hundreds of messages per second. Applying
each one to the topic store individually would re-render the tree on every
arrival, so records are buffered and handed over in arrays on a fixed cadence.
"""
import asyncio
import logging
from typing import Callable, Optional

from topicscope.config import BATCH_INTERVAL_MS
from topicscope.tree.models import MessageRecord

logger = logging.getLogger(__name__)


class MessageBatcher:
    """
    Buffer records and deliver them to `on_flush` at most once per interval.

    A single timer is armed on the first add into an empty schedule and
    disarmed by flush() or clear(). Records are delivered in arrival order.
    Must be used from the thread running `loop`.
    """

    def __init__(
        self,
        on_flush: Callable[[list[MessageRecord]], None],
        interval_ms: int = BATCH_INTERVAL_MS,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.interval_ms = interval_ms
        self._on_flush = on_flush
        self._loop = loop
        self._batch: list[MessageRecord] = []
        self._timer: Optional[asyncio.TimerHandle] = None

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is not None:
            return self._loop
        return asyncio.get_running_loop()

    def add(self, record: MessageRecord) -> None:
        self._batch.append(record)
        if self._timer is None:
            self._timer = self._get_loop().call_later(self.interval_ms / 1000, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self.flush()

    def flush(self) -> None:
        if not self._batch:
            return
        batch = list(self._batch)
        self._batch = []
        self._cancel_timer()
        logger.debug(f"Flushing batch of {len(batch)} messages")
        self._on_flush(batch)

    def clear(self) -> None:
        dropped = len(self._batch)
        self._batch = []
        self._cancel_timer()
        if dropped:
            logger.debug(f"Discarded {dropped} buffered messages")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    @property
    def batch_size(self) -> int:
        return len(self._batch)

    @property
    def pending(self) -> bool:
        return self._timer is not None
