"""
Progress event channel shared by single and batch uploads.

A producer (the transport) publishes progress values followed by exactly one
terminal event. A consumer subscribes once. Unsubscribing only stops
delivery; aborting the upload needs an explicit cancel(), which the producer
observes through cancel_requested.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Progress:
    """Percentage of the file sent so far"""

    value: int


@dataclass(frozen=True)
class Success:
    """Terminal event carrying the remote file identifier"""

    result_id: str


@dataclass(frozen=True)
class Failure:
    """Terminal event carrying an error message"""

    message: str


TransferEvent = Union[Progress, Success, Failure]


class ChannelError(Exception):
    """Raised when the channel protocol is violated"""

    pass


class ProgressEventChannel:
    """Ordered, terminal-once event stream for one transfer attempt"""

    def __init__(self, name: str = ""):
        self.name = name
        self._consumer: Optional[Callable[[TransferEvent], None]] = None
        self._has_subscribed = False
        self._last_progress: Optional[int] = None
        self._terminal: Optional[TransferEvent] = None
        self._cancel_requested = False

    @property
    def closed(self) -> bool:
        """True once a terminal event has been published"""
        return self._terminal is not None

    @property
    def terminal(self) -> Optional[TransferEvent]:
        return self._terminal

    @property
    def last_progress(self) -> Optional[int]:
        return self._last_progress

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def subscribed(self) -> bool:
        return self._consumer is not None

    def subscribe(self, consumer: Callable[[TransferEvent], None]):
        """
        Register the single consumer for this attempt

        Args:
            consumer: Called synchronously with each event

        Raises:
            ChannelError: If a consumer was already registered
        """
        if self._has_subscribed:
            raise ChannelError(f"Channel {self.name!r} already has a subscriber")
        self._has_subscribed = True
        self._consumer = consumer

    def unsubscribe(self):
        """Stop delivering events. Does not abort the transfer."""
        self._consumer = None

    def cancel(self):
        """Ask the producer to abort; it stops at its next check"""
        if not self._cancel_requested:
            logger.debug("Cancel requested on channel %s", self.name)
        self._cancel_requested = True

    def _deliver(self, event: TransferEvent):
        if self._consumer is not None:
            self._consumer(event)

    def _ensure_open(self):
        if self._terminal is not None:
            raise ChannelError(
                f"Channel {self.name!r} already delivered {self._terminal!r}"
            )

    def publish_progress(self, value: int):
        """
        Publish a progress percentage

        Values are clamped to [0, 100]. Regressions and repeats are dropped so
        consumers only ever see increasing values.
        """
        self._ensure_open()
        value = max(0, min(100, int(value)))
        if self._last_progress is not None and value <= self._last_progress:
            return
        self._last_progress = value
        self._deliver(Progress(value))

    def publish_success(self, result_id: str):
        """Publish the terminal success event, preceded by 100% if needed"""
        self._ensure_open()
        if self._last_progress != 100:
            self.publish_progress(100)
        self._terminal = Success(result_id)
        self._deliver(self._terminal)

    def publish_failure(self, message: str):
        """Publish the terminal failure event"""
        self._ensure_open()
        self._terminal = Failure(message)
        self._deliver(self._terminal)
