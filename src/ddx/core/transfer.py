"""
Transfer module for the DirectDrive transfer client.
Holds the single-file upload state machine.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from ddx.core.channel import Failure, Progress, ProgressEventChannel, Success, TransferEvent
from ddx.core.filesystem import FileDescriptor
from ddx.core.quota import QuotaGate

logger = logging.getLogger(__name__)


class TransferState(Enum):
    """Lifecycle states of an upload"""

    IDLE = "idle"
    SELECTED = "selected"
    UPLOADING = "uploading"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {TransferState.SUCCESS, TransferState.ERROR, TransferState.CANCELLED}
)


class TransferError(Exception):
    """Raised when an upload fails or is driven from the wrong state"""

    pass


class TransferCancelled(Exception):
    """Raised inside a transport when it notices a cancel request"""

    pass


@dataclass(frozen=True)
class UploadTarget:
    """Where the backend reserved space for one file"""

    file_id: str
    upload_url: str


class Transport:
    """Moves one file's bytes and reports through a channel"""

    async def send(
        self,
        file: FileDescriptor,
        channel: ProgressEventChannel,
        target: Optional[UploadTarget] = None,
    ):
        """
        Upload a file

        Implementations publish progress on the channel, finish with
        publish_success(), raise TransferError on failure and raise
        TransferCancelled once channel.cancel_requested is observed.

        Args:
            file: File to upload
            channel: Channel to report through
            target: Reservation from a batch initiation; None for a single upload
        """
        raise NotImplementedError


SessionListener = Callable[["TransferSession"], None]


class TransferSession:
    """State machine for one file: idle, selected, uploading, then terminal"""

    def __init__(
        self,
        transport: Transport,
        session_id: Optional[str] = None,
        gate: Optional[QuotaGate] = None,
        locator: Optional[Callable[[str], str]] = None,
        refresh_quota: Optional[Callable[[], Awaitable]] = None,
    ):
        """
        Initialize a transfer session

        Args:
            transport: Producer used to move the bytes
            session_id: Stable identifier; generated when omitted
            gate: Quota gate consulted by select() (default: anonymous limits)
            locator: Maps a remote file id to its download URL
            refresh_quota: Awaited after a successful upload
        """
        self.id = session_id or uuid.uuid4().hex
        self._transport = transport
        self._gate = gate or QuotaGate()
        self._locator = locator
        self._refresh_quota = refresh_quota
        self._listeners: List[SessionListener] = []
        self._channel: Optional[ProgressEventChannel] = None
        self._task: Optional[asyncio.Task] = None

        self.file: Optional[FileDescriptor] = None
        self.target: Optional[UploadTarget] = None
        self.state = TransferState.IDLE
        self.progress_percent = 0
        self.error_message: Optional[str] = None
        self.result_id: Optional[str] = None
        self.result_locator: Optional[str] = None

    def __repr__(self) -> str:
        name = self.file.name if self.file else None
        return f"<TransferSession {self.id} {name!r} {self.state.value} {self.progress_percent}%>"

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def cancel_requested(self) -> bool:
        return self._channel is not None and self._channel.cancel_requested

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def add_listener(self, listener: SessionListener):
        """Call listener after every state or progress change"""
        self._listeners.append(listener)

    def _notify(self):
        for listener in self._listeners:
            listener(self)

    def _set_state(self, state: TransferState):
        logger.debug("Session %s: %s -> %s", self.id, self.state.value, state.value)
        self.state = state
        self._notify()

    def select(self, file: FileDescriptor, target: Optional[UploadTarget] = None):
        """
        Choose the file to upload

        Args:
            file: File to upload
            target: Pre-reserved upload location, if any

        Raises:
            ValidationRejection: If the quota gate refuses the file
            TransferError: If an upload is running or finished
        """
        if self.state not in (TransferState.IDLE, TransferState.SELECTED):
            raise TransferError(
                f"Cannot select a file while session is {self.state.value}; reset first"
            )

        decision = self._gate.check([file])
        if not decision.accepted:
            logger.info("Rejected %s: %s", file.name, decision.reason)
            decision.raise_for_rejection()

        self.file = file
        self.target = target
        self._set_state(TransferState.SELECTED)

    def start(self) -> Optional[asyncio.Task]:
        """
        Begin uploading the selected file

        Must be called from a running event loop. Calling it in any state
        other than SELECTED does nothing.

        Returns:
            The task driving the upload, or None if nothing was started
        """
        if self.state is not TransferState.SELECTED:
            logger.debug("Ignoring start() for session %s in state %s", self.id, self.state.value)
            return None

        channel = ProgressEventChannel(name=self.file.name)
        channel.subscribe(self._handle_event)
        self._channel = channel
        self.progress_percent = 0
        self._set_state(TransferState.UPLOADING)

        self._task = asyncio.get_running_loop().create_task(
            self._run(self.file, self.target, channel), name=f"upload-{self.id}"
        )
        return self._task

    async def _run(
        self,
        file: FileDescriptor,
        target: Optional[UploadTarget],
        channel: ProgressEventChannel,
    ):
        try:
            await self._transport.send(file, channel, target)
        except TransferCancelled:
            logger.info("Upload of %s stopped after cancel", file.name)
        except TransferError as e:
            if not channel.closed:
                channel.publish_failure(str(e))
        except Exception as e:
            logger.exception("Unexpected failure while uploading %s", file.name)
            if not channel.closed:
                channel.publish_failure(f"Unexpected error: {e}")

        if not channel.closed and not channel.cancel_requested:
            channel.publish_failure("Transfer ended without a result")

        succeeded = self._channel is channel and self.state is TransferState.SUCCESS
        if succeeded and self._refresh_quota is not None:
            await self._refresh_quota()

    def _handle_event(self, event: TransferEvent):
        if self.state is not TransferState.UPLOADING:
            return

        if isinstance(event, Progress):
            self.progress_percent = max(self.progress_percent, event.value)
            self._notify()
        elif isinstance(event, Success):
            self.progress_percent = 100
            self.result_id = event.result_id
            if self._locator is not None:
                self.result_locator = self._locator(event.result_id)
            logger.info("Uploaded %s as %s", self.file.name, event.result_id)
            self._set_state(TransferState.SUCCESS)
        elif isinstance(event, Failure):
            self.error_message = event.message
            logger.warning("Upload of %s failed: %s", self.file.name, event.message)
            self._set_state(TransferState.ERROR)

    def cancel(self) -> bool:
        """
        Cancel a running upload

        The session becomes CANCELLED immediately. The transport may keep
        sending until it checks the channel's cancel flag.

        Returns:
            True if the session was uploading and is now cancelled
        """
        if self.state is not TransferState.UPLOADING:
            return False
        self._channel.unsubscribe()
        self._channel.cancel()
        self._set_state(TransferState.CANCELLED)
        return True

    def withdraw(self) -> bool:
        """
        Cancel a selected upload before it has started

        Returns:
            True if the session was selected and is now cancelled
        """
        if self.state is not TransferState.SELECTED:
            return False
        self._set_state(TransferState.CANCELLED)
        return True

    def reset(self):
        """Return to IDLE, discarding file, progress, error and result"""
        if self.state is TransferState.UPLOADING:
            self.cancel()
        self.file = None
        self.target = None
        self.progress_percent = 0
        self.error_message = None
        self.result_id = None
        self.result_locator = None
        self._channel = None
        self._task = None
        self._set_state(TransferState.IDLE)

    async def wait(self):
        """Wait until the upload task has finished, including after cancel"""
        if self._task is not None:
            await self._task

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "name": self.file.name if self.file else None,
            "size": self.file.size if self.file else None,
            "state": self.state.value,
            "progress": self.progress_percent,
            "error": self.error_message,
            "result_id": self.result_id,
            "download_url": self.result_locator,
        }
