"""
Batch upload orchestration.

A batch is reserved with one initiation request, then every reserved file is
uploaded concurrently by its own TransferSession. The batch outcome is
re-derived after every member change; siblings finish in any order.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from ddx.core.aggregate import BatchOutcome, aggregate
from ddx.core.filesystem import FileDescriptor, total_size
from ddx.core.quota import QuotaGate
from ddx.core.transfer import (
    TransferCancelled,
    TransferError,
    TransferSession,
    TransferState,
    Transport,
    UploadTarget,
)

logger = logging.getLogger(__name__)


class InitiationFailure(Exception):
    """Raised when the batch reservation request fails"""

    pass


@dataclass(frozen=True)
class ReservedFile:
    """One file entry of a batch reservation"""

    file_id: str
    original_filename: str
    upload_url: str
    client_ref: Optional[str] = None

    def target(self) -> UploadTarget:
        return UploadTarget(file_id=self.file_id, upload_url=self.upload_url)


@dataclass(frozen=True)
class BatchReservation:
    """Backend answer to a batch initiation"""

    batch_id: str
    files: List[ReservedFile] = field(default_factory=list)


class BatchSession:
    """Reserved batch and its member sessions"""

    def __init__(self, batch_id: str, members: List[TransferSession]):
        self.batch_id = batch_id
        self.members = members
        self.result_locator: Optional[str] = None
        self.cancel_requested = False

    @property
    def outcome(self) -> BatchOutcome:
        return aggregate(self.members)

    @property
    def overall_state(self) -> TransferState:
        return self.outcome.overall_state

    @property
    def is_terminal(self) -> bool:
        return self.outcome.is_terminal

    def member(self, session_id: str) -> Optional[TransferSession]:
        return next((m for m in self.members if m.id == session_id), None)

    def snapshot(self) -> dict:
        outcome = self.outcome
        return {
            "batch_id": self.batch_id,
            "state": outcome.overall_state.value,
            "terminal": outcome.is_terminal,
            "succeeded": outcome.succeeded,
            "failed": outcome.failed,
            "cancelled": outcome.cancelled,
            "download_url": self.result_locator,
            "files": [m.snapshot() for m in self.members],
        }


CompletionListener = Callable[[BatchSession, BatchOutcome], None]


class BatchOrchestrator:
    """Owns one batch: selection, reservation, concurrent uploads, outcome"""

    def __init__(
        self,
        client,
        transport: Transport,
        gate: Optional[QuotaGate] = None,
        locator: Optional[Callable[[str], str]] = None,
        batch_locator: Optional[Callable[[str], str]] = None,
        refresh_quota: Optional[Callable[[], Awaitable]] = None,
    ):
        """
        Initialize the orchestrator

        Args:
            client: Backend client providing `initiate_batch(files, refs)`
            transport: Producer shared by all member uploads
            gate: Quota gate consulted on selection (default: anonymous limits)
            locator: Maps a remote file id to its download URL
            batch_locator: Maps a batch id to its download URL
            refresh_quota: Awaited once after a successful batch
        """
        self._client = client
        self._transport = transport
        self._gate = gate or QuotaGate()
        self._locator = locator
        self._batch_locator = batch_locator
        self._refresh_quota = refresh_quota

        self._listeners: List[Callable[[TransferSession], None]] = []
        self._completion_listeners: List[CompletionListener] = []
        self._tasks: List[asyncio.Task] = []
        self._refresh_task: Optional[asyncio.Task] = None
        self._initiating = False
        self._cancel_pending = False
        self._completed = False

        self.files: List[FileDescriptor] = []
        self.refs: List[str] = []
        self.batch: Optional[BatchSession] = None

    @property
    def state(self) -> TransferState:
        if self.batch is not None:
            return self.batch.overall_state
        if self.files:
            return TransferState.SELECTED
        return TransferState.IDLE

    @property
    def is_active(self) -> bool:
        return self._initiating or self.state is TransferState.UPLOADING

    def add_listener(self, listener: Callable[[TransferSession], None]):
        """Call listener after every member state or progress change"""
        self._listeners.append(listener)

    def add_completion_listener(self, listener: CompletionListener):
        """Call listener once when the batch reaches a terminal outcome"""
        self._completion_listeners.append(listener)

    def select(self, files: Sequence[FileDescriptor]):
        """
        Choose the files of the batch

        Args:
            files: Files to upload together

        Raises:
            ValidationRejection: If the quota gate refuses the selection
            TransferError: If a batch is already reserved
        """
        if self.batch is not None or self._initiating:
            raise TransferError("Batch already initiated; reset first")

        files = list(files)
        decision = self._gate.check(files)
        if not decision.accepted:
            logger.info("Rejected batch of %d files: %s", len(files), decision.reason)
            decision.raise_for_rejection()

        self.files = files
        self.refs = [uuid.uuid4().hex for _ in files]

    async def initiate(self, files: Optional[Sequence[FileDescriptor]] = None) -> BatchSession:
        """
        Reserve the batch with the backend

        Args:
            files: Selection to use; the current selection when omitted

        Returns:
            BatchSession whose members are SELECTED with their targets

        Raises:
            ValidationRejection: If the quota gate refuses the selection
            InitiationFailure: If the reservation fails or matches nothing
            TransferCancelled: If cancel() was called while waiting
            TransferError: If nothing is selected or a batch already exists
        """
        if files is not None:
            self.select(files)
        if not self.files:
            raise TransferError("No files selected")
        if self.batch is not None or self._initiating:
            raise TransferError("Batch already initiated; reset first")

        logger.info(
            "Initiating batch of %d files (%d bytes)", len(self.files), total_size(self.files)
        )
        self._initiating = True
        try:
            reservation = await self._client.initiate_batch(self.files, self.refs)
        finally:
            self._initiating = False

        if self._cancel_pending:
            self._cancel_pending = False
            raise TransferCancelled("Batch cancelled during initiation")

        members = self._correlate(reservation)
        if not members:
            raise InitiationFailure(
                f"Batch {reservation.batch_id} reserved none of the selected files"
            )

        self.batch = BatchSession(reservation.batch_id, members)
        logger.info("Batch %s reserved %d files", self.batch.batch_id, len(members))
        return self.batch

    def _correlate(self, reservation: BatchReservation) -> List[TransferSession]:
        unclaimed = list(zip(self.refs, self.files))
        members = []

        for entry in reservation.files:
            match = None
            if entry.client_ref is not None:
                match = next((pair for pair in unclaimed if pair[0] == entry.client_ref), None)
            if match is None:
                # Duplicate names resolve in selection order
                match = next(
                    (pair for pair in unclaimed if pair[1].name == entry.original_filename),
                    None,
                )
            if match is None:
                logger.warning(
                    "Ignoring reserved file %s (%s): no selected file matches",
                    entry.file_id,
                    entry.original_filename,
                )
                continue

            unclaimed.remove(match)
            ref, file = match
            session = TransferSession(
                self._transport, session_id=ref, gate=self._gate, locator=self._locator
            )
            session.select(file, target=entry.target())
            session.add_listener(self._on_member_change)
            members.append(session)

        for _, file in unclaimed:
            logger.warning("Backend did not reserve %s", file.name)

        return members

    def start(self) -> List[asyncio.Task]:
        """
        Start every member upload at once

        Returns:
            Tasks of the started uploads; empty if there was nothing to start
        """
        if self.batch is None:
            logger.debug("Ignoring start(): batch not initiated")
            return []
        if self.batch.cancel_requested:
            logger.debug("Ignoring start(): batch %s was cancelled", self.batch.batch_id)
            return []

        started = [task for task in (m.start() for m in self.batch.members) if task is not None]
        self._tasks.extend(started)
        return started

    async def run(self, files: Optional[Sequence[FileDescriptor]] = None) -> BatchSession:
        """Initiate, start and wait for the whole batch"""
        batch = await self.initiate(files)
        self.start()
        await self.wait()
        return batch

    def _on_member_change(self, session: TransferSession):
        for listener in self._listeners:
            listener(session)

        if not session.is_terminal or self._completed:
            return

        outcome = aggregate(self.batch.members)
        if not outcome.is_terminal:
            return

        self._completed = True
        logger.info(
            "Batch %s finished as %s (%d ok, %d failed, %d cancelled)",
            self.batch.batch_id,
            outcome.overall_state.value,
            outcome.succeeded,
            outcome.failed,
            outcome.cancelled,
        )
        if outcome.overall_state is TransferState.SUCCESS:
            if self._batch_locator is not None:
                self.batch.result_locator = self._batch_locator(self.batch.batch_id)
            if self._refresh_quota is not None:
                self._refresh_task = asyncio.get_running_loop().create_task(
                    self._refresh_quota()
                )

        for listener in self._completion_listeners:
            listener(self.batch, outcome)

    def cancel(self) -> int:
        """
        Cancel every member that has not finished

        Members still waiting for start() and members uploading become
        CANCELLED. Members that already succeeded or failed keep their state.

        Returns:
            Number of members moved to CANCELLED
        """
        if self.batch is None:
            if self._initiating:
                self._cancel_pending = True
            return 0

        self.batch.cancel_requested = True
        cancelled = sum(1 for m in self.batch.members if m.cancel() or m.withdraw())
        logger.info("Cancelled %d uploads of batch %s", cancelled, self.batch.batch_id)
        return cancelled

    async def wait(self):
        """Wait for all member uploads and any follow-up quota refresh"""
        if self._tasks:
            await asyncio.gather(*self._tasks)
        if self._refresh_task is not None:
            await self._refresh_task

    def reset(self):
        """Discard the batch and selection"""
        if self.batch is not None:
            self.cancel()
        self.files = []
        self.refs = []
        self.batch = None
        self._tasks = []
        self._refresh_task = None
        self._cancel_pending = False
        self._completed = False

    def snapshot(self) -> dict:
        if self.batch is not None:
            return self.batch.snapshot()
        return {
            "batch_id": None,
            "state": self.state.value,
            "files": [{"name": f.name, "size": f.size} for f in self.files],
        }
