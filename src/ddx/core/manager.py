"""
Upload manager for the DirectDrive transfer client.

Owns whichever flow is active (one single-file session or one batch), keeps
quota state, and reports finished uploads to analytics and the transfer log.
"""

import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import List, Optional, Sequence, Set, Union

from ddx.core.aggregate import BatchOutcome
from ddx.core.analytics import AnalyticsSink, NullAnalytics
from ddx.core.client import HttpTransport, PortalClient, batch_download_url, download_url
from ddx.core.filesystem import FileDescriptor, total_size
from ddx.core.orchestrator import BatchOrchestrator, BatchSession, InitiationFailure
from ddx.core.quota import QuotaDecision, QuotaDisplayAdapter, QuotaGate, QuotaInfo, QuotaTracker, UserType
from ddx.core.transfer import TransferError, TransferSession, TransferState, Transport
from ddx.core.transfer_log import TransferLogEntry, TransferLogger

logger = logging.getLogger(__name__)

Flow = Union[TransferSession, BatchOrchestrator]


class UploadManager:
    """Single owner of the active upload flow"""

    def __init__(
        self,
        client: PortalClient,
        transport: Optional[Transport] = None,
        authenticated: Callable[[], bool] = lambda: False,
        download_origin: str = "http://localhost:3000",
        analytics: Optional[AnalyticsSink] = None,
        transfer_logger: Optional[TransferLogger] = None,
    ):
        """
        Initialize the upload manager

        Args:
            client: Backend client for quota and initiation calls
            transport: Per-file producer (default: HttpTransport over client)
            authenticated: Capability reporting whether the viewer is signed in
            download_origin: Origin used to build download locators
            analytics: Event sink (default: drop events)
            transfer_logger: History log for finished uploads, if any
        """
        self._client = client
        self._transport = transport or HttpTransport(client)
        self._authenticated = authenticated
        self._origin = download_origin
        self.analytics = analytics or NullAnalytics()
        self._transfer_logger = transfer_logger

        self.quota = QuotaTracker(client.get_quota, on_update=self._on_quota)
        self.gate = QuotaGate(authenticated, lambda: self.quota.info)

        self.session: Optional[TransferSession] = None
        self.orchestrator: Optional[BatchOrchestrator] = None
        self._started_at: Optional[float] = None
        self._reported: Set[str] = set()

    @property
    def user_type(self) -> UserType:
        return UserType.for_viewer(self._authenticated())

    @property
    def flow(self) -> Optional[Flow]:
        return self.session or self.orchestrator

    @property
    def is_active(self) -> bool:
        if self.session is not None:
            return self.session.state is TransferState.UPLOADING
        if self.orchestrator is not None:
            return self.orchestrator.is_active
        return False

    @property
    def state(self) -> TransferState:
        if self.session is not None:
            return self.session.state
        if self.orchestrator is not None:
            return self.orchestrator.state
        return TransferState.IDLE

    async def open(self) -> Optional[QuotaInfo]:
        """Load quota for a new session"""
        return await self.quota.refresh()

    async def close(self):
        await self._client.close()

    async def refresh_quota(self) -> Optional[QuotaInfo]:
        return await self.quota.refresh()

    def _file_locator(self, file_id: str) -> str:
        return download_url(self._origin, file_id)

    def _batch_locator(self, batch_id: str) -> str:
        return batch_download_url(self._origin, batch_id)

    def select(self, files: Sequence[FileDescriptor]) -> Flow:
        """
        Select files, replacing any idle or finished flow

        One file becomes a single upload; two or more become a batch.

        Returns:
            The new TransferSession or BatchOrchestrator

        Raises:
            ValidationRejection: If the quota gate refuses the selection
            TransferError: If an upload is in progress
        """
        if self.is_active:
            raise TransferError("An upload is already in progress; cancel it first")

        files = list(files)
        decision = self.gate.check(files)
        if files:
            self.analytics.track("file_selected", {
                "file_type": files[0].content_type,
                "file_size": total_size(files),
                "upload_type": "single" if len(files) == 1 else "batch",
                "file_count": len(files),
            })
        if not decision.accepted:
            self._track_rejection(files, decision)
            decision.raise_for_rejection()

        self._discard()

        if len(files) == 1:
            session = TransferSession(
                self._transport,
                gate=self.gate,
                locator=self._file_locator,
                refresh_quota=self.quota.refresh,
            )
            session.select(files[0])
            session.add_listener(self._on_single_change)
            self.session = session
            return session

        orchestrator = BatchOrchestrator(
            self._client,
            self._transport,
            gate=self.gate,
            locator=self._file_locator,
            batch_locator=self._batch_locator,
            refresh_quota=self.quota.refresh,
        )
        orchestrator.select(files)
        orchestrator.add_listener(self._on_member_change)
        orchestrator.add_completion_listener(self._on_batch_complete)
        self.orchestrator = orchestrator
        return orchestrator

    def _track_rejection(self, files: List[FileDescriptor], decision: QuotaDecision):
        offending = decision.offending_file or (files[0] if files else None)
        self.analytics.track("file_validation_failed", {
            "file_name": offending.name if offending else None,
            "file_size": offending.size if offending else 0,
            "validation_type": decision.validation_type,
            "user_type": self.user_type.value,
        })

    async def start(self):
        """
        Start the selected flow

        A batch is reserved first; an InitiationFailure leaves it unstarted
        with no members.

        Raises:
            InitiationFailure: If the batch reservation fails
        """
        if self.session is not None and self.session.state is TransferState.SELECTED:
            self._started_at = time.monotonic()
            self._track_started(self.session, "single")
            self.session.start()
            return

        if self.orchestrator is not None and self.orchestrator.state is TransferState.SELECTED:
            try:
                batch = await self.orchestrator.initiate()
            except InitiationFailure as e:
                logger.error("Batch initiation failed: %s", e)
                for file in self.orchestrator.files:
                    self.analytics.track("upload_failed", {
                        "file_name": file.name,
                        "file_size": file.size,
                        "file_type": file.content_type,
                        "error_message": str(e),
                        "progress_at_failure": 0,
                        "upload_type": "batch",
                    })
                raise
            self._started_at = time.monotonic()
            for member in batch.members:
                self._track_started(member, "batch")
            self.orchestrator.start()
            return

        logger.debug("Nothing selected to start (state %s)", self.state.value)

    def _track_started(self, session: TransferSession, upload_type: str):
        self.analytics.track("upload_started", {
            "file_name": session.file.name,
            "file_size": session.file.size,
            "file_type": session.file.content_type,
            "upload_type": upload_type,
        })

    async def wait(self):
        """Wait for the active flow to finish"""
        if self.session is not None:
            await self.session.wait()
        elif self.orchestrator is not None:
            await self.orchestrator.wait()

    def cancel(self) -> bool:
        """
        Cancel the active flow

        Returns:
            True if at least one upload was cancelled
        """
        if self.session is not None:
            return self.session.cancel()
        if self.orchestrator is not None:
            return self.orchestrator.cancel() > 0
        return False

    def _discard(self):
        if self.session is not None:
            self.session.reset()
        if self.orchestrator is not None:
            self.orchestrator.reset()
        self.session = None
        self.orchestrator = None
        self._started_at = None
        self._reported.clear()

    def reset(self):
        """Drop the current flow, cancelling it if needed"""
        self._discard()

    def _elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return time.monotonic() - self._started_at

    def _report_member(self, session: TransferSession, upload_type: str):
        if not session.is_terminal or session.id in self._reported:
            return
        self._reported.add(session.id)
        file = session.file
        if session.state is TransferState.SUCCESS:
            self.analytics.track("upload_completed", {
                "file_name": file.name,
                "file_size": file.size,
                "file_type": file.content_type,
                "file_id": session.result_id,
                "upload_type": upload_type,
            })
        elif session.state is TransferState.ERROR:
            self.analytics.track("upload_failed", {
                "file_name": file.name,
                "file_size": file.size,
                "file_type": file.content_type,
                "error_message": session.error_message,
                "progress_at_failure": session.progress_percent,
                "upload_type": upload_type,
            })
        else:
            self.analytics.track("upload_cancelled", {
                "file_name": file.name,
                "progress_at_cancellation": session.progress_percent,
                "upload_type": upload_type,
            })

    def _on_single_change(self, session: TransferSession):
        if not session.is_terminal or session.id in self._reported:
            return
        self._report_member(session, "single")
        self._write_log(
            upload_type="single",
            outcome=session.state,
            members=[session],
            download_urls=[session.result_locator] if session.result_locator else [],
        )

    def _on_member_change(self, session: TransferSession):
        self._report_member(session, "batch")

    def _on_batch_complete(self, batch: BatchSession, outcome: BatchOutcome):
        self._write_log(
            upload_type="batch",
            outcome=outcome.overall_state,
            members=batch.members,
            batch_id=batch.batch_id,
            download_urls=[batch.result_locator] if batch.result_locator else [],
        )

    def _write_log(
        self,
        upload_type: str,
        outcome: TransferState,
        members: List[TransferSession],
        download_urls: List[str],
        batch_id: Optional[str] = None,
    ):
        if self._transfer_logger is None:
            return

        def names(state: TransferState) -> List[str]:
            return [m.file.name for m in members if m.state is state]

        entry = TransferLogEntry(
            timestamp=datetime.now().isoformat(),
            upload_type=upload_type,
            outcome=outcome.value,
            successful_files=names(TransferState.SUCCESS),
            failed_files=names(TransferState.ERROR),
            cancelled_files=names(TransferState.CANCELLED),
            total_size=sum(m.file.size for m in members if m.state is TransferState.SUCCESS),
            duration=self._elapsed(),
            batch_id=batch_id,
            download_urls=download_urls,
        )
        try:
            self._transfer_logger.add_entry(entry)
        except OSError as e:
            logger.warning("Failed to write transfer log: %s", e)

    def _on_quota(self, info: QuotaInfo):
        self.analytics.track("quota_info", info.to_event_properties())

    def snapshot(self) -> dict:
        """Plain view of manager state for display"""
        display = QuotaDisplayAdapter.project(self.quota.info)
        snapshot = {
            "mode": None,
            "state": self.state.value,
            "quota": display.summary() if display else None,
        }
        if self.session is not None:
            snapshot["mode"] = "single"
            snapshot["transfer"] = self.session.snapshot()
        elif self.orchestrator is not None:
            snapshot["mode"] = "batch"
            snapshot["transfer"] = self.orchestrator.snapshot()
        return snapshot
