from unittest.mock import Mock

import pytest

from conftest import make_file, make_quota, settle
from ddx.core.analytics import RecordingAnalytics
from ddx.core.manager import UploadManager
from ddx.core.orchestrator import BatchOrchestrator, InitiationFailure
from ddx.core.quota import QuotaRefreshFailure, UserType, ValidationRejection
from ddx.core.transfer import TransferError, TransferSession, TransferState
from ddx.core.transfer_log import TransferLogger


@pytest.fixture
def analytics():
    return RecordingAnalytics()


@pytest.fixture
def transfer_logger(tmp_path):
    return TransferLogger(log_dir=tmp_path / "logs")


@pytest.fixture
def manager(fake_client, transport, analytics, transfer_logger):
    return UploadManager(
        fake_client,
        transport=transport,
        download_origin="http://portal.test",
        analytics=analytics,
        transfer_logger=transfer_logger,
    )


@pytest.mark.asyncio
async def test_open_loads_quota_and_tracks_it(manager, analytics):
    info = await manager.open()

    assert info == make_quota()
    assert manager.quota.info == info
    assert analytics.names() == ["quota_info"]
    assert analytics.events[0][1]["user_type"] == "anonymous"


@pytest.mark.asyncio
async def test_open_survives_quota_failure(manager, fake_client):
    fake_client.get_quota.side_effect = QuotaRefreshFailure("Quota request failed: 500")

    assert await manager.open() is None
    assert manager.snapshot()["quota"] is None


def test_one_file_selects_single_session(manager):
    flow = manager.select([make_file()])

    assert isinstance(flow, TransferSession)
    assert manager.session is flow
    assert manager.state is TransferState.SELECTED


def test_several_files_select_a_batch(manager, analytics):
    flow = manager.select([make_file("a.jpg"), make_file("b.jpg")])

    assert isinstance(flow, BatchOrchestrator)
    assert manager.orchestrator is flow
    assert manager.session is None
    event, properties = analytics.events[-1]
    assert event == "file_selected"
    assert properties["upload_type"] == "batch"
    assert properties["file_count"] == 2


def test_rejection_is_tracked_and_raised(manager, analytics):
    files = [make_file(f"f{i}.jpg") for i in range(6)]

    with pytest.raises(ValidationRejection):
        manager.select(files)

    assert analytics.names() == ["file_selected", "file_validation_failed"]
    properties = analytics.events[-1][1]
    assert properties["validation_type"] == "file_count"
    assert properties["user_type"] == "anonymous"
    assert manager.flow is None


@pytest.mark.asyncio
async def test_daily_limit_uses_loaded_quota(manager, fake_client):
    fake_client.get_quota.return_value = make_quota(daily_gb=2, used_gb=1.5)
    await manager.open()
    half_gib = 512 * 1024 ** 2

    # Within the static per-file limit but the pair exceeds the daily limit
    files = [make_file("a.bin", size=3 * half_gib), make_file("b.bin", size=2 * half_gib)]

    with pytest.raises(ValidationRejection) as exc_info:
        manager.select(files)

    assert exc_info.value.validation_type == "daily_limit"


def test_authenticated_viewer_gets_larger_limit(fake_client, transport):
    manager = UploadManager(fake_client, transport=transport, authenticated=lambda: True)

    flow = manager.select([make_file("movie.mp4", size=3 * 1024 ** 3)])

    assert flow.state is TransferState.SELECTED
    assert manager.user_type is UserType.AUTHENTICATED


@pytest.mark.asyncio
async def test_single_upload_success(manager, transport, analytics, transfer_logger, fake_client):
    await manager.open()
    manager.select([make_file()])

    await manager.start()
    transport.push("photo.jpg", "progress", 50)
    transport.push("photo.jpg", "success", "abc123")
    await manager.wait()

    snapshot = manager.snapshot()
    assert snapshot["mode"] == "single"
    assert snapshot["state"] == "success"
    assert snapshot["transfer"]["download_url"] == "http://portal.test/download/abc123"
    assert analytics.names() == [
        "quota_info", "file_selected", "upload_started", "upload_completed", "quota_info",
    ]
    assert fake_client.get_quota.await_count == 2

    entries = transfer_logger.get_entries()
    assert len(entries) == 1
    assert entries[0].upload_type == "single"
    assert entries[0].successful_files == ["photo.jpg"]
    assert entries[0].download_urls == ["http://portal.test/download/abc123"]


@pytest.mark.asyncio
async def test_select_while_uploading_is_refused(manager, transport):
    manager.select([make_file()])
    await manager.start()

    assert manager.is_active
    with pytest.raises(TransferError):
        manager.select([make_file("other.jpg")])

    manager.cancel()
    transport.push("photo.jpg", "return")
    await manager.wait()


@pytest.mark.asyncio
async def test_single_cancel_is_tracked(manager, transport, analytics, transfer_logger):
    manager.select([make_file()])
    await manager.start()
    transport.push("photo.jpg", "progress", 30)
    await settle()

    assert manager.cancel()
    transport.push("photo.jpg", "progress", 60)
    await manager.wait()

    assert manager.state is TransferState.CANCELLED
    event, properties = analytics.events[-1]
    assert event == "upload_cancelled"
    assert properties["progress_at_cancellation"] == 30
    assert transfer_logger.get_entries()[0].cancelled_files == ["photo.jpg"]


@pytest.mark.asyncio
async def test_batch_upload_with_one_failure(manager, transport, analytics, transfer_logger, fake_client):
    manager.select([make_file("a.jpg"), make_file("b.jpg")])

    await manager.start()
    transport.push("a.jpg", "success", "file-0")
    transport.push("b.jpg", "error", "Server closed the connection")
    await manager.wait()

    snapshot = manager.snapshot()
    assert snapshot["mode"] == "batch"
    assert snapshot["state"] == "success"
    assert snapshot["transfer"]["failed"] == 1
    assert snapshot["transfer"]["download_url"] == "http://portal.test/batch-download/batch-1"

    names = analytics.names()
    assert names.count("upload_started") == 2
    assert names.count("upload_completed") == 1
    assert names.count("upload_failed") == 1
    fake_client.get_quota.assert_awaited_once()

    entry = transfer_logger.get_entries()[0]
    assert entry.batch_id == "batch-1"
    assert entry.successful_files == ["a.jpg"]
    assert entry.failed_files == ["b.jpg"]


@pytest.mark.asyncio
async def test_batch_initiation_failure(manager, fake_client, transport, analytics):
    fake_client.initiate_batch.side_effect = InitiationFailure("Batch initiation failed: 500")
    manager.select([make_file("a.jpg"), make_file("b.jpg")])

    with pytest.raises(InitiationFailure):
        await manager.start()

    assert analytics.names().count("upload_failed") == 2
    assert "upload_started" not in analytics.names()
    assert transport.calls == []
    assert manager.orchestrator.batch is None


@pytest.mark.asyncio
async def test_start_without_selection_does_nothing(manager, transport):
    await manager.start()

    assert manager.state is TransferState.IDLE
    assert transport.calls == []


@pytest.mark.asyncio
async def test_reselect_after_finish_replaces_flow(manager, transport):
    first = manager.select([make_file()])
    await manager.start()
    transport.push("photo.jpg", "error", "nope")
    await manager.wait()

    second = manager.select([make_file("a.jpg"), make_file("b.jpg")])

    assert first.state is TransferState.IDLE
    assert manager.session is None
    assert manager.orchestrator is second


@pytest.mark.asyncio
async def test_reset_cancels_active_batch(manager, transport):
    manager.select([make_file("a.jpg"), make_file("b.jpg")])
    await manager.start()
    await settle()
    channels = list(transport.channels.values())

    manager.reset()

    assert manager.flow is None
    assert manager.state is TransferState.IDLE
    assert all(channel.cancel_requested for channel in channels)
    transport.push("a.jpg", "return")
    transport.push("b.jpg", "return")
    await settle()


@pytest.mark.asyncio
async def test_log_write_failure_does_not_break_upload(fake_client, transport, caplog):
    transfer_logger = Mock()
    transfer_logger.add_entry.side_effect = OSError("disk full")
    manager = UploadManager(fake_client, transport=transport, transfer_logger=transfer_logger)
    manager.select([make_file()])

    await manager.start()
    transport.push("photo.jpg", "success", "abc123")
    await manager.wait()

    assert manager.state is TransferState.SUCCESS
    assert "disk full" in caplog.text


def test_empty_selection_is_rejected(manager, analytics):
    with pytest.raises(ValidationRejection) as exc_info:
        manager.select([])

    assert exc_info.value.validation_type == "empty"
    assert analytics.names() == ["file_validation_failed"]
