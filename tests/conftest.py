import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from ddx.core.batch import GIB
from ddx.core.filesystem import FileDescriptor
from ddx.core.orchestrator import BatchReservation, ReservedFile
from ddx.core.quota import QuotaInfo, UserType
from ddx.core.transfer import TransferCancelled, TransferError, Transport


class ScriptedTransport(Transport):
    """Transport whose uploads advance only when the test pushes steps"""

    def __init__(self):
        self.calls = []
        self.channels = {}
        self._queues = {}

    def _queue(self, name):
        return self._queues.setdefault(name, asyncio.Queue())

    def push(self, name, kind, value=None):
        self._queue(name).put_nowait((kind, value))

    async def send(self, file, channel, target=None):
        self.calls.append((file, target))
        self.channels[file.name] = channel
        queue = self._queue(file.name)
        while True:
            kind, value = await queue.get()
            if channel.cancel_requested:
                raise TransferCancelled(f"{file.name} cancelled")
            if kind == "progress":
                channel.publish_progress(value)
            elif kind == "success":
                channel.publish_success(value)
                return
            elif kind == "error":
                raise TransferError(value)
            elif kind == "return":
                return
            elif kind == "crash":
                raise RuntimeError(value)


async def settle(rounds: int = 10):
    """Let scheduled tasks run"""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_file(name="photo.jpg", size=1024, content_type="image/jpeg"):
    return FileDescriptor(name=name, size=size, content_type=content_type)


def make_quota(user_type=UserType.ANONYMOUS, daily_gb=2, used_gb=0.5):
    return QuotaInfo(
        user_type=user_type,
        daily_limit_bytes=int(daily_gb * GIB),
        current_usage_bytes=int(used_gb * GIB),
        remaining_bytes=int((daily_gb - used_gb) * GIB),
        usage_percentage=used_gb / daily_gb * 100,
    )


async def echo_reservation(files, refs):
    return BatchReservation(
        batch_id="batch-1",
        files=[
            ReservedFile(
                file_id=f"file-{i}",
                original_filename=f.name,
                upload_url=f"http://storage.test/upload/{i}",
                client_ref=refs[i],
            )
            for i, f in enumerate(files)
        ],
    )


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    for name in ("DDX_API_URL", "DDX_DOWNLOAD_ORIGIN", "DDX_ACCESS_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    config_dir = tmp_path / "ddx-config"
    monkeypatch.setenv("DDX_CONFIG_DIR", str(config_dir))
    return config_dir


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest.fixture
def fake_client():
    client = Mock()
    client.get_quota = AsyncMock(return_value=make_quota())
    client.initiate_batch = AsyncMock(side_effect=echo_reservation)
    client.close = AsyncMock()
    return client
