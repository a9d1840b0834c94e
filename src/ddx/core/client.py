"""
HTTP access to the storage portal backend.

PortalClient wraps the quota, initiation and upload endpoints. HttpTransport
adapts it to the Transport interface used by TransferSession.
"""

import logging
from typing import List, Optional, Sequence
from urllib.parse import urlsplit

import httpx

from ddx.core.batch import BatchConfig
from ddx.core.channel import ProgressEventChannel
from ddx.core.filesystem import FileDescriptor, FileSystemError
from ddx.core.orchestrator import BatchReservation, InitiationFailure, ReservedFile
from ddx.core.quota import QuotaInfo, QuotaRefreshFailure
from ddx.core.transfer import TransferCancelled, TransferError, Transport, UploadTarget

logger = logging.getLogger(__name__)

QUOTA_PATH = "/api/v1/upload/quota-info"
UPLOAD_INITIATE_PATH = "/api/v1/upload/initiate"
BATCH_INITIATE_PATH = "/api/v1/batch/initiate"

# Older backends name the upload target after the storage provider
UPLOAD_URL_KEYS = ("upload_url", "gdrive_upload_url")


def download_url(origin: str, file_id: str) -> str:
    """Download page for a single uploaded file"""
    return f"{origin.rstrip('/')}/download/{file_id}"


def batch_download_url(origin: str, batch_id: str) -> str:
    """Download page for an uploaded batch"""
    return f"{origin.rstrip('/')}/batch-download/{batch_id}"


def _upload_url(entry: dict) -> Optional[str]:
    for key in UPLOAD_URL_KEYS:
        if entry.get(key):
            return entry[key]
    return None


class PortalClient:
    """Async client for the portal's upload API"""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client

        Args:
            base_url: API root, e.g. http://localhost:5000
            token: Bearer token of a signed-in user
            timeout: Per-request timeout in seconds
            transport: Custom httpx transport (used by tests)
        """
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.base_url = base_url
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "PortalClient":
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    async def close(self):
        await self._http.aclose()

    def _is_own_origin(self, url: str) -> bool:
        parts = urlsplit(url)
        if not parts.netloc:
            return True
        own = urlsplit(self.base_url)
        return (parts.scheme, parts.netloc) == (own.scheme, own.netloc)

    async def _request_json(self, method: str, path: str, error_cls, what: str, **kwargs):
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise error_cls(f"{what} failed: {e}") from e

        if response.is_error:
            raise error_cls(f"{what} failed: {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise error_cls(f"{what} returned invalid JSON") from e

    async def get_quota(self) -> QuotaInfo:
        """
        Fetch the viewer's quota

        Raises:
            QuotaRefreshFailure: On transport errors or malformed payloads
        """
        data = await self._request_json("GET", QUOTA_PATH, QuotaRefreshFailure, "Quota request")
        return QuotaInfo.from_payload(data)

    async def initiate_upload(self, file: FileDescriptor) -> UploadTarget:
        """
        Reserve space for a single file

        Raises:
            TransferError: If the reservation fails
        """
        data = await self._request_json(
            "POST", UPLOAD_INITIATE_PATH, TransferError, "Upload initiation", json=file.to_request()
        )
        if not isinstance(data, dict) or not data.get("file_id") or not _upload_url(data):
            raise TransferError("Upload initiation returned no file id or upload URL")
        return UploadTarget(file_id=str(data["file_id"]), upload_url=_upload_url(data))

    async def initiate_batch(
        self, files: Sequence[FileDescriptor], refs: Optional[Sequence[str]] = None
    ) -> BatchReservation:
        """
        Reserve space for a batch of files

        Args:
            files: Files of the batch
            refs: Client references echoed back by backends that support them

        Raises:
            InitiationFailure: If the reservation fails or is malformed
        """
        entries: List[dict] = []
        for i, file in enumerate(files):
            entry = file.to_request()
            if refs is not None:
                entry["client_ref"] = refs[i]
            entries.append(entry)

        data = await self._request_json(
            "POST", BATCH_INITIATE_PATH, InitiationFailure, "Batch initiation", json={"files": entries}
        )
        if not isinstance(data, dict) or not data.get("batch_id"):
            raise InitiationFailure("Batch initiation returned no batch id")

        returned = data.get("files")
        if returned is None:
            returned = []
        if not isinstance(returned, list):
            raise InitiationFailure(f"Batch initiation returned invalid files: {returned!r}")

        reserved = []
        for entry in returned:
            if not isinstance(entry, dict):
                raise InitiationFailure(f"Batch initiation returned an invalid entry: {entry!r}")
            url = _upload_url(entry)
            if not entry.get("file_id") or not url:
                raise InitiationFailure(f"Batch initiation returned an incomplete entry: {entry!r}")
            reserved.append(
                ReservedFile(
                    file_id=str(entry["file_id"]),
                    original_filename=entry.get("original_filename", ""),
                    upload_url=url,
                    client_ref=entry.get("client_ref"),
                )
            )
        return BatchReservation(batch_id=str(data["batch_id"]), files=reserved)

    async def upload(
        self,
        file: FileDescriptor,
        target: UploadTarget,
        channel: ProgressEventChannel,
        chunk_size: int = BatchConfig.CHUNK_SIZE,
    ) -> str:
        """
        Stream a file to its upload URL

        Progress is published on the channel as slices are handed to the
        connection. The stream stops at the next slice once a cancel has
        been requested on the channel.

        Returns:
            Remote file id from the response, or the reserved id

        Raises:
            TransferCancelled: If the channel asked for cancellation
            TransferError: On read, transport or HTTP errors
        """

        async def body():
            if file.size == 0:
                channel.publish_progress(100)
            sent = 0
            for chunk in file.open_chunks(chunk_size):
                if channel.cancel_requested:
                    raise TransferCancelled(f"Upload of {file.name} cancelled")
                yield chunk
                sent += len(chunk)
                if file.size:
                    channel.publish_progress(min(100, sent * 100 // file.size))

        request = self._http.build_request(
            "PUT",
            target.upload_url,
            content=body(),
            headers={"Content-Type": file.content_type, "Content-Length": str(file.size)},
        )
        if not self._is_own_origin(target.upload_url):
            request.headers.pop("Authorization", None)

        try:
            response = await self._http.send(request)
        except (FileSystemError, OSError) as e:
            raise TransferError(f"Failed to read {file.name}: {e}") from e
        except httpx.HTTPError as e:
            raise TransferError(f"Upload of {file.name} failed: {e}") from e

        if response.is_error:
            raise TransferError(f"Upload of {file.name} failed: {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("file_id"):
            return str(data["file_id"])
        return target.file_id


class HttpTransport(Transport):
    """Transport that reserves (when needed) and streams over HTTP"""

    def __init__(self, client: PortalClient, chunk_size: int = BatchConfig.CHUNK_SIZE):
        self._client = client
        self._chunk_size = chunk_size

    async def send(
        self,
        file: FileDescriptor,
        channel: ProgressEventChannel,
        target: Optional[UploadTarget] = None,
    ):
        if target is None:
            target = await self._client.initiate_upload(file)
            logger.debug("Reserved %s as %s", file.name, target.file_id)

        if channel.cancel_requested:
            raise TransferCancelled(f"Upload of {file.name} cancelled before sending")

        result_id = await self._client.upload(file, target, channel, self._chunk_size)
        channel.publish_success(result_id)
