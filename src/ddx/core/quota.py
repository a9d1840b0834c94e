"""
Quota state and pre-upload validation.

QuotaGate decides locally whether a selection may be uploaded, QuotaTracker
keeps the most recent quota response, and QuotaDisplayAdapter projects it
into something the CLI can render.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from ddx.core.batch import GIB, BatchConfig
from ddx.core.filesystem import FileDescriptor, format_size

logger = logging.getLogger(__name__)


class UserType(Enum):
    """Quota tier of the current viewer"""

    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"

    @classmethod
    def for_viewer(cls, authenticated: bool) -> "UserType":
        return cls.AUTHENTICATED if authenticated else cls.ANONYMOUS


class ValidationRejection(Exception):
    """Raised when a selection is refused before any network call"""

    def __init__(self, reason: str, validation_type: str = "size_limit"):
        super().__init__(reason)
        self.reason = reason
        self.validation_type = validation_type


class QuotaRefreshFailure(Exception):
    """Raised when the quota endpoint cannot be read"""

    pass


QUOTA_FIELDS = ("daily_limit_gb", "current_usage_gb", "remaining_gb", "usage_percentage")


@dataclass(frozen=True)
class QuotaInfo:
    """Snapshot of the viewer's daily quota, replaced wholesale on refresh"""

    user_type: UserType
    daily_limit_bytes: int
    current_usage_bytes: int
    remaining_bytes: int
    usage_percentage: float

    @classmethod
    def from_payload(cls, data) -> "QuotaInfo":
        """
        Parse a quota response body

        Args:
            data: Decoded JSON body of the quota endpoint

        Returns:
            QuotaInfo built from the payload

        Raises:
            QuotaRefreshFailure: If the payload is a message or lacks numeric fields
        """
        if not isinstance(data, dict):
            raise QuotaRefreshFailure(f"Invalid quota data format: {data!r}")
        if "message" in data:
            raise QuotaRefreshFailure(f"Quota API returned message: {data['message']}")

        for key in QUOTA_FIELDS:
            value = data.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise QuotaRefreshFailure(f"Quota field {key} missing or not numeric")

        try:
            user_type = UserType(data.get("user_type", "anonymous"))
        except ValueError:
            raise QuotaRefreshFailure(f"Unknown user type: {data.get('user_type')}")

        def _bytes(name: str) -> int:
            raw = data.get(f"{name}_bytes")
            if isinstance(raw, (int, float)) and not isinstance(raw, bool):
                return int(raw)
            return int(data[f"{name}_gb"] * GIB)

        return cls(
            user_type=user_type,
            daily_limit_bytes=_bytes("daily_limit"),
            current_usage_bytes=_bytes("current_usage"),
            remaining_bytes=_bytes("remaining"),
            usage_percentage=float(data["usage_percentage"]),
        )

    @property
    def daily_limit_gb(self) -> float:
        return self.daily_limit_bytes / GIB

    @property
    def current_usage_gb(self) -> float:
        return self.current_usage_bytes / GIB

    @property
    def remaining_gb(self) -> float:
        return self.remaining_bytes / GIB

    def to_event_properties(self) -> dict:
        return {
            "user_type": self.user_type.value,
            "daily_limit_gb": round(self.daily_limit_gb, 2),
            "current_usage_gb": round(self.current_usage_gb, 2),
            "remaining_gb": round(self.remaining_gb, 2),
            "usage_percentage": self.usage_percentage,
        }


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of a quota check"""

    accepted: bool
    reason: Optional[str] = None
    validation_type: Optional[str] = None
    offending_file: Optional[FileDescriptor] = None

    @classmethod
    def accept(cls) -> "QuotaDecision":
        return cls(accepted=True)

    @classmethod
    def reject(
        cls,
        reason: str,
        validation_type: str,
        offending_file: Optional[FileDescriptor] = None,
    ) -> "QuotaDecision":
        return cls(
            accepted=False,
            reason=reason,
            validation_type=validation_type,
            offending_file=offending_file,
        )

    def raise_for_rejection(self):
        """Raise ValidationRejection if this decision is a rejection"""
        if not self.accepted:
            raise ValidationRejection(self.reason, self.validation_type)


def _limit_text(limit: int) -> str:
    if limit % GIB == 0:
        return f"{limit // GIB}GB"
    return format_size(limit)


class QuotaGate:
    """Local accept/reject decisions for a selection"""

    def __init__(
        self,
        authenticated: Callable[[], bool] = lambda: False,
        quota: Callable[[], Optional[QuotaInfo]] = lambda: None,
        max_files: int = BatchConfig.MAX_FILES,
    ):
        """
        Initialize the gate

        Args:
            authenticated: Capability reporting whether the viewer is signed in
            quota: Returns the most recently loaded QuotaInfo, if any
            max_files: Largest accepted selection
        """
        self._authenticated = authenticated
        self._quota = quota
        self.max_files = max_files

    @staticmethod
    def file_limit(authenticated: bool) -> int:
        if authenticated:
            return BatchConfig.AUTHENTICATED_FILE_LIMIT
        return BatchConfig.ANONYMOUS_FILE_LIMIT

    @staticmethod
    def daily_limit(authenticated: bool, quota: Optional[QuotaInfo] = None) -> int:
        if quota is not None:
            return quota.daily_limit_bytes
        if authenticated:
            return BatchConfig.AUTHENTICATED_DAILY_LIMIT
        return BatchConfig.ANONYMOUS_DAILY_LIMIT

    def validate(
        self,
        selection: Sequence[FileDescriptor],
        authenticated: bool,
        quota: Optional[QuotaInfo] = None,
    ) -> QuotaDecision:
        """
        Decide whether a selection may be uploaded

        Args:
            selection: Files the user picked
            authenticated: Whether the viewer is signed in
            quota: Most recently loaded quota, or None if never loaded

        Returns:
            QuotaDecision; never raises and never mutates state
        """
        tier = UserType.for_viewer(authenticated).value

        if not selection:
            return QuotaDecision.reject("No files selected", "empty")

        if len(selection) > self.max_files:
            return QuotaDecision.reject(
                f"You can upload a maximum of {self.max_files} files at a time.",
                "file_count",
            )

        file_limit = self.file_limit(authenticated)
        for file in selection:
            if file.size > file_limit:
                return QuotaDecision.reject(
                    f"File size exceeds {_limit_text(file_limit)} limit for {tier} users",
                    "size_limit",
                    offending_file=file,
                )

        if len(selection) > 1:
            daily_limit = self.daily_limit(authenticated, quota)
            combined = sum(f.size for f in selection)
            if combined > daily_limit:
                return QuotaDecision.reject(
                    f"Total size {format_size(combined)} exceeds the "
                    f"{_limit_text(daily_limit)} daily limit for {tier} users",
                    "daily_limit",
                )

        return QuotaDecision.accept()

    def check(self, selection: Sequence[FileDescriptor]) -> QuotaDecision:
        """Validate against the current viewer and quota"""
        return self.validate(selection, self._authenticated(), self._quota())


class QuotaTracker:
    """Holds the latest QuotaInfo and refreshes it from the backend"""

    def __init__(
        self,
        fetch: Callable[[], Awaitable[QuotaInfo]],
        on_update: Optional[Callable[[QuotaInfo], None]] = None,
    ):
        self._fetch = fetch
        self._on_update = on_update
        self._info: Optional[QuotaInfo] = None
        self._issued = 0
        self._applied = 0

    @property
    def info(self) -> Optional[QuotaInfo]:
        return self._info

    async def refresh(self) -> Optional[QuotaInfo]:
        """
        Fetch quota and replace the stored value

        Responses are tagged with a sequence number; one that arrives after a
        newer response has been applied is discarded. A failed fetch keeps the
        stale value.

        Returns:
            The stored QuotaInfo after the refresh, possibly None
        """
        self._issued += 1
        ticket = self._issued

        try:
            info = await self._fetch()
        except QuotaRefreshFailure as e:
            logger.warning("Quota refresh failed, keeping previous value: %s", e)
            return self._info

        if ticket < self._applied:
            logger.debug("Discarding stale quota response #%d (have #%d)", ticket, self._applied)
            return self._info

        self._applied = ticket
        self._info = info
        if self._on_update is not None:
            self._on_update(info)
        return info


@dataclass(frozen=True)
class QuotaDisplay:
    """Read-only view of quota state for rendering"""

    tier_label: str
    used_gb: float
    limit_gb: float
    remaining_gb: float
    bar_percentage: float
    level: str

    def summary(self) -> str:
        return f"{self.used_gb:.1f}GB / {self.limit_gb:g}GB"


class QuotaDisplayAdapter:
    """Projects QuotaInfo into a QuotaDisplay"""

    LEVELS: List[tuple] = [
        (90, "critical"),
        (75, "high"),
        (50, "moderate"),
    ]

    @classmethod
    def level_for(cls, percentage: float) -> str:
        for threshold, level in cls.LEVELS:
            if percentage >= threshold:
                return level
        return "normal"

    @classmethod
    def project(cls, info: Optional[QuotaInfo]) -> Optional[QuotaDisplay]:
        if info is None:
            return None
        return QuotaDisplay(
            tier_label="Authenticated" if info.user_type is UserType.AUTHENTICATED else "Guest",
            used_gb=info.current_usage_gb,
            limit_gb=round(info.daily_limit_gb, 2),
            remaining_gb=info.remaining_gb,
            bar_percentage=max(0.0, min(info.usage_percentage, 100.0)),
            level=cls.level_for(info.usage_percentage),
        )
