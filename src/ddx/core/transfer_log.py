"""
Transfer logging module for the DirectDrive transfer client.
Keeps a per-day JSON history of finished uploads.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

LOG_PREFIX = "transfer_log_"


@dataclass
class TransferLogEntry:
    """Single finished upload (one file or one batch)"""
    timestamp: str
    upload_type: str  # "single" or "batch"
    outcome: str  # terminal TransferState value
    successful_files: List[str]
    failed_files: List[str]
    cancelled_files: List[str]
    total_size: int  # Bytes of the files that succeeded
    duration: float
    batch_id: Optional[str] = None
    download_urls: List[str] = field(default_factory=list)

    @property
    def file_count(self) -> int:
        return len(self.successful_files) + len(self.failed_files) + len(self.cancelled_files)

    @classmethod
    def from_dict(cls, data: dict) -> "TransferLogEntry":
        """Build an entry, ignoring keys written by other versions"""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class TransferLogger:
    """Manages transfer history logging"""

    def __init__(self, log_dir: str = None):
        """
        Initialize transfer logger

        Args:
            log_dir: Directory to store log files (default: ~/.config/ddx/logs)
        """
        if log_dir is None:
            config_dir = os.environ.get("DDX_CONFIG_DIR") or os.path.expanduser("~/.config/ddx")
            log_dir = os.path.join(config_dir, "logs")

        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def _log_file(self, date: Optional[str] = None) -> Path:
        if date is None:
            date = datetime.now().strftime("%Y-%m-%d")
        return self.log_dir / f"{LOG_PREFIX}{date}.json"

    def _read(self, log_file: Path) -> List[dict]:
        """Raw records of one day; unreadable files count as empty"""
        if not log_file.exists():
            return []
        try:
            with open(log_file, 'r', encoding='utf-8') as f:
                records = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning("Ignoring corrupt transfer log %s: %s", log_file.name, e)
            return []
        if not isinstance(records, list):
            logger.warning("Ignoring transfer log %s: not a list", log_file.name)
            return []
        return records

    def add_entry(self, entry: TransferLogEntry):
        """Append an entry to today's log"""
        log_file = self._log_file()
        records = self._read(log_file)
        records.append(asdict(entry))
        with open(log_file, 'w', encoding='utf-8') as f:
            json.dump(records, f, indent=2, ensure_ascii=False)

    def get_entries(self, date: Optional[str] = None) -> List[TransferLogEntry]:
        """
        Get transfer log entries for a specific date

        Records that do not describe an entry are skipped.

        Args:
            date: Date string in YYYY-MM-DD format (default: today)

        Returns:
            List of TransferLogEntry objects, oldest first
        """
        entries = []
        for record in self._read(self._log_file(date)):
            if not isinstance(record, dict):
                continue
            try:
                entries.append(TransferLogEntry.from_dict(record))
            except TypeError:
                logger.warning("Skipping incomplete transfer log record: %r", record)
        return entries

    def get_log_dates(self) -> List[str]:
        """Get sorted list of dates that have transfer logs"""
        return sorted(
            log_file.stem[len(LOG_PREFIX):]
            for log_file in self.log_dir.glob(f"{LOG_PREFIX}*.json")
        )
