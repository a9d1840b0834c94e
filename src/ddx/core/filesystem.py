"""
Local file handling for the DirectDrive transfer client.
Builds immutable descriptors for files selected for upload.
"""

import mimetypes
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class FileDescriptor:
    """Immutable description of a file selected for upload"""

    name: str
    size: int
    content_type: str = DEFAULT_CONTENT_TYPE
    path: Optional[Path] = None  # Local byte source, if any

    def __post_init__(self):
        if self.size < 0:
            raise ValueError(f"File size cannot be negative: {self.size}")

    def to_request(self) -> dict:
        """Initiation payload entry for this file"""
        return {
            "filename": self.name,
            "size": self.size,
            "content_type": self.content_type,
        }

    def open_chunks(self, chunk_size: int) -> Iterator[bytes]:
        """
        Read the local file in fixed-size slices

        Args:
            chunk_size: Maximum bytes per slice

        Yields:
            Consecutive slices of the file content

        Raises:
            FileSystemError: If the descriptor has no local path
        """
        if self.path is None:
            raise FileSystemError(f"No local source for {self.name}")
        with open(self.path, "rb") as f:
            while True:
                data = f.read(chunk_size)
                if not data:
                    break
                yield data


class FileSystemError(Exception):
    """Raised when a local file cannot be described or read"""

    pass


def guess_content_type(name: str) -> str:
    """Guess a MIME type from the file name"""
    content_type, _ = mimetypes.guess_type(name)
    return content_type or DEFAULT_CONTENT_TYPE


def describe_file(path: str) -> FileDescriptor:
    """
    Build a descriptor for a local file

    Args:
        path: Path to a regular file

    Returns:
        FileDescriptor for the file

    Raises:
        FileSystemError: If the path is missing or not a regular file
    """
    file_path = Path(os.path.expanduser(path))
    if not file_path.exists():
        raise FileSystemError(f"Path does not exist: {path}")
    if not file_path.is_file():
        raise FileSystemError(f"Path is not a file: {path}")

    try:
        stat = file_path.stat()
    except OSError as e:
        raise FileSystemError(f"Failed to read {path}: {e}")

    return FileDescriptor(
        name=file_path.name,
        size=stat.st_size,
        content_type=guess_content_type(file_path.name),
        path=file_path,
    )


def describe_files(paths: List[str]) -> List[FileDescriptor]:
    """Describe several local files, preserving order"""
    return [describe_file(p) for p in paths]


def total_size(files: List[FileDescriptor]) -> int:
    """Sum of the sizes of the given files"""
    return sum(f.size for f in files)


def format_size(size: float) -> str:
    """Format size in bytes to human readable string"""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} PB"
