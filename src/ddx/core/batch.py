"""
Batch and tier limits for uploads
"""

GIB = 1024 * 1024 * 1024


class BatchConfig:
    """Limits applied to single and batch uploads"""
    # Maximum number of files in a single batch
    MAX_FILES = 5

    # Largest single file per tier
    ANONYMOUS_FILE_LIMIT = 2 * GIB
    AUTHENTICATED_FILE_LIMIT = 5 * GIB

    # Daily allowance per tier, used until a quota response is loaded
    ANONYMOUS_DAILY_LIMIT = 2 * GIB
    AUTHENTICATED_DAILY_LIMIT = 5 * GIB

    # Slice size for streamed uploads (4MB)
    CHUNK_SIZE = 4 * 1024 * 1024
