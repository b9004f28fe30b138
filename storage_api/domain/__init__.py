"""
Domain layer package housing repositories and upload limits.
"""

from typing import Final

# S3 rejects parts smaller than this, except the last one
MIN_PART_SIZE_BYTES: Final[int] = 5 * 1024 * 1024
MAX_PART_COUNT: Final[int] = 10_000
INITIAL_PRESIGNED_BATCH: Final[int] = 10
MAX_PART_URLS_PER_REQUEST: Final[int] = 1000
