"""
Build and storage configuration for volume reconstruction.
"""

from __future__ import annotations

import os
import tempfile

from dataclasses import dataclass, replace


# maximum number of elements held by one in-memory chunk
CHUNK_SIZE = 1 << 27

# bytes per independently mapped region of a disk-backed buffer (a multiple
# of 8 so that no aligned element ever spans two regions)
CHUNK_BYTE_SIZE = 1 << 30

# pixel count under which a parallel pixel task stops splitting
PIXEL_TASK_THRESHOLD = 4096


@dataclass
class VolumeConfig:
    """
    Tunable parameters of voxel storage and the parallel build.

    Attributes:
        chunk_size: Elements per in-memory chunk.
        region_bytes: Bytes per mapped region of the disk-backed store.
        task_threshold: Pixel count below which a pixel task runs directly.
        max_workers: Size of the slice ingestion pool. None uses the CPU count.
        cache_dir: Directory of the temporary mapped files. None uses the
            system temp directory.
        max_memory_bytes: In-memory capacity limit. A volume larger than this
            is reported as out of capacity without attempting the allocation.
            None means unlimited and 0 always selects the mapped store.
        allow_mapped_fallback: Whether the mapped store may replace a failed
            in-memory allocation.
    """
    chunk_size: int = CHUNK_SIZE
    region_bytes: int = CHUNK_BYTE_SIZE
    task_threshold: int = PIXEL_TASK_THRESHOLD
    max_workers: int | None = None
    cache_dir: str | None = None
    max_memory_bytes: int | None = None
    allow_mapped_fallback: bool = True

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError(f'chunk size must be positive, got {self.chunk_size}')
        if self.region_bytes <= 0 or self.region_bytes % 8 != 0:
            raise ValueError(f'region size must be a positive multiple of 8, got {self.region_bytes}')
        if self.task_threshold <= 0:
            raise ValueError(f'task threshold must be positive, got {self.task_threshold}')

    @property
    def workers(self) -> int:
        """
        Resolved number of slice ingestion workers.
        """
        if self.max_workers is not None:
            return max(1, self.max_workers)
        return max(1, min(32, os.cpu_count() or 1))

    @property
    def directory(self) -> str:
        """
        Resolved directory for mapped backing files.
        """
        return self.cache_dir if self.cache_dir is not None else tempfile.gettempdir()

    def update(self, **kwargs) -> VolumeConfig:
        """
        Return a copy of the configuration with some fields replaced.
        """
        return replace(self, **kwargs)


default_config = VolumeConfig()


def cast_config(config: VolumeConfig | None) -> VolumeConfig:
    return default_config if config is None else config
