"""
Voxel storage backends and the allocation fallback chain.

A volume owns exactly one store for its whole life: either an in-memory
chunked array, or (when the memory allocation is out of capacity) a chunked
file mapping. Both expose the same element-indexed interface.
"""

from __future__ import annotations

import gc
import logging
import torch
import mprvolume as mv


logger = logging.getLogger(__name__)


class OutOfCapacity:
    """
    Result of an in-memory allocation attempt that could not be satisfied.
    It is falsy, so callers can chain `allocate_in_memory(...) or allocate_mapped(...)`.
    """

    def __init__(self, requested_bytes: int, reason: str) -> None:
        self.requested_bytes = requested_bytes
        self.reason = reason

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(requested_bytes={self.requested_bytes}, reason={self.reason!r})'


class VoxelStore:
    """
    Abstract element-indexed storage for voxel data of a single element kind.
    Subclasses implement the access methods below.
    """
    is_mapped = False

    def __init__(self, size: int, kind: mv.ElementKind) -> None:
        self.size = int(size)
        self.kind = mv.cast_element_kind(kind)

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(size={self.size}, kind={self.kind.label})'

    def get(self, index: int) -> int | float:
        raise NotImplementedError

    def set(self, index: int, value) -> None:
        raise NotImplementedError

    def fill(self, value) -> None:
        raise NotImplementedError

    def read(self, start: int, length: int) -> torch.Tensor:
        raise NotImplementedError

    def write(self, start: int, values: torch.Tensor) -> None:
        raise NotImplementedError

    def gather(self, indices: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def scatter(self, indices: torch.Tensor, values: torch.Tensor) -> None:
        raise NotImplementedError

    def replace(self, old, new) -> int:
        raise NotImplementedError

    def release(self) -> None:
        raise NotImplementedError


class ArrayStore(VoxelStore):
    """
    Voxel storage in an in-memory chunked array.
    """

    def __init__(self, array: mv.ChunkedArray) -> None:
        super().__init__(array.size, array.kind)
        self.array = array

    def get(self, index: int) -> int | float:
        return self.array[index]

    def set(self, index: int, value) -> None:
        self.array[index] = value

    def fill(self, value) -> None:
        self.array.fill(value)

    def read(self, start: int, length: int) -> torch.Tensor:
        return self.array.read(start, length)

    def write(self, start: int, values: torch.Tensor) -> None:
        self.array.copy_from(start, values.reshape(-1))

    def gather(self, indices: torch.Tensor) -> torch.Tensor:
        return self.array.gather(indices)

    def scatter(self, indices: torch.Tensor, values: torch.Tensor) -> None:
        self.array.scatter(indices, values)

    def replace(self, old, new) -> int:
        return self.array.replace(old, new)

    def release(self) -> None:
        self.array = None


class MappedStore(VoxelStore):
    """
    Voxel storage in a disk-backed chunked mapped buffer. Elements are stored
    in the native byte order of the element kind's on-disk dtype.
    """
    is_mapped = True

    def __init__(self, buffer: mv.ChunkedMappedBuffer, size: int, kind: mv.ElementKind) -> None:
        super().__init__(size, kind)
        self.buffer = buffer

    def _check_range(self, start: int, length: int) -> None:
        if length < 0 or start < 0 or start + length > self.size:
            raise IndexError(f'range [{start}, {start + length}) outside of store '
                             f'with {self.size} elements')

    def get(self, index: int) -> int | float:
        self._check_range(index, 1)
        return self.buffer.get(index * self.kind.byte_width, self.kind)

    def set(self, index: int, value) -> None:
        self._check_range(index, 1)
        self.buffer.put(index * self.kind.byte_width, value, self.kind)

    def fill(self, value) -> None:
        self.buffer.fill(value, self.kind)

    def read(self, start: int, length: int) -> torch.Tensor:
        self._check_range(start, length)
        values = self.buffer.read_elements(start * self.kind.byte_width, length, self.kind)
        return self.kind.to_tensor(values)

    def write(self, start: int, values: torch.Tensor) -> None:
        values = values.reshape(-1)
        self._check_range(start, values.numel())
        self.buffer.write_elements(start * self.kind.byte_width, self.kind.to_numpy(values), self.kind)

    def gather(self, indices: torch.Tensor) -> torch.Tensor:
        indices = torch.as_tensor(indices, dtype=torch.int64)
        return self.kind.to_tensor(self.buffer.gather(indices.numpy(), self.kind))

    def scatter(self, indices: torch.Tensor, values: torch.Tensor) -> None:
        indices = torch.as_tensor(indices, dtype=torch.int64).reshape(-1)
        values = torch.as_tensor(values)
        self.buffer.scatter(indices.numpy(), self.kind.to_numpy(values), self.kind)

    def replace(self, old, new) -> int:
        replaced = 0
        for ri in range(self.buffer.region_count):
            view = self.buffer.region_view(ri, self.kind)
            mask = view == old
            count = int(mask.sum())
            if count:
                view[mask] = new
                replaced += count
        return replaced

    def release(self) -> None:
        if self.buffer is not None:
            self.buffer.close()
            self.buffer = None


# messages of the CPU and device allocators when a request cannot be met
ALLOCATOR_FAILURES = ("DefaultCPUAllocator: can't allocate memory", 'out of memory')


def _is_allocation_failure(exc: RuntimeError) -> bool:
    # dedicated error type in recent torch releases
    out_of_memory = getattr(torch, 'OutOfMemoryError', None)
    if out_of_memory is not None and isinstance(exc, out_of_memory):
        return True
    message = str(exc)
    return any(text in message for text in ALLOCATOR_FAILURES)


def allocate_in_memory(
    size: int,
    kind: mv.ElementKind,
    config: mv.VolumeConfig | None = None) -> ArrayStore | OutOfCapacity:
    """
    Attempt to allocate an in-memory voxel store. A failed allocation is
    retried once after a garbage collection.

    Args:
        size (int): Number of elements.
        kind (ElementKind): Element kind.
        config (VolumeConfig, optional): Storage configuration.

    Returns:
        ArrayStore or OutOfCapacity: The store, or a falsy capacity result.
    """
    config = mv.config.cast_config(config)
    kind = mv.cast_element_kind(kind)
    nbytes = size * torch.empty(0, dtype=kind.torch_dtype).element_size()

    if config.max_memory_bytes is not None and nbytes > config.max_memory_bytes:
        return OutOfCapacity(nbytes, f'exceeds the in-memory limit of {config.max_memory_bytes} bytes')

    for attempt in range(2):
        try:
            return ArrayStore(mv.ChunkedArray(size, kind, config.chunk_size))
        except MemoryError:
            pass
        except RuntimeError as exc:
            if not _is_allocation_failure(exc):
                raise
        if attempt == 0:
            gc.collect()
    return OutOfCapacity(nbytes, 'memory allocation failed')


def allocate_mapped(
    size: int,
    kind: mv.ElementKind,
    config: mv.VolumeConfig | None = None) -> MappedStore:
    """
    Allocate a disk-backed voxel store on a new temporary file. Any failure
    here is fatal to the caller.
    """
    config = mv.config.cast_config(config)
    kind = mv.cast_element_kind(kind)
    buffer = mv.ChunkedMappedBuffer.create(size * kind.byte_width,
                                           directory=config.directory,
                                           region_bytes=config.region_bytes)
    return MappedStore(buffer, size, kind)


def allocate(
    size: int,
    kind: mv.ElementKind,
    config: mv.VolumeConfig | None = None) -> VoxelStore:
    """
    Allocate voxel storage, falling back to a mapped file when the in-memory
    attempt reports it is out of capacity.

    Args:
        size (int): Number of elements.
        kind (ElementKind): Element kind.
        config (VolumeConfig, optional): Storage configuration.

    Returns:
        VoxelStore: The allocated store.
    """
    config = mv.config.cast_config(config)
    result = allocate_in_memory(size, kind, config)
    if result:
        return result

    if not config.allow_mapped_fallback:
        raise MemoryError(f'cannot allocate {result.requested_bytes} bytes of voxel data: {result.reason}')

    logger.warning('in-memory voxel storage unavailable (%s), using a mapped file in %s',
                   result.reason, config.directory)
    try:
        return allocate_mapped(size, kind, config)
    except OSError as exc:
        raise MemoryError(f'cannot allocate {result.requested_bytes} bytes of voxel data '
                          'in memory or in a mapped file') from exc
