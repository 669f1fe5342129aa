"""
Disk-backed voxel buffers mapped into memory one region at a time.
"""

from __future__ import annotations

import os
import logging
import tempfile
import numpy as np
import mprvolume as mv

from .config import CHUNK_BYTE_SIZE


logger = logging.getLogger(__name__)


class ChunkedMappedBuffer:
    """
    A byte buffer backed by a temporary file and mapped in fixed-size regions,
    each region an independent memory map. Values are addressed by absolute
    byte offset; accessors work out which region (and which offset inside it)
    to touch, and values straddling two regions are split between them.

    The only way to reclaim the resource is `close()`, which releases every
    mapping and deletes the backing file.
    """

    def __init__(self,
        path: os.PathLike,
        total_bytes: int,
        region_bytes: int = CHUNK_BYTE_SIZE) -> None:
        """
        Args:
            path (PathLike): Backing file. It is created or resized to `total_bytes`.
            total_bytes (int): Total byte size of the buffer.
            region_bytes (int, optional): Bytes per mapped region. Must be a
                multiple of 8 so aligned elements never span two regions.
        """
        if total_bytes < 0:
            raise ValueError(f'negative total bytes: {total_bytes}')
        if region_bytes <= 0 or region_bytes % 8 != 0:
            raise ValueError(f'region size must be a positive multiple of 8, got {region_bytes}')
        self._path = str(path)
        self._total_bytes = int(total_bytes)
        self._region_bytes = int(region_bytes)

        # sizing the file with truncate keeps it sparse until written
        with open(self._path, 'r+b' if os.path.exists(self._path) else 'w+b') as file:
            file.truncate(self._total_bytes)

        count = (self._total_bytes + self._region_bytes - 1) // self._region_bytes
        self._regions = []
        for i in range(count):
            offset = i * self._region_bytes
            length = min(self._total_bytes - offset, self._region_bytes)
            self._regions.append(np.memmap(self._path, dtype=np.uint8, mode='r+',
                                           offset=offset, shape=(length,)))

    @classmethod
    def create(cls,
        total_bytes: int,
        directory: os.PathLike | None = None,
        region_bytes: int = CHUNK_BYTE_SIZE) -> ChunkedMappedBuffer:
        """
        Create a mapped buffer on a new temporary file.

        Args:
            total_bytes (int): Total byte size of the buffer.
            directory (PathLike, optional): Directory of the temporary file.
            region_bytes (int, optional): Bytes per mapped region.

        Returns:
            ChunkedMappedBuffer: The new buffer.
        """
        fd, path = tempfile.mkstemp(prefix='volume_data', suffix='.tmp', dir=directory)
        os.close(fd)
        try:
            buffer = cls(path, total_bytes, region_bytes)
        except Exception:
            os.remove(path)
            raise
        logger.debug('mapped %d bytes in %d regions at %s', total_bytes, buffer.region_count, path)
        return buffer

    def __repr__(self) -> str:
        return (f'{self.__class__.__name__}(path={self._path!r}, total_bytes={self._total_bytes}, '
                f'regions={self.region_count})')

    def __enter__(self) -> ChunkedMappedBuffer:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    @property
    def path(self) -> str:
        return self._path

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    @property
    def region_bytes(self) -> int:
        return self._region_bytes

    @property
    def region_count(self) -> int:
        return len(self._regions)

    @property
    def closed(self) -> bool:
        return self._regions is None

    def region_index(self, byte_offset):
        return byte_offset // self._region_bytes

    def region_offset(self, byte_offset):
        return byte_offset % self._region_bytes

    def _check_open(self) -> None:
        if self._regions is None:
            raise ValueError('mapped buffer is closed')

    def _check_range(self, byte_offset: int, length: int) -> None:
        self._check_open()
        if length < 0 or byte_offset < 0 or byte_offset + length > self._total_bytes:
            raise IndexError(f'byte range [{byte_offset}, {byte_offset + length}) outside of '
                             f'buffer with {self._total_bytes} bytes')

    def region_view(self, index: int, kind: mv.ElementKind | str) -> np.ndarray:
        """
        A typed (native byte order) view of one mapped region. Writes to the
        view go straight to the mapping.
        """
        self._check_open()
        kind = mv.cast_element_kind(kind)
        region = self._regions[index]
        usable = len(region) - len(region) % kind.byte_width
        return region[:usable].view(kind.numpy_dtype)

    # -------------------------------------------------------------------------
    # raw bytes
    # -------------------------------------------------------------------------

    def read_bytes(self, byte_offset: int, length: int) -> bytearray:
        """
        Read a contiguous byte range, crossing region boundaries as needed.
        """
        self._check_range(byte_offset, length)
        out = bytearray(length)
        view = memoryview(out)
        position = byte_offset
        copied = 0
        while copied < length:
            ri = self.region_index(position)
            ro = self.region_offset(position)
            count = min(length - copied, self._region_bytes - ro)
            view[copied:copied + count] = self._regions[ri][ro:ro + count].tobytes()
            copied += count
            position += count
        return out

    def write_bytes(self, byte_offset: int, data: bytes) -> None:
        """
        Write a contiguous byte range, crossing region boundaries as needed.
        """
        data = np.frombuffer(bytes(data), dtype=np.uint8)
        length = len(data)
        self._check_range(byte_offset, length)
        position = byte_offset
        copied = 0
        while copied < length:
            ri = self.region_index(position)
            ro = self.region_offset(position)
            count = min(length - copied, self._region_bytes - ro)
            self._regions[ri][ro:ro + count] = data[copied:copied + count]
            copied += count
            position += count

    # -------------------------------------------------------------------------
    # typed values at absolute byte offsets
    # -------------------------------------------------------------------------

    def get(self, byte_offset: int, kind: mv.ElementKind | str = 'int8') -> int | float:
        """
        Read one value of an element kind at an absolute byte offset.
        """
        kind = mv.cast_element_kind(kind)
        byte_offset = int(byte_offset)
        width = kind.byte_width
        self._check_range(byte_offset, width)
        ri = self.region_index(byte_offset)
        ro = self.region_offset(byte_offset)
        if ro + width <= len(self._regions[ri]):
            raw = self._regions[ri][ro:ro + width].tobytes()
        else:
            raw = bytes(self.read_bytes(byte_offset, width))
        return kind.python_value(np.frombuffer(raw, dtype=kind.numpy_dtype)[0])

    def put(self, byte_offset: int, value, kind: mv.ElementKind | str = 'int8') -> None:
        """
        Write one value of an element kind at an absolute byte offset.
        """
        kind = mv.cast_element_kind(kind)
        byte_offset = int(byte_offset)
        width = kind.byte_width
        self._check_range(byte_offset, width)
        raw = np.asarray(value).astype(kind.numpy_dtype).reshape(1).view(np.uint8)
        ri = self.region_index(byte_offset)
        ro = self.region_offset(byte_offset)
        if ro + width <= len(self._regions[ri]):
            self._regions[ri][ro:ro + width] = raw
        else:
            self.write_bytes(byte_offset, raw.tobytes())

    def get_byte(self, byte_offset: int) -> int:
        return self.get(byte_offset, mv.ElementKind.INT8)

    def put_byte(self, byte_offset: int, value: int) -> None:
        self.put(byte_offset, value, mv.ElementKind.INT8)

    def get_short(self, byte_offset: int) -> int:
        return self.get(byte_offset, mv.ElementKind.INT16)

    def put_short(self, byte_offset: int, value: int) -> None:
        self.put(byte_offset, value, mv.ElementKind.INT16)

    def get_int(self, byte_offset: int) -> int:
        return self.get(byte_offset, mv.ElementKind.INT32)

    def put_int(self, byte_offset: int, value: int) -> None:
        self.put(byte_offset, value, mv.ElementKind.INT32)

    def get_float(self, byte_offset: int) -> float:
        return self.get(byte_offset, mv.ElementKind.FLOAT32)

    def put_float(self, byte_offset: int, value: float) -> None:
        self.put(byte_offset, value, mv.ElementKind.FLOAT32)

    def get_double(self, byte_offset: int) -> float:
        return self.get(byte_offset, mv.ElementKind.FLOAT64)

    def put_double(self, byte_offset: int, value: float) -> None:
        self.put(byte_offset, value, mv.ElementKind.FLOAT64)

    # -------------------------------------------------------------------------
    # element-indexed bulk access
    # -------------------------------------------------------------------------

    def read_elements(self, byte_offset: int, count: int, kind: mv.ElementKind | str) -> np.ndarray:
        """
        Read `count` sequential elements starting at a byte offset.
        """
        kind = mv.cast_element_kind(kind)
        raw = self.read_bytes(byte_offset, count * kind.byte_width)
        return np.frombuffer(raw, dtype=kind.numpy_dtype)

    def write_elements(self, byte_offset: int, values, kind: mv.ElementKind | str) -> None:
        """
        Write sequential elements starting at a byte offset.
        """
        kind = mv.cast_element_kind(kind)
        values = np.ascontiguousarray(np.asarray(values).astype(kind.numpy_dtype).reshape(-1))
        self.write_bytes(byte_offset, values.view(np.uint8))

    def gather(self, indices: np.ndarray, kind: mv.ElementKind | str) -> np.ndarray:
        """
        Read the elements at a set of element indices (byte offset = index * width).
        """
        kind = mv.cast_element_kind(kind)
        indices = np.asarray(indices, dtype=np.int64)
        flat = indices.reshape(-1)
        self._check_elements(flat, kind)
        out = np.empty(flat.shape, dtype=kind.numpy_dtype)
        byte_offsets = flat * kind.byte_width
        regions = self.region_index(byte_offsets)
        offsets = self.region_offset(byte_offsets) // kind.byte_width
        for ri in np.unique(regions).tolist():
            mask = regions == ri
            out[mask] = self.region_view(ri, kind)[offsets[mask]]
        return out.reshape(indices.shape)

    def scatter(self, indices: np.ndarray, values: np.ndarray, kind: mv.ElementKind | str) -> None:
        """
        Write values to a set of element indices (byte offset = index * width).
        """
        kind = mv.cast_element_kind(kind)
        flat = np.asarray(indices, dtype=np.int64).reshape(-1)
        self._check_elements(flat, kind)
        values = np.broadcast_to(np.asarray(values).astype(kind.numpy_dtype), flat.shape).reshape(-1)
        byte_offsets = flat * kind.byte_width
        regions = self.region_index(byte_offsets)
        offsets = self.region_offset(byte_offsets) // kind.byte_width
        for ri in np.unique(regions).tolist():
            mask = regions == ri
            self.region_view(ri, kind)[offsets[mask]] = values[mask]

    def _check_elements(self, indices: np.ndarray, kind: mv.ElementKind) -> None:
        self._check_open()
        capacity = self._total_bytes // kind.byte_width
        if indices.size > 0 and (indices.min() < 0 or indices.max() >= capacity):
            raise IndexError(f'element index outside of buffer holding {capacity} elements')

    def fill(self, value, kind: mv.ElementKind | str) -> None:
        """
        Fill the whole buffer with a repeated element value.
        """
        for ri in range(self.region_count):
            self.region_view(ri, kind)[:] = value

    def read_into(self,
        array: mv.ChunkedArray,
        byte_offset: int = 0,
        count: int | None = None,
        dest_pos: int = 0) -> None:
        """
        Stream sequential elements of the array's kind into a chunked array,
        one destination chunk segment at a time.

        Args:
            array (ChunkedArray): Destination array.
            byte_offset (int, optional): Byte offset of the first element to read.
            count (int, optional): Number of elements. Defaults to the remainder
                of the destination array.
            dest_pos (int, optional): First logical index written in the array.
        """
        kind = array.kind
        if count is None:
            count = array.size - dest_pos
        global_index = dest_pos
        remaining = count
        position = byte_offset
        while remaining > 0:
            co = array.chunk_offset(global_index)
            n = min(remaining, array.chunk_size - co)
            values = self.read_elements(position, n, kind)
            array.copy_from(global_index, kind.to_tensor(values))
            global_index += n
            remaining -= n
            position += n * kind.byte_width

    def flush(self) -> None:
        self._check_open()
        for region in self._regions:
            region.flush()

    def close(self) -> None:
        """
        Release all mappings and delete the backing file. Closing twice is a no-op.
        """
        if self._regions is None:
            return
        for region in self._regions:
            region.flush()
        # the maps are released once the last array referencing them is dropped
        self._regions = None
        if os.path.exists(self._path):
            os.remove(self._path)
