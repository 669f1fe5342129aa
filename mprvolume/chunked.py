"""
Long-indexable primitive buffers split into fixed-size chunks.
"""

from __future__ import annotations

import torch
import mprvolume as mv

from .config import CHUNK_SIZE


class ChunkedArray:
    """
    A flat array of `size` elements of one element kind, addressed by a
    64-bit logical index but stored as a list of 1D tensors holding at most
    `chunk_size` elements each. Bulk copies move the chunk-aligned portion of
    a range in each step, so they span chunk boundaries transparently.

    Any access outside `[0, size)` raises an IndexError.
    """

    def __init__(self,
        size: int,
        kind: mv.ElementKind | str,
        chunk_size: int = CHUNK_SIZE) -> None:
        """
        Args:
            size (int): Total number of elements.
            kind (ElementKind): Element kind of the array.
            chunk_size (int, optional): Maximum number of elements per chunk.
        """
        if size < 0:
            raise ValueError(f'negative total elements: {size}')
        if chunk_size <= 0:
            raise ValueError(f'chunk size must be positive, got {chunk_size}')
        self._size = int(size)
        self._kind = mv.cast_element_kind(kind)
        self._chunk_size = int(chunk_size)

        count = (self._size + self._chunk_size - 1) // self._chunk_size
        self._chunks = []
        for i in range(count):
            length = min(self._size - i * self._chunk_size, self._chunk_size)
            self._chunks.append(torch.zeros(length, dtype=self._kind.torch_dtype))

    def __len__(self) -> int:
        return self._size

    def __repr__(self) -> str:
        return (f'{self.__class__.__name__}(size={self._size}, kind={self._kind.label}, '
                f'chunks={self.chunk_count})')

    @property
    def size(self) -> int:
        return self._size

    @property
    def kind(self) -> mv.ElementKind:
        return self._kind

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    @property
    def nbytes(self) -> int:
        """
        In-memory byte footprint of all chunks.
        """
        return sum(chunk.numel() * chunk.element_size() for chunk in self._chunks)

    def is_single_chunk(self) -> bool:
        """
        Whether all elements live in one chunk, which allows direct indexing.
        """
        return len(self._chunks) == 1

    def single_chunk(self) -> torch.Tensor:
        """
        The first (and only) chunk. Only valid when `is_single_chunk()` is True.
        """
        if not self.is_single_chunk():
            raise RuntimeError(f'array is split into {self.chunk_count} chunks')
        return self._chunks[0]

    def chunk(self, index: int) -> torch.Tensor:
        return self._chunks[index]

    def chunk_index(self, index):
        """
        Chunk holding a logical index. Works on ints and index tensors.
        """
        return index // self._chunk_size

    def chunk_offset(self, index):
        """
        Position of a logical index inside its chunk. Works on ints and index tensors.
        """
        return index % self._chunk_size

    def _check_range(self, start: int, length: int) -> None:
        if length < 0 or start < 0 or start + length > self._size:
            raise IndexError(f'range [{start}, {start + length}) outside of array '
                             f'with {self._size} elements')

    def _check_indices(self, indices: torch.Tensor) -> None:
        if indices.numel() > 0 and (indices.min() < 0 or indices.max() >= self._size):
            raise IndexError(f'index outside of array with {self._size} elements')

    # -------------------------------------------------------------------------
    # element access
    # -------------------------------------------------------------------------

    def __getitem__(self, index: int):
        index = int(index)
        self._check_range(index, 1)
        return self._chunks[self.chunk_index(index)][self.chunk_offset(index)].item()

    def __setitem__(self, index: int, value) -> None:
        index = int(index)
        self._check_range(index, 1)
        self._chunks[self.chunk_index(index)][self.chunk_offset(index)] = value

    def fill(self, value) -> None:
        """
        Fill every element with a single value.
        """
        for chunk in self._chunks:
            chunk.fill_(value)

    def replace(self, old, new) -> int:
        """
        Replace every element equal to `old` with `new`.

        Returns:
            int: Number of replaced elements.
        """
        replaced = 0
        for chunk in self._chunks:
            mask = chunk == old
            count = int(mask.sum())
            if count:
                chunk[mask] = new
                replaced += count
        return replaced

    def gather(self, indices: torch.Tensor) -> torch.Tensor:
        """
        Read the elements at a set of logical indices.

        Args:
            indices (Tensor): Integer indices of any shape.

        Returns:
            Tensor: Elements with the same shape as `indices`.
        """
        indices = torch.as_tensor(indices, dtype=torch.int64)
        self._check_indices(indices)
        if self.is_single_chunk():
            return self._chunks[0][indices]

        flat = indices.reshape(-1)
        out = torch.empty(flat.shape, dtype=self._kind.torch_dtype)
        chunk_ids = self.chunk_index(flat)
        offsets = self.chunk_offset(flat)
        for ci in chunk_ids.unique().tolist():
            mask = chunk_ids == ci
            out[mask] = self._chunks[ci][offsets[mask]]
        return out.reshape(indices.shape)

    def scatter(self, indices: torch.Tensor, values: torch.Tensor) -> None:
        """
        Write values to a set of logical indices. When an index repeats, one
        of the written values is kept.

        Args:
            indices (Tensor): Integer indices of shape (N,).
            values (Tensor): Values of shape (N,) or a scalar.
        """
        indices = torch.as_tensor(indices, dtype=torch.int64).reshape(-1)
        self._check_indices(indices)
        values = torch.as_tensor(values).to(self._kind.torch_dtype)
        if values.ndim == 0:
            values = values.expand(indices.shape)
        values = values.reshape(-1)
        if self.is_single_chunk():
            self._chunks[0][indices] = values
            return

        chunk_ids = self.chunk_index(indices)
        offsets = self.chunk_offset(indices)
        for ci in chunk_ids.unique().tolist():
            mask = chunk_ids == ci
            self._chunks[ci][offsets[mask]] = values[mask]

    # -------------------------------------------------------------------------
    # bulk copies across chunk boundaries
    # -------------------------------------------------------------------------

    def copy_from(self,
        dest_pos: int,
        src: torch.Tensor | ChunkedArray,
        src_pos: int = 0,
        length: int | None = None) -> None:
        """
        Copy elements from a flat tensor or another chunked array into this array.

        Args:
            dest_pos (int): Starting logical index in this array.
            src (Tensor | ChunkedArray): Source elements.
            src_pos (int, optional): Starting index in the source.
            length (int, optional): Number of elements to copy. Defaults to the
                remainder of the source.
        """
        if isinstance(src, ChunkedArray):
            if length is None:
                length = src.size - src_pos
            src.copy_to(src_pos, self, dest_pos, length)
            return

        src = torch.as_tensor(src).reshape(-1)
        if length is None:
            length = src.numel() - src_pos
        if src_pos < 0 or src_pos + length > src.numel():
            raise IndexError(f'source range [{src_pos}, {src_pos + length}) outside of '
                             f'tensor with {src.numel()} elements')
        self._check_range(dest_pos, length)

        if self.is_single_chunk():
            self._chunks[0][dest_pos:dest_pos + length] = src[src_pos:src_pos + length]
            return

        remaining = length
        global_index = dest_pos
        src_index = src_pos
        while remaining > 0:
            ci = self.chunk_index(global_index)
            co = self.chunk_offset(global_index)
            count = min(remaining, self._chunk_size - co)
            self._chunks[ci][co:co + count] = src[src_index:src_index + count]
            remaining -= count
            global_index += count
            src_index += count

    def copy_to(self,
        src_pos: int,
        dest: torch.Tensor | ChunkedArray,
        dest_pos: int = 0,
        length: int | None = None) -> None:
        """
        Copy a contiguous range of this array into a flat tensor or another
        chunked array, respecting the chunk boundaries of both sides.

        Args:
            src_pos (int): Starting logical index in this array.
            dest (Tensor | ChunkedArray): Destination. A tensor is written in place.
            dest_pos (int, optional): Starting index in the destination.
            length (int, optional): Number of elements to copy. Defaults to the
                remainder of this array.
        """
        if length is None:
            length = self._size - src_pos
        self._check_range(src_pos, length)

        if isinstance(dest, ChunkedArray):
            dest._check_range(dest_pos, length)
            remaining = length
            si = src_pos
            di = dest_pos
            while remaining > 0:
                sci, sco = self.chunk_index(si), self.chunk_offset(si)
                dci, dco = dest.chunk_index(di), dest.chunk_offset(di)
                count = min(remaining, self._chunk_size - sco, dest.chunk_size - dco)
                dest._chunks[dci][dco:dco + count] = self._chunks[sci][sco:sco + count]
                remaining -= count
                si += count
                di += count
            return

        if dest.ndim != 1:
            raise ValueError('destination tensor must be flat')
        if dest_pos < 0 or dest_pos + length > dest.numel():
            raise IndexError(f'destination range [{dest_pos}, {dest_pos + length}) outside of '
                             f'tensor with {dest.numel()} elements')
        remaining = length
        global_index = src_pos
        dest_index = dest_pos
        while remaining > 0:
            ci = self.chunk_index(global_index)
            co = self.chunk_offset(global_index)
            count = min(remaining, self._chunk_size - co)
            dest[dest_index:dest_index + count] = self._chunks[ci][co:co + count]
            remaining -= count
            global_index += count
            dest_index += count

    def read(self, start: int, length: int) -> torch.Tensor:
        """
        Return a new flat tensor holding a contiguous range of elements.
        """
        out = torch.empty(length, dtype=self._kind.torch_dtype)
        self.copy_to(start, out, 0, length)
        return out

    def minmax(self) -> tuple:
        """
        Smallest and largest element, or None for an empty array.
        """
        if self._size == 0:
            return None
        lows = torch.stack([chunk.min() for chunk in self._chunks])
        highs = torch.stack([chunk.max() for chunk in self._chunks])
        return lows.min().item(), highs.max().item()
