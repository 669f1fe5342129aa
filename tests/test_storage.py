import os
import pytest
import numpy as np
import torch
import mprvolume as mv

from mprvolume.config import CHUNK_BYTE_SIZE


def test_chunk_recombination() -> None:

    # reading through chunk index and offset must match a flat reference array
    reference = torch.randint(-1000, 1000, (1000,), dtype=torch.int16)
    array = mv.ChunkedArray(1000, 'int16', chunk_size=64)
    array.copy_from(0, reference)
    assert array.chunk_count == 16
    for i in range(1000):
        chunk = array.chunk(array.chunk_index(i))
        assert chunk[array.chunk_offset(i)] == reference[i]
        assert array[i] == reference[i].item()

    # vectorized chunk addressing works on index tensors as well
    indices = torch.randint(0, 1000, (200,))
    assert torch.equal(array.gather(indices), reference[indices])


def test_chunk_boundary_copies() -> None:

    # copy a range that spans several chunk boundaries
    array = mv.ChunkedArray(100, 'float32', chunk_size=16)
    values = torch.arange(50, dtype=torch.float32)
    array.copy_from(10, values)
    assert torch.equal(array.read(10, 50), values)
    assert array[9] == 0 and array[60] == 0

    # chunked-to-chunked copies with misaligned chunk sizes on both sides
    other = mv.ChunkedArray(80, 'float32', chunk_size=7)
    array.copy_to(10, other, dest_pos=3, length=50)
    assert torch.equal(other.read(3, 50), values)

    # copy into a plain tensor at an offset
    out = torch.zeros(60)
    array.copy_to(10, out, dest_pos=5, length=50)
    assert torch.equal(out[5:55], values)

    # single chunk arrays take the direct path
    single = mv.ChunkedArray(10, 'uint8')
    assert single.is_single_chunk()
    single.copy_from(2, torch.tensor([1, 2, 3], dtype=torch.uint8))
    assert single.single_chunk().tolist() == [0, 0, 1, 2, 3, 0, 0, 0, 0, 0]


def test_chunk_out_of_range() -> None:

    # any access outside [0, N) fails loudly
    array = mv.ChunkedArray(10, 'int32', chunk_size=4)
    with pytest.raises(IndexError):
        array[10]
    with pytest.raises(IndexError):
        array[-1] = 3
    with pytest.raises(IndexError):
        array.copy_from(8, torch.zeros(3, dtype=torch.int32))
    with pytest.raises(IndexError):
        array.gather(torch.tensor([0, 10]))
    with pytest.raises(ValueError):
        mv.ChunkedArray(-1, 'int32')


def test_chunk_fill_replace_and_scatter() -> None:

    array = mv.ChunkedArray(30, 'int16', chunk_size=8)
    array.fill(-5)
    assert array.minmax() == (-5, -5)

    # scatter across chunks then replace the untouched fill value
    indices = torch.tensor([0, 7, 8, 15, 29])
    array.scatter(indices, torch.tensor([1, 2, 3, 4, 5], dtype=torch.int16))
    assert array.gather(indices).tolist() == [1, 2, 3, 4, 5]
    assert array.replace(-5, 0) == 25
    assert array.minmax() == (0, 5)


def test_unsigned_kinds_use_wider_storage() -> None:

    # uint16 values above the int16 range survive the round trip
    array = mv.ChunkedArray(4, 'uint16')
    array.copy_from(0, mv.ElementKind.UINT16.to_tensor(np.array([0, 1, 40000, 65535], dtype=np.uint16)))
    assert array.read(0, 4).tolist() == [0, 1, 40000, 65535]
    assert mv.ElementKind.UINT16.lowest == 0
    assert mv.ElementKind.UINT16.highest == 65535

    # integer casting rounds and saturates
    kind = mv.ElementKind.UINT8
    assert kind.cast(torch.tensor([-3.0, 1.6, 300.0])).tolist() == [0, 2, 255]


def test_mapped_buffer_regions() -> None:

    # a buffer three regions long exposes exactly three mapped regions, and a value
    # straddling the first region boundary is written and read back intact
    with mv.ChunkedMappedBuffer.create(3 * CHUNK_BYTE_SIZE) as buffer:
        assert buffer.region_count == 3
        offset = CHUNK_BYTE_SIZE - 2
        buffer.put_int(offset, 0x12345678)
        assert buffer.get_int(offset) == 0x12345678
        buffer.put_double(CHUNK_BYTE_SIZE - 4, 3.25)
        assert buffer.get_double(CHUNK_BYTE_SIZE - 4) == 3.25
        path = buffer.path

    # closing deletes the backing file
    assert buffer.closed
    assert not os.path.exists(path)


def test_mapped_buffer_small_regions() -> None:

    # small regions exercise region arithmetic without gigabyte files
    buffer = mv.ChunkedMappedBuffer.create(100, region_bytes=16)
    try:
        assert buffer.region_count == 7

        # typed accessors at offsets that straddle regions
        buffer.put_short(15, -1234)
        assert buffer.get_short(15) == -1234
        buffer.put_float(30, 1.5)
        assert buffer.get_float(30) == 1.5
        buffer.put_byte(99, -7)
        assert buffer.get_byte(99) == -7

        # element-indexed bulk access spans every region
        values = np.arange(25, dtype=np.int32)
        buffer.write_elements(0, values, 'int32')
        assert np.array_equal(buffer.read_elements(0, 25, 'int32'), values)
        assert buffer.gather(np.array([0, 4, 24]), 'int32').tolist() == [0, 4, 24]
        buffer.scatter(np.array([3, 20]), np.array([-1, -2]), 'int32')
        assert buffer.gather(np.array([3, 20]), 'int32').tolist() == [-1, -2]

        # stream into a chunked array whose chunks do not align with the regions
        array = mv.ChunkedArray(25, 'int32', chunk_size=6)
        buffer.read_into(array)
        assert array[3] == -1 and array[20] == -2 and array[24] == 24

        with pytest.raises(IndexError):
            buffer.get_int(98)
    finally:
        buffer.close()

    # closing twice is a no-op, but access after closing is not allowed
    buffer.close()
    with pytest.raises(ValueError):
        buffer.get_byte(0)


def test_allocation_fallback() -> None:

    # a zero in-memory limit is reported as a capacity result, not an exception
    config = mv.VolumeConfig(max_memory_bytes=0, region_bytes=64)
    result = mv.storage.allocate_in_memory(100, 'int16', config)
    assert not result
    assert isinstance(result, mv.OutOfCapacity)
    assert result.requested_bytes == 200

    # the allocation chain falls back to a mapped store with the same interface
    store = mv.storage.allocate(100, 'int16', config)
    try:
        assert store.is_mapped
        store.write(10, torch.arange(50, dtype=torch.int16))
        assert store.read(10, 50).tolist() == list(range(50))
        store.set(0, -3)
        assert store.get(0) == -3
        assert store.replace(0, 7) == 50
        assert store.gather(torch.tensor([10, 11, 59])).tolist() == [7, 1, 49]
    finally:
        store.release()

    # without the fallback the failure is terminal
    with pytest.raises(MemoryError):
        mv.storage.allocate(100, 'int16', config.update(allow_mapped_fallback=False))

    # the default configuration keeps voxels in memory
    store = mv.storage.allocate(100, 'int16')
    assert not store.is_mapped


def test_allocation_failures(monkeypatch, tmp_path) -> None:

    # a failing allocation is retried once after a collection, then reported
    attempts = []
    def exhausted(size, kind, chunk_size):
        attempts.append(size)
        raise MemoryError
    monkeypatch.setattr(mv, 'ChunkedArray', exhausted)
    result = mv.storage.allocate_in_memory(100, 'int16')
    assert isinstance(result, mv.OutOfCapacity)
    assert result.reason == 'memory allocation failed'
    assert len(attempts) == 2

    # torch allocator errors count as capacity failures too
    def allocator(size, kind, chunk_size):
        raise RuntimeError("DefaultCPUAllocator: can't allocate memory: you tried to allocate 200 bytes")
    monkeypatch.setattr(mv, 'ChunkedArray', allocator)
    assert isinstance(mv.storage.allocate_in_memory(100, 'int16'), mv.OutOfCapacity)

    # unrelated runtime errors propagate even when they mention allocation
    def unrelated(size, kind, chunk_size):
        raise RuntimeError('reallocation of a frozen tensor')
    monkeypatch.setattr(mv, 'ChunkedArray', unrelated)
    with pytest.raises(RuntimeError, match='frozen'):
        mv.storage.allocate_in_memory(100, 'int16')

    # a mapped file that cannot be created ends the chain with a memory error
    config = mv.VolumeConfig(max_memory_bytes=0, cache_dir=str(tmp_path / 'missing'))
    with pytest.raises(MemoryError) as info:
        mv.storage.allocate(100, 'int16', config)
    assert isinstance(info.value.__cause__, OSError)


def test_config_validation() -> None:
    with pytest.raises(ValueError):
        mv.VolumeConfig(region_bytes=12)
    with pytest.raises(ValueError):
        mv.VolumeConfig(chunk_size=0)
    assert mv.VolumeConfig(max_workers=3).workers == 3
    assert mv.VolumeConfig(cache_dir='/some/dir').directory == '/some/dir'
