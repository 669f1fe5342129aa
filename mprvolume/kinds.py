"""
Numeric element kinds supported by voxel storage.
"""

from __future__ import annotations

import enum
import numpy as np
import torch


class ElementKind(enum.Enum):
    """
    A primitive numeric element kind, paired with everything the storage
    layers need to know about it: byte width, representable range, the
    numpy dtype used on disk (always big-endian for persisted streams), and
    the torch dtype used in memory.

    Torch cannot do arithmetic on unsigned 16 and 32-bit tensors, so those
    kinds are held in the next wider signed dtype in memory. Their on-disk
    width is unchanged.
    """

    INT8 = ('int8', np.int8, torch.int8)
    UINT8 = ('uint8', np.uint8, torch.uint8)
    INT16 = ('int16', np.int16, torch.int16)
    UINT16 = ('uint16', np.uint16, torch.int32)
    INT32 = ('int32', np.int32, torch.int32)
    UINT32 = ('uint32', np.uint32, torch.int64)
    FLOAT32 = ('float32', np.float32, torch.float32)
    FLOAT64 = ('float64', np.float64, torch.float64)

    def __init__(self, label: str, numpy_dtype: type, torch_dtype: torch.dtype) -> None:
        self.label = label
        self.numpy_dtype = np.dtype(numpy_dtype)
        self.torch_dtype = torch_dtype

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}('{self.label}')"

    @property
    def byte_width(self) -> int:
        """
        Number of bytes occupied by one element on disk.
        """
        return self.numpy_dtype.itemsize

    @property
    def is_float(self) -> bool:
        return self.numpy_dtype.kind == 'f'

    @property
    def is_signed(self) -> bool:
        return self.numpy_dtype.kind in 'if'

    @property
    def lowest(self) -> int | float:
        """
        Smallest representable value (the identity of a max-reduction).
        """
        if self.is_float:
            return float(np.finfo(self.numpy_dtype).min)
        return int(np.iinfo(self.numpy_dtype).min)

    @property
    def highest(self) -> int | float:
        """
        Largest representable value (the identity of a min-reduction).
        """
        if self.is_float:
            return float(np.finfo(self.numpy_dtype).max)
        return int(np.iinfo(self.numpy_dtype).max)

    @property
    def big_endian_dtype(self) -> np.dtype:
        """
        Numpy dtype of the persisted binary stream.
        """
        return self.numpy_dtype.newbyteorder('>')

    def cast(self, values: torch.Tensor) -> torch.Tensor:
        """
        Convert real-valued data to the in-memory storage dtype. Integer kinds
        are rounded to the nearest value and saturated to the representable range.

        Args:
            values (Tensor): Values of any numeric dtype.

        Returns:
            Tensor: Values with dtype `torch_dtype`.
        """
        if self.is_float:
            return values.to(self.torch_dtype)
        if values.is_floating_point():
            values = values.to(torch.float64).round()
        else:
            values = values.to(torch.int64)
        values = values.clamp(self.lowest, self.highest)
        return values.to(self.torch_dtype)

    def to_tensor(self, array) -> torch.Tensor:
        """
        Convert a numpy array (any byte order) of this kind to a storage tensor.
        """
        array = np.asarray(array)
        storage = torch.empty(0, dtype=self.torch_dtype).numpy().dtype
        return torch.from_numpy(array.astype(storage, copy=True))

    def to_numpy(self, tensor: torch.Tensor) -> np.ndarray:
        """
        Convert a storage tensor to a native-order numpy array of this kind.
        """
        return tensor.detach().cpu().numpy().astype(self.numpy_dtype, copy=False)

    def python_value(self, value) -> int | float:
        """
        Convert a scalar (tensor or numpy) to a plain python number.
        """
        if isinstance(value, (torch.Tensor, np.generic)):
            value = value.item()
        return float(value) if self.is_float else int(value)


_dtype_lookup = {}
for _kind in ElementKind:
    _dtype_lookup[_kind.label] = _kind
    _dtype_lookup[_kind.numpy_dtype] = _kind
_dtype_lookup[torch.int8] = ElementKind.INT8
_dtype_lookup[torch.uint8] = ElementKind.UINT8
_dtype_lookup[torch.int16] = ElementKind.INT16
_dtype_lookup[torch.int32] = ElementKind.INT32
_dtype_lookup[torch.float32] = ElementKind.FLOAT32
_dtype_lookup[torch.float64] = ElementKind.FLOAT64


def cast_element_kind(kind: ElementKind | str | np.dtype | torch.dtype) -> ElementKind:
    """
    Resolve an element kind from a kind, a name, or a numpy/torch dtype.

    Args:
        kind: The object to resolve. Note that a torch int32 resolves to
            INT32, never UINT16, since the widened storage is ambiguous.

    Returns:
        ElementKind: The matching kind.
    """
    if isinstance(kind, ElementKind):
        return kind
    if isinstance(kind, torch.dtype):
        match = _dtype_lookup.get(kind)
    else:
        try:
            match = _dtype_lookup.get(np.dtype(kind).newbyteorder('='))
        except TypeError:
            match = None
        if match is None and isinstance(kind, str):
            match = _dtype_lookup.get(kind.lower())
    if match is None:
        raise ValueError(f'unsupported element kind: {kind}')
    return match
