"""
Physical geometry of source slices and the slice source interface.
"""

from __future__ import annotations

import numpy as np
import torch
import mprvolume as mv


class SliceGeometry:
    """
    Position and orientation of one 2D slice in physical (patient) space.

    The row direction points along a row of pixels (increasing column index)
    and the column direction points down a column (increasing row index).
    Both are stored normalized, in double precision.
    """

    def __init__(self,
        row: torch.Tensor,
        column: torch.Tensor,
        position: torch.Tensor,
        pixel_spacing: tuple = (1.0, 1.0)) -> None:
        """
        Args:
            row (Tensor): Row direction cosine of shape (3,).
            column (Tensor): Column direction cosine of shape (3,).
            position (Tensor): Physical position of the top-left-hand corner
                (center of the first pixel) of shape (3,).
            pixel_spacing (tuple, optional): Physical distance between adjacent
                columns (along the row) and adjacent rows (along the column).
                A scalar means square pixels.
        """
        row = torch.as_tensor(row, dtype=torch.float64).reshape(-1)
        column = torch.as_tensor(column, dtype=torch.float64).reshape(-1)
        position = torch.as_tensor(position, dtype=torch.float64).reshape(-1)
        if row.shape != (3,) or column.shape != (3,) or position.shape != (3,):
            raise ValueError('row, column and position must be 3D vectors')
        if row.norm() == 0 or column.norm() == 0:
            raise ValueError('slice direction vectors must be non-zero')

        if np.isscalar(pixel_spacing):
            pixel_spacing = (pixel_spacing, pixel_spacing)
        pixel_spacing = tuple(float(s) for s in pixel_spacing)
        if len(pixel_spacing) != 2 or min(pixel_spacing) <= 0:
            raise ValueError(f'pixel spacing must be two positive values, got {pixel_spacing}')

        self.row = row / row.norm()
        self.column = column / column.norm()
        self.position = position
        self.pixel_spacing = pixel_spacing

    def __repr__(self) -> str:
        return (f'{self.__class__.__name__}(row={self.row.tolist()}, column={self.column.tolist()}, '
                f'position={self.position.tolist()}, pixel_spacing={self.pixel_spacing})')

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SliceGeometry):
            return NotImplemented
        return (torch.equal(self.row, other.row) and
                torch.equal(self.column, other.column) and
                torch.equal(self.position, other.position) and
                self.pixel_spacing == other.pixel_spacing)

    __hash__ = None

    @property
    def normal(self) -> torch.Tensor:
        """
        Slice normal, the cross product of the row and column directions.
        """
        return torch.linalg.cross(self.row, self.column)

    def distance(self, other: SliceGeometry) -> float:
        """
        Euclidean distance between the corner positions of two slices.
        """
        return float((self.position - other.position).norm())

    def is_valid(self) -> bool:
        """
        Whether the corner position is finite.
        """
        return bool(torch.isfinite(self.position).all())


class SliceSource:
    """
    A decoded 2D source slice with known geometry. Subclasses provide the
    pixel data through `read()`, which may be called from worker threads.

    Attributes:
        uid: Stable identity of the slice, used in cache keys.
        photometric_inverse: Whether low values display bright, in which case
            empty regions are filled with the maximum instead of the minimum.
    """
    uid = None
    photometric_inverse = False

    @property
    def geometry(self) -> SliceGeometry:
        raise NotImplementedError

    @property
    def rows(self) -> int:
        raise NotImplementedError

    @property
    def columns(self) -> int:
        raise NotImplementedError

    @property
    def channels(self) -> int:
        raise NotImplementedError

    @property
    def kind(self) -> mv.ElementKind:
        raise NotImplementedError

    def read(self) -> np.ndarray | torch.Tensor:
        """
        Decode the pixels as an array of shape (rows, columns) or
        (rows, columns, channels).
        """
        raise NotImplementedError


class ArraySlice(SliceSource):
    """
    Slice source over an in-memory numpy array or torch tensor.
    """

    def __init__(self,
        pixels: np.ndarray | torch.Tensor,
        geometry: SliceGeometry,
        uid: str | None = None,
        photometric_inverse: bool = False) -> None:
        """
        Args:
            pixels (ndarray | Tensor): Pixel data of shape (H, W) or (H, W, C).
            geometry (SliceGeometry): Physical geometry of the slice.
            uid (str, optional): Slice identity. Defaults to the object id.
            photometric_inverse (bool, optional): Whether the slice is
                displayed with inverted intensities.
        """
        if pixels.ndim not in (2, 3):
            raise ValueError(f'expected 2D or 3D slice pixels, got a {pixels.ndim}D input')
        self._pixels = pixels
        self._geometry = geometry
        self.uid = uid if uid is not None else f'slice-{id(self)}'
        self.photometric_inverse = photometric_inverse

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(uid={self.uid!r}, shape={tuple(self._pixels.shape)})'

    @property
    def geometry(self) -> SliceGeometry:
        return self._geometry

    @property
    def rows(self) -> int:
        return int(self._pixels.shape[0])

    @property
    def columns(self) -> int:
        return int(self._pixels.shape[1])

    @property
    def channels(self) -> int:
        return 1 if self._pixels.ndim == 2 else int(self._pixels.shape[2])

    @property
    def kind(self) -> mv.ElementKind:
        return mv.cast_element_kind(self._pixels.dtype)

    def read(self) -> np.ndarray | torch.Tensor:
        return self._pixels


def pixels_to_tensor(pixels: np.ndarray | torch.Tensor, kind: mv.ElementKind) -> torch.Tensor:
    """
    Convert decoded slice pixels to a storage tensor of an element kind,
    always with a trailing channel dimension (H, W, C).
    """
    if isinstance(pixels, torch.Tensor):
        tensor = kind.cast(pixels.detach().cpu())
    else:
        tensor = kind.to_tensor(pixels)
    if tensor.ndim == 2:
        tensor = tensor.unsqueeze(-1)
    return tensor
