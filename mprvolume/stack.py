"""
Geometry analysis of an ordered stack of source slices.
"""

from __future__ import annotations

import math
import functools
import logging
import torch
import mprvolume as mv

from .bounds import EPSILON, needs_rectification


logger = logging.getLogger(__name__)


def dominant_axis_sign(vector: torch.Tensor) -> int:
    """
    Sign (1 or -1) of the largest-magnitude component of a vector. Ties go
    to the lower axis.
    """
    axis = int(vector.abs().argmax())
    return -1 if vector[axis] < 0 else 1


class OriginalStack:
    """
    An ordered stack of source slices acquired in one plane. The first slice
    of the sequence defines the origin and directions of the volume, and the
    remaining slices are placed by their physical distance from it.

    All slices must share the same pixel grid and channel count.
    """

    def __init__(self, slices: list, plane: mv.Plane | str) -> None:
        """
        Args:
            slices (list of SliceSource): Slices in stacking order.
            plane (Plane | str): Acquisition plane of the stack.
        """

        slices = list(slices)
        if not slices:
            raise ValueError('a stack requires at least one slice')

        self.slices = slices
        self.plane = mv.cast_plane(plane)

        first = slices[0]
        for i, source in enumerate(slices[1:], start=1):
            if source.rows != first.rows or source.columns != first.columns:
                raise ValueError(f'slice {i} has a {source.rows}x{source.columns} pixel grid, '
                                 f'expected {first.rows}x{first.columns}')
            if source.channels != first.channels:
                raise ValueError(f'slice {i} has {source.channels} channels, expected {first.channels}')

    def __repr__(self) -> str:
        return (f'{self.__class__.__name__}(plane={self.plane.name}, slices={len(self)}, '
                f'grid={self.columns}x{self.rows})')

    def __len__(self) -> int:
        return len(self.slices)

    def __getitem__(self, index: int) -> mv.SliceSource:
        return self.slices[index]

    # -------------------------------------------------------------------------
    # slice accessors and properties read from the slices
    # -------------------------------------------------------------------------

    @property
    def first(self) -> mv.SliceSource:
        return self.slices[0]

    @property
    def middle(self) -> mv.SliceSource:
        return self.slices[len(self.slices) // 2]

    @property
    def last(self) -> mv.SliceSource:
        return self.slices[-1]

    @property
    def first_geometry(self) -> mv.SliceGeometry:
        return self.first.geometry

    @property
    def rows(self) -> int:
        return self.first.rows

    @property
    def columns(self) -> int:
        return self.first.columns

    @functools.cached_property
    def kind(self) -> mv.ElementKind:
        """
        Element kind of the stack, read from the middle slice.
        """
        return mv.cast_element_kind(self.middle.kind)

    @functools.cached_property
    def channels(self) -> int:
        """
        Channel count of the stack, read from the middle slice.
        """
        return self.middle.channels

    @property
    def photometric_inverse(self) -> bool:
        return bool(self.middle.photometric_inverse)

    @property
    def cache_key(self) -> tuple:
        """
        Identity of the volume built from this stack: the slice identities and
        the plane name. Callers own any volume cache keyed on it.
        """
        return tuple(source.uid for source in self.slices), self.plane.name

    # -------------------------------------------------------------------------
    # shear and flip measurements of the first slice
    # -------------------------------------------------------------------------

    @property
    def column_shear(self) -> float:
        return self.plane.column_shear_component(self.first_geometry.column)

    @property
    def row_shear(self) -> float:
        return self.plane.row_shear_component(self.first_geometry.row)

    @property
    def plan_rotation(self) -> float:
        return self.plane.rotation_component(self.first_geometry.row)

    @functools.cached_property
    def stacking_direction(self) -> int:
        """
        Whether the slices advance along the positive (1) or negative (-1)
        physical stacking axis of the plane. Slice offsets always grow in
        stack order, so a descending stack has its stacking axis mirrored.
        """
        first = self.first_geometry.position
        last = self.last.geometry.position
        step = float(last[self.plane.stacking_axis] - first[self.plane.stacking_axis])
        return -1 if step < 0 else 1

    @property
    def needs_row_flip(self) -> bool:
        """
        Whether the row direction points along its negative dominant axis,
        in which case the pixel columns are reversed before placement.
        """
        return dominant_axis_sign(self.first_geometry.row) < 0

    @property
    def needs_column_flip(self) -> bool:
        """
        Whether the column direction points along its negative dominant axis,
        in which case the pixel rows are reversed before placement.
        """
        return dominant_axis_sign(self.first_geometry.column) < 0

    # -------------------------------------------------------------------------
    # slice spacing
    # -------------------------------------------------------------------------

    @functools.cached_property
    def spacing_correction(self) -> float:
        """
        Factor compensating the apparent shortening of the spacing between
        tilted slices, `1 / cos(atan(sqrt(c^2 + r^2)))` for column and row
        shear components c and r, or 1 when neither is significant.
        """
        column_shear = self.column_shear
        row_shear = self.row_shear
        if not needs_rectification(column_shear) and not needs_rectification(row_shear):
            return 1.0
        combined = math.sqrt(column_shear ** 2 + row_shear ** 2)
        return 1.0 / math.cos(math.atan(combined))

    @functools.cached_property
    def _spacing_analysis(self) -> tuple:
        correction = self.spacing_correction
        first = self.first_geometry

        if len(self.slices) < 2 or not first.is_valid():
            return 0.0, False, False

        # parallel slices have normals with a dot product of magnitude one
        normal = first.normal
        non_parallel = any(abs(abs(float(normal.dot(source.geometry.normal))) - 1) > EPSILON
                           for source in self.slices[1:])

        total = 0.0
        count = 0
        variable = False
        last_space = None
        last = first
        for i, source in enumerate(self.slices[1:], start=1):
            geometry = source.geometry
            if not geometry.is_valid():
                logger.warning('slice %d has an invalid position and is skipped in the spacing', i)
                continue
            space = geometry.distance(last) * correction
            if last_space is not None and abs(last_space - space) > EPSILON:
                variable = True
            total += space
            count += 1
            last_space = space
            last = geometry

        mean = total / count if count else 0.0
        return mean, variable, non_parallel

    @property
    def slice_space(self) -> float:
        """
        Mean physical distance between consecutive slices, corrected for tilt.
        Zero for a single slice.
        """
        return self._spacing_analysis[0]

    @property
    def variable_spacing(self) -> bool:
        """
        Whether consecutive slice spacings differ by more than `EPSILON`.
        """
        return self._spacing_analysis[1]

    @property
    def non_parallel(self) -> bool:
        """
        Whether any slice normal deviates from the first slice normal.
        """
        return self._spacing_analysis[2]

    def slice_offset(self, index: int) -> float:
        """
        Position of a slice along the stacking axis, in voxels from the first
        slice. Offsets within 1e-6 of an integer are snapped to it.
        """
        space = self.effective_slice_space
        geometry = self.slices[index].geometry
        if index == 0 or not geometry.is_valid():
            return float(index)
        offset = geometry.distance(self.first_geometry) * self.spacing_correction / space
        nearest = round(offset)
        return float(nearest) if abs(offset - nearest) < 1e-6 else offset

    @property
    def effective_slice_space(self) -> float:
        """
        Slice spacing used for the grid. A stack without a measurable spacing
        uses the pixel spacing along the row.
        """
        space = self.slice_space
        return space if space > 0 else self.first_geometry.pixel_spacing[0]

    # -------------------------------------------------------------------------
    # bounds
    # -------------------------------------------------------------------------

    def compute_volume_bounds(self) -> mv.VolumeBounds:
        """
        Compute the voxel grid of the stack before any rectification.

        Returns:
            VolumeBounds: Grid size, spacing, directions and tilt components.
        """
        first = self.first_geometry

        row = first.row * dominant_axis_sign(first.row)
        column = first.column * dominant_axis_sign(first.column)

        size = self.plane.grid_size(self.columns, self.rows, len(self.slices))
        spacing = self.plane.grid_spacing(first.pixel_spacing, self.effective_slice_space)

        return mv.VolumeBounds(
            plane=self.plane,
            size=size,
            spacing=spacing,
            origin=first.position,
            row=row,
            column=column,
            normal=first.normal,
            column_shear=self.column_shear,
            row_shear=self.row_shear,
            plan_rotation=self.plan_rotation,
            stacking_direction=self.stacking_direction)
