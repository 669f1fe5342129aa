"""
Canonical acquisition planes and their mapping onto volume axes.
"""

from __future__ import annotations

import torch


plane_lookup = {
    'axial': 'A',
    'ax': 'A',
    'transverse': 'A',
    'coronal': 'C',
    'cor': 'C',
    'sagittal': 'S',
    'sag': 'S',
}

plane_names = {
    'A': 'axial',
    'C': 'coronal',
    'S': 'sagittal',
}

# volume axis receiving the (column, row, slice) source axes
plane_axes = {
    'A': (0, 1, 2),
    'C': (0, 2, 1),
    'S': (1, 2, 0),
}


class Plane:
    """
    One of the three canonical acquisition planes (axial, coronal, or sagittal).
    The plane determines which physical axis of the source stack becomes
    volume X, Y, and Z, as well as which direction-cosine components measure
    acquisition tilt.
    """

    def __init__(self, plane: Plane | str) -> None:
        """
        Args:
            plane (Plane | str): Acquisition plane. If string, can be 'axial',
                'coronal' or 'sagittal' (or a common abbreviation).
        """
        if isinstance(plane, Plane):
            self.code = plane.code
        else:
            match = plane_lookup.get(str(plane).lower())
            if match is None:
                raise ValueError(f'unknown plane: {plane}')
            self.code = match

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}('{self.name}')"

    def __eq__(self, value: object) -> bool:
        if isinstance(value, Plane):
            return self.code == value.code
        elif isinstance(value, str):
            return self.code == plane_lookup.get(value.lower())
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.code)

    @property
    def name(self) -> str:
        return plane_names[self.code]

    @property
    def axes(self) -> tuple:
        """
        Volume axis indices that receive the source column, row, and slice axes.
        """
        return plane_axes[self.code]

    @property
    def stacking_axis(self) -> int:
        """
        Volume axis along which source slices are stacked.
        """
        return self.axes[2]

    def grid_size(self, columns: int, rows: int, slices: int) -> tuple:
        """
        Permute a (columns, rows, slices) source extent into a volume size.
        """
        size = [0, 0, 0]
        for axis, extent in zip(self.axes, (columns, rows, slices)):
            size[axis] = int(extent)
        return tuple(size)

    def grid_spacing(self, pixel_spacing: tuple, slice_spacing: float) -> tuple:
        """
        Permute the in-plane pixel spacing (along row, along column) and the
        slice spacing into a volume spacing.
        """
        spacing = [0.0, 0.0, 0.0]
        for axis, step in zip(self.axes, (pixel_spacing[0], pixel_spacing[1], slice_spacing)):
            spacing[axis] = float(step)
        return tuple(spacing)

    def slice_to_volume_matrix(self) -> torch.Tensor:
        """
        Permutation matrix (4, 4) mapping homogeneous (column, row, slice)
        source coordinates to volume voxel coordinates.
        """
        matrix = torch.zeros((4, 4), dtype=torch.float64)
        for source, axis in enumerate(self.axes):
            matrix[axis, source] = 1
        matrix[3, 3] = 1
        return matrix

    # -------------------------------------------------------------------------
    # direction-cosine components used to detect and correct tilt
    # -------------------------------------------------------------------------

    def column_shear_component(self, column: torch.Tensor) -> float:
        """
        Component of the column direction that deviates into the stacking direction.
        """
        index = {'A': 2, 'C': 1, 'S': 0}[self.code]
        return float(column[index])

    def row_shear_component(self, row: torch.Tensor) -> float:
        """
        Component of the row direction that deviates into the stacking direction.
        """
        index = {'A': 2, 'C': 1, 'S': 0}[self.code]
        return float(row[index])

    def rotation_component(self, row: torch.Tensor) -> float:
        """
        Component of the row direction measuring an in-plane rotation.
        """
        if self.code == 'A':
            return float(row[1])
        if self.code == 'C':
            return float(row[2])
        return -float(row[2])

    def column_shear_terms(self, column: torch.Tensor) -> tuple:
        """
        Numerator (deviation) and denominator (primary component) of the
        column shear factor.
        """
        if self.code == 'A':
            return float(column[2]), float(column[1])
        if self.code == 'C':
            return float(column[1]), float(column[2])
        return float(column[0]), float(column[2])

    def row_shear_terms(self, row: torch.Tensor) -> tuple:
        """
        Numerator (deviation) and denominator (primary component) of the
        row shear factor.
        """
        if self.code == 'A':
            return float(row[2]), float(row[0])
        if self.code == 'C':
            return float(row[1]), float(row[0])
        return float(row[0]), float(row[1])


def cast_plane(plane: Plane | str) -> Plane:
    return plane if isinstance(plane, Plane) else Plane(plane)
