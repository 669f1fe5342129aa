"""
Voxel grid bounds of a slice stack and the rectification of acquisition tilt.
"""

from __future__ import annotations

import math
import logging
import torch
import mprvolume as mv


logger = logging.getLogger(__name__)

# a direction component is considered aligned when within this distance of 0 or 1
EPSILON = 1e-2

# shear factor limits
MIN_DENOMINATOR = 1e-6
MAX_SHEAR = 5.0
MIN_SHEAR = 1e-4


def needs_rectification(value: float) -> bool:
    """
    Whether a direction component deviates from both 0 and 1 (in magnitude)
    by more than `EPSILON`.
    """
    value = abs(value)
    return min(value, abs(value - 1)) > EPSILON


def safe_shear_factor(numerator: float, denominator: float) -> float:
    """
    Compute a shear factor from a deviation component and a primary axis
    component, with handling of degenerate geometry.

    Args:
        numerator (float): Component deviating into the stacking direction.
        denominator (float): Primary component of the same direction vector.

    Returns:
        float: Factor clamped to [-5, 5], or zero when the denominator is
        degenerate, the result is not finite, or the shear is negligible.
    """
    if abs(denominator) < MIN_DENOMINATOR:
        logger.warning('degenerate geometry: primary component %g is near zero, shear ignored', denominator)
        return 0.0

    shear = numerator / denominator
    if not math.isfinite(shear):
        logger.warning('invalid shear factor %s ignored', shear)
        return 0.0

    if abs(shear) > MAX_SHEAR:
        clamped = math.copysign(MAX_SHEAR, shear)
        logger.warning('shear factor %g exceeds the maximum, clamped to %g', shear, clamped)
        return clamped

    if abs(shear) < MIN_SHEAR:
        return 0.0

    return shear


class VolumeBounds:
    """
    Voxel grid derived from the geometry of a slice stack: its size and
    spacing in volume axis order, the stack origin and directions, and the
    direction components measuring acquisition tilt.
    """

    def __init__(self,
        plane: mv.Plane | str,
        size: tuple,
        spacing: tuple,
        origin: torch.Tensor,
        row: torch.Tensor,
        column: torch.Tensor,
        normal: torch.Tensor,
        column_shear: float = 0.0,
        row_shear: float = 0.0,
        plan_rotation: float = 0.0,
        stacking_direction: int = 1) -> None:
        """
        Args:
            plane (Plane): Acquisition plane of the stack.
            size (tuple): Grid size (sx, sy, sz).
            spacing (tuple): Physical spacing per voxel step along each axis.
            origin (Tensor): Corner position of the first slice.
            row, column, normal (Tensor): Stack directions. The row and column
                directions are normalized to their positive dominant axis.
            column_shear (float): Column component in the stacking direction.
            row_shear (float): Row component in the stacking direction.
            plan_rotation (float): Row component measuring in-plane rotation.
            stacking_direction (int): 1 when the slices advance along the positive
                physical stacking axis, -1 when they advance along the negative one.
        """
        self.plane = mv.cast_plane(plane)
        self.size = tuple(int(s) for s in size)
        self.spacing = tuple(float(s) for s in spacing)
        self.origin = torch.as_tensor(origin, dtype=torch.float64)
        self.row = torch.as_tensor(row, dtype=torch.float64)
        self.column = torch.as_tensor(column, dtype=torch.float64)
        self.normal = torch.as_tensor(normal, dtype=torch.float64)
        self.column_shear = float(column_shear)
        self.row_shear = float(row_shear)
        self.plan_rotation = float(plan_rotation)
        self.stacking_direction = -1 if stacking_direction < 0 else 1

    def __repr__(self) -> str:
        return (f'{self.__class__.__name__}(plane={self.plane.name}, size={self.size}, '
                f'spacing={self.spacing})')

    def column_needs_rectification(self) -> bool:
        return needs_rectification(self.column_shear)

    def row_needs_rectification(self) -> bool:
        return needs_rectification(self.row_shear)

    def plan_needs_rectification(self) -> bool:
        return needs_rectification(self.plan_rotation)

    def needs_rectification(self) -> bool:
        """
        Whether any tilt or rotation component is significant.
        """
        return (self.column_needs_rectification() or
                self.row_needs_rectification() or
                self.plan_needs_rectification())

    def corner_points(self) -> torch.Tensor:
        """
        The eight corners of the grid, at 0 and `size` along each axis.

        Returns:
            Tensor: Corner point tensor of shape (8, 3).
        """
        signs = torch.tensor([
            [0, 0, 0],
            [1, 0, 0],
            [1, 0, 1],
            [0, 0, 1],
            [1, 1, 0],
            [1, 1, 1],
            [0, 1, 1],
            [0, 1, 0]],
            dtype=torch.float64)
        return signs * torch.tensor(self.size, dtype=torch.float64)


def rectification_matrix(
    bounds: VolumeBounds,
    column: torch.Tensor,
    row: torch.Tensor) -> mv.AffineMatrix | None:
    """
    Compose the tilt correction of a stack: an in-plane rotation, then the
    column shear, then the row shear. Each shear term is scaled by the ratio
    of the physical spacings of the two axes it couples, and mirrored for a
    stack that advances along the negative stacking axis, since the grid
    always stacks slices towards increasing coordinates.

    Args:
        bounds (VolumeBounds): Bounds of the stack.
        column (Tensor): Raw column direction of the first slice.
        row (Tensor): Raw row direction of the first slice.

    Returns:
        AffineMatrix or None: The correction, or None when no component
        is significant.
    """
    plane = bounds.plane
    sx, sy, sz = bounds.spacing
    matrix = mv.AffineMatrix()
    modified = False

    if bounds.plan_needs_rectification():
        angle = math.pi / 2 - math.acos(max(-1.0, min(1.0, bounds.plan_rotation)))
        matrix = matrix @ mv.affine.axis_rotation_matrix(plane.stacking_axis, angle)
        modified = True

    if bounds.column_needs_rectification():
        shear = bounds.stacking_direction * safe_shear_factor(*plane.column_shear_terms(column))
        if shear != 0.0:
            if plane == 'axial':
                term = (2, 1, shear * sy / sz)
            elif plane == 'coronal':
                term = (1, 2, shear * sz / sy)
            else:
                term = (0, 2, shear * sz / sx)
            matrix = matrix @ mv.affine.shear_matrix(*term)
            modified = True

    if bounds.row_needs_rectification():
        shear = bounds.stacking_direction * safe_shear_factor(*plane.row_shear_terms(row))
        if shear != 0.0:
            if plane == 'axial':
                term = (2, 0, shear * sx / sz)
            elif plane == 'coronal':
                term = (1, 0, shear * sx / sy)
            else:
                term = (0, 1, shear * sy / sx)
            matrix = matrix @ mv.affine.shear_matrix(*term)
            modified = True

    return matrix if modified else None


def transformed_bounds(bounds: VolumeBounds, matrix: mv.AffineMatrix) -> tuple:
    """
    Fit a grid around the transformed corners of the bounds.

    Args:
        bounds (VolumeBounds): Source grid bounds.
        matrix (AffineMatrix): Grid transform.

    Returns:
        tuple: The transform followed by the translation that moves any
        negative minimum to zero, and the new grid size.
    """
    corners = matrix.transform(bounds.corner_points())
    lower = corners.amin(dim=0).floor()
    upper = corners.amax(dim=0).ceil()

    shift = (-lower).clamp(min=0)
    size = tuple(int(s) for s in (upper + shift).clamp(min=1))

    shifted = mv.affine.translation_matrix(shift) @ matrix
    return shifted, size
