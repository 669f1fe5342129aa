"""
Affine transforms and rotations in three dimensions.
"""

from __future__ import annotations

import math
import functools
import torch
import mprvolume as mv


class AffineMatrix:
    """
    Affine matrix (4x4) transform for a 3D coordinate system, stored in
    double precision. Instances are immutable.
    """

    def __init__(self, data: torch.Tensor | AffineMatrix | None = None) -> None:
        """
        Args:
            data (Tensor, optional): A 3x3, 3x4, or 4x4 tensor. Default: if
                None, the matrix is initialized with the identity.
        """

        if data is None:
            data = torch.eye(4, dtype=torch.float64)
        elif isinstance(data, AffineMatrix):
            data = data.tensor

        data = torch.as_tensor(data).to(torch.float64)

        if data.shape == (3, 3):
            col = torch.zeros((3, 1), dtype=data.dtype)
            data = torch.cat((data, col), dim=1)

        if data.shape == (3, 4):
            row = torch.tensor([[0, 0, 0, 1]], dtype=data.dtype)
            data = torch.cat((data, row), dim=0)
        elif data.shape != (4, 4):
            raise ValueError('input matrix must be 3x3, 3x4, or 4x4')

        self._tensor = data.clone()

    @property
    def tensor(self) -> torch.Tensor:
        """
        Tensor data of shape (4, 4).
        """
        return self._tensor

    def __getitem__(self, indexing) -> torch.Tensor:
        return self.tensor[indexing]

    def __repr__(self) -> str:
        name = self.__class__.__name__
        tensor_str = str(self.tensor.numpy())
        tensor_str = tensor_str.replace('\n', f'\n{" " * (len(name) + 1)}')
        return f'{name}({tensor_str})'

    def __matmul__(self, other: AffineMatrix | torch.Tensor) -> AffineMatrix | torch.Tensor:
        isaffine = isinstance(other, AffineMatrix) or \
                    (torch.is_tensor(other) and other.shape == (4, 4))
        if isaffine:
            return AffineMatrix(self.tensor @ AffineMatrix(other).tensor)
        return self.tensor @ other.to(torch.float64)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AffineMatrix):
            return NotImplemented
        return bool(torch.equal(self.tensor, other.tensor))

    __hash__ = None

    @functools.cached_property
    def inverse(self) -> AffineMatrix:
        """
        Inverted matrix.
        """
        return AffineMatrix(torch.linalg.inv(self.tensor))

    def is_identity(self, atol: float = 1e-9) -> bool:
        """
        Whether the matrix is the identity within an absolute tolerance.
        """
        return bool(torch.allclose(self.tensor, torch.eye(4, dtype=torch.float64), atol=atol, rtol=0))

    def transform(self, coords: torch.Tensor) -> torch.Tensor:
        """
        Apply the matrix transformation to a set of 3D coordinates.

        Args:
            coords (Tensor): A tensor of coordinates with shape (..., 3).

        Returns:
            Tensor: Transformed float64 coordinates with the same shape as the input.
        """
        coords = torch.as_tensor(coords)
        if coords.shape[-1] != 3:
            raise ValueError('coordinates must have a last dimension of size 3')

        coords_reshaped = coords.reshape(-1, 3).to(torch.float64)
        transformed = coords_reshaped @ self.tensor[:3, :3].T + self.tensor[:3, 3]
        return transformed.reshape(coords.shape)


def cast_affine(matrix: AffineMatrix | torch.Tensor | None) -> AffineMatrix:
    """
    Cast an optional matrix to an affine, using the identity for None.
    """
    if isinstance(matrix, AffineMatrix):
        return matrix
    return AffineMatrix(matrix)


def translation_matrix(translation: torch.Tensor) -> AffineMatrix:
    """
    Compute a 3D translation matrix from translation vector.

    Args:
        translation (Tensor): Translation vector.

    Returns:
        AffineMatrix: Translation affine matrix.
    """
    translation = torch.as_tensor(translation, dtype=torch.float64)
    if translation.shape != (3,):
        raise ValueError('translation vector must have a shape of (3,)')
    matrix = torch.eye(4, dtype=torch.float64)
    matrix[:3, 3] = translation
    return AffineMatrix(matrix)


def axis_rotation_matrix(axis: int, angle: float) -> AffineMatrix:
    """
    Right-handed rotation about a single coordinate axis.

    Args:
        axis (int): Rotation axis (0, 1 or 2).
        angle (float): Rotation angle in radians.

    Returns:
        AffineMatrix: Rotation affine matrix.
    """
    c, s = math.cos(angle), math.sin(angle)
    matrix = torch.eye(4, dtype=torch.float64)
    if axis == 0:
        matrix[1, 1], matrix[1, 2], matrix[2, 1], matrix[2, 2] = c, -s, s, c
    elif axis == 1:
        matrix[0, 0], matrix[0, 2], matrix[2, 0], matrix[2, 2] = c, s, -s, c
    elif axis == 2:
        matrix[0, 0], matrix[0, 1], matrix[1, 0], matrix[1, 1] = c, -s, s, c
    else:
        raise ValueError(f'rotation axis must be 0, 1 or 2, got {axis}')
    return AffineMatrix(matrix)


def shear_matrix(row: int, col: int, factor: float) -> AffineMatrix:
    """
    Identity matrix with a single off-diagonal shear term, such that
    coordinate `row` is displaced by `factor` times coordinate `col`.
    """
    if row == col:
        raise ValueError('shear term must be off-diagonal')
    matrix = torch.eye(4, dtype=torch.float64)
    matrix[row, col] = factor
    return AffineMatrix(matrix)


# -----------------------------------------------------------------------------
# unit quaternions stored as (w, x, y, z)
# -----------------------------------------------------------------------------


def identity_quaternion() -> torch.Tensor:
    return torch.tensor([1.0, 0.0, 0.0, 0.0], dtype=torch.float64)


def quaternion_multiply(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    """
    Hamilton product `a * b`, which applies rotation `b` first.
    """
    aw, ax, ay, az = a.tolist()
    bw, bx, by, bz = b.tolist()
    return torch.tensor([
        aw * bw - ax * bx - ay * by - az * bz,
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
    ], dtype=torch.float64)


def axis_angle_quaternion(axis: int, angle: float) -> torch.Tensor:
    """
    Unit quaternion of a rotation about a single coordinate axis.
    """
    q = torch.zeros(4, dtype=torch.float64)
    q[0] = math.cos(angle / 2)
    q[1 + axis] = math.sin(angle / 2)
    return q


def euler_xyz_quaternion(angle_x: float, angle_y: float, angle_z: float) -> torch.Tensor:
    """
    Unit quaternion rotating about X, then the rotated Y, then the rotated Z
    axis (intrinsic XYZ order). Angles are in radians.
    """
    q = axis_angle_quaternion(0, angle_x)
    q = quaternion_multiply(q, axis_angle_quaternion(1, angle_y))
    return quaternion_multiply(q, axis_angle_quaternion(2, angle_z))


def quaternion_to_matrix(q: torch.Tensor) -> AffineMatrix:
    """
    Rotation affine matrix of a unit quaternion.
    """
    q = q / q.norm()
    w, x, y, z = q.tolist()
    matrix = torch.eye(4, dtype=torch.float64)
    matrix[:3, :3] = torch.tensor([
        [1 - 2 * (y * y + z * z), 2 * (x * y - w * z), 2 * (x * z + w * y)],
        [2 * (x * y + w * z), 1 - 2 * (x * x + z * z), 2 * (y * z - w * x)],
        [2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x * x + y * y)],
    ], dtype=torch.float64)
    return AffineMatrix(matrix)
