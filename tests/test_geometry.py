import math
import pytest
import numpy as np
import torch
import mprvolume as mv

from . import utility


def test_rectification_threshold() -> None:

    # components aligned with 0 or 1 (either sign) need no rectification
    assert not mv.bounds.needs_rectification(0.0)
    assert not mv.bounds.needs_rectification(1.0)
    assert not mv.bounds.needs_rectification(-1.0)
    assert not mv.bounds.needs_rectification(0.005)
    assert not mv.bounds.needs_rectification(0.995)
    assert mv.bounds.needs_rectification(0.5)
    assert mv.bounds.needs_rectification(-0.02)


def test_safe_shear_factor() -> None:

    # clamped to the maximum magnitude
    assert mv.bounds.safe_shear_factor(100, 1) == 5
    assert mv.bounds.safe_shear_factor(-100, 1) == -5

    # negligible shear is ignored
    assert mv.bounds.safe_shear_factor(1e-6, 1) == 0

    # degenerate denominators are ignored
    assert mv.bounds.safe_shear_factor(1, 1e-8) == 0
    assert mv.bounds.safe_shear_factor(math.nan, 1) == 0

    assert mv.bounds.safe_shear_factor(0.5, 2) == 0.25


def test_plane_lookup() -> None:

    assert mv.Plane('axial') == 'ax'
    assert mv.Plane('Transverse').name == 'axial'
    assert mv.Plane('cor') == mv.Plane('coronal')
    assert mv.cast_plane('sag').name == 'sagittal'
    with pytest.raises(ValueError):
        mv.Plane('oblique')

    # source (column, row, slice) axes land on these volume axes
    assert mv.Plane('axial').axes == (0, 1, 2)
    assert mv.Plane('coronal').axes == (0, 2, 1)
    assert mv.Plane('sagittal').axes == (1, 2, 0)
    assert mv.Plane('coronal').grid_size(5, 6, 7) == (5, 7, 6)
    assert mv.Plane('sagittal').grid_spacing((0.5, 0.7), 2.0) == (2.0, 0.5, 0.7)

    # the permutation matrix agrees with the axis mapping
    matrix = mv.Plane('sagittal').slice_to_volume_matrix()
    point = torch.tensor([1.0, 2.0, 3.0, 1.0], dtype=torch.float64)
    assert (matrix @ point)[:3].tolist() == [3.0, 1.0, 2.0]


def test_slice_geometry() -> None:

    # directions are normalized and the normal is their cross product
    geometry = mv.SliceGeometry((2, 0, 0), (0, 3, 0), (1, 2, 3), 0.5)
    assert geometry.row.tolist() == [1, 0, 0]
    assert geometry.column.tolist() == [0, 1, 0]
    assert geometry.normal.tolist() == [0, 0, 1]
    assert geometry.pixel_spacing == (0.5, 0.5)
    assert geometry.is_valid()

    other = mv.SliceGeometry((1, 0, 0), (0, 1, 0), (1, 2, 5))
    assert geometry.distance(other) == 2.0
    assert geometry != other

    invalid = mv.SliceGeometry((1, 0, 0), (0, 1, 0), (math.nan, 0, 0))
    assert not invalid.is_valid()

    with pytest.raises(ValueError):
        mv.SliceGeometry((0, 0, 0), (0, 1, 0), (0, 0, 0))
    with pytest.raises(ValueError):
        mv.SliceGeometry((1, 0, 0), (0, 1, 0), (0, 0, 0), (1.0, -1.0))


def test_array_slice() -> None:

    # numpy and torch pixels both convert to (H, W, C) storage tensors
    pixels = np.arange(12, dtype=np.uint16).reshape(3, 4) * 5000
    geometry = mv.SliceGeometry((1, 0, 0), (0, 1, 0), (0, 0, 0))
    source = mv.ArraySlice(pixels, geometry)
    assert source.rows == 3 and source.columns == 4 and source.channels == 1
    assert source.kind == mv.ElementKind.UINT16
    assert source.uid is not None

    tensor = mv.geometry.pixels_to_tensor(source.read(), source.kind)
    assert tensor.shape == (3, 4, 1)
    assert tensor[2, 3, 0] == 55000

    rgb = mv.ArraySlice(torch.zeros((3, 4, 3), dtype=torch.uint8), geometry)
    assert rgb.channels == 3
    assert mv.geometry.pixels_to_tensor(rgb.read(), rgb.kind).shape == (3, 4, 3)

    with pytest.raises(ValueError):
        mv.ArraySlice(np.zeros(5), geometry)


def test_stack_spacing() -> None:

    # regularly spaced slices
    stack = utility.make_stack([torch.zeros((4, 5), dtype=torch.int16)] * 4, slice_spacing=2.5)
    assert len(stack) == 4
    assert stack.rows == 4 and stack.columns == 5
    assert stack.kind == mv.ElementKind.INT16
    assert stack.channels == 1
    assert math.isclose(stack.slice_space, 2.5)
    assert not stack.variable_spacing
    assert not stack.non_parallel
    assert stack.spacing_correction == 1.0
    assert stack.slice_offset(3) == 3.0

    # irregular spacing is detected and offsets become fractional
    positions = [(0, 0, 0), (0, 0, 1), (0, 0, 3)]
    stack = utility.make_stack([torch.zeros((4, 4))] * 3, positions=positions)
    assert stack.variable_spacing
    assert math.isclose(stack.slice_space, 1.5)
    assert math.isclose(stack.slice_offset(1), 2 / 3)
    assert stack.slice_offset(2) == 2.0

    # a single slice falls back to the pixel spacing
    stack = utility.make_stack([torch.zeros((4, 4))], pixel_spacing=0.8)
    assert stack.slice_space == 0.0
    assert stack.effective_slice_space == 0.8


def test_stack_non_parallel() -> None:

    # the last slice is rotated about the row direction
    angle = math.radians(20)
    pixels = [torch.zeros((4, 4))] * 3
    stack = utility.make_stack(pixels, positions=[(0, 0, 0), (0, 0, 1), (0, 0, 2)])
    assert not stack.non_parallel

    tilted = mv.SliceGeometry((1, 0, 0), (0, math.cos(angle), math.sin(angle)), (0, 0, 2))
    slices = list(stack.slices[:2]) + [mv.ArraySlice(torch.zeros((4, 4)), tilted)]
    assert mv.OriginalStack(slices, 'axial').non_parallel


def test_stack_validation() -> None:

    with pytest.raises(ValueError):
        mv.OriginalStack([], 'axial')

    # mismatched pixel grids
    with pytest.raises(ValueError):
        utility.make_stack([torch.zeros((4, 4)), torch.zeros((4, 5))])

    # mismatched channel counts
    with pytest.raises(ValueError):
        utility.make_stack([torch.zeros((4, 4)), torch.zeros((4, 4, 3))])


def test_stack_cache_key() -> None:

    # the key is built from the slice identities and the plane
    stack = utility.uniform_byte_stack()
    assert stack.cache_key == (('axial-0', 'axial-1', 'axial-2', 'axial-3'), 'axial')
    assert utility.uniform_byte_stack().cache_key == stack.cache_key
    assert mv.OriginalStack(stack.slices, 'coronal').cache_key != stack.cache_key


def test_stack_flips() -> None:

    # directions pointing along their negative dominant axis request flips
    pixels = [torch.zeros((4, 4))] * 2
    stack = utility.make_stack(pixels, row=(-1, 0, 0), column=(0, 1, 0))
    assert stack.needs_row_flip
    assert not stack.needs_column_flip

    stack = utility.make_stack(pixels, row=(1, 0, 0), column=(0, -1, 0))
    assert not stack.needs_row_flip
    assert stack.needs_column_flip

    # bounds directions are normalized to the positive dominant axis
    bounds = stack.compute_volume_bounds()
    assert bounds.column.tolist() == [0, 1, 0]


def test_volume_bounds() -> None:

    # coronal bounds permute the source extents and spacings
    stack = utility.make_stack([torch.zeros((6, 5))] * 3, plane='coronal',
                               pixel_spacing=0.5, slice_spacing=2.0)
    bounds = stack.compute_volume_bounds()
    assert bounds.plane == 'coronal'
    assert bounds.size == (5, 3, 6)
    assert bounds.spacing == (0.5, 2.0, 0.5)
    assert not bounds.needs_rectification()
    assert mv.bounds.rectification_matrix(bounds, stack.first_geometry.column,
                                          stack.first_geometry.row) is None

    corners = bounds.corner_points()
    assert corners.shape == (8, 3)
    assert corners.amax(dim=0).tolist() == [5, 3, 6]


def test_tilted_rectification() -> None:

    # a gantry tilt produces a shear coupling the slice and column axes
    stack = utility.tilted_stack()
    bounds = stack.compute_volume_bounds()
    assert bounds.column_needs_rectification()
    assert not bounds.row_needs_rectification()
    assert not bounds.plan_needs_rectification()
    assert stack.spacing_correction > 1.0

    matrix = mv.bounds.rectification_matrix(bounds, stack.first_geometry.column,
                                            stack.first_geometry.row)
    assert matrix is not None
    assert matrix[2, 1] > 0
    assert matrix[0, 0] == 1 and matrix[1, 1] == 1 and matrix[2, 2] == 1

    # the fitted grid covers every transformed corner
    shifted, size = mv.bounds.transformed_bounds(bounds, matrix)
    assert size[0] == bounds.size[0] and size[1] == bounds.size[1]
    assert size[2] > bounds.size[2]
    corners = shifted.transform(bounds.corner_points())
    assert corners.min() >= 0
    assert (corners.amax(dim=0) <= torch.tensor(size, dtype=torch.float64)).all()

    # the same tilt stacked towards negative Z mirrors the shear
    assert stack.stacking_direction == 1
    angle = math.radians(15)
    pixels = [torch.zeros((16, 16), dtype=torch.int16)] * 8
    positions = [(0, 0, -k) for k in range(8)]
    descending = utility.make_stack(pixels, column=(0, math.cos(angle), math.sin(angle)),
                                    positions=positions)
    assert descending.stacking_direction == -1
    bounds = descending.compute_volume_bounds()
    mirrored = mv.bounds.rectification_matrix(bounds, descending.first_geometry.column,
                                              descending.first_geometry.row)
    assert math.isclose(float(mirrored[2, 1]), -float(matrix[2, 1]))


def test_affine_helpers() -> None:

    # translation applied after the base transform
    matrix = mv.affine.translation_matrix([1, 2, 3]) @ mv.affine.shear_matrix(2, 1, 0.5)
    assert matrix.transform(torch.tensor([0.0, 2.0, 0.0])).tolist() == [1.0, 4.0, 4.0]
    assert (matrix @ matrix.inverse).is_identity()

    # a quarter turn about Z maps X onto Y
    rotation = mv.affine.quaternion_to_matrix(mv.affine.axis_angle_quaternion(2, math.pi / 2))
    point = rotation.transform(torch.tensor([1.0, 0.0, 0.0]))
    assert torch.allclose(point, torch.tensor([0.0, 1.0, 0.0], dtype=torch.float64))
    assert torch.allclose(rotation.tensor,
                          mv.affine.axis_rotation_matrix(2, math.pi / 2).tensor)

    with pytest.raises(ValueError):
        mv.AffineMatrix(torch.zeros((2, 2)))
