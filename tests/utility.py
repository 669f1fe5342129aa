import math
import random
import torch
import mprvolume as mv


# set seeds globally for reproducibility
torch.manual_seed(0)
random.seed(0)


# store data in a cache to avoid rebuilding for each test
datacache = {}


def from_cache(tag : str, loader : callable):
    """
    Load an object from a cache or load it if it is not found.

    Args:
        tag (str): A unique tag for the object.
        loader (callable): A function to load the object if it is not found in the cache.

    Returns:
        Any: The loaded object.
    """
    if tag not in datacache:
        datacache[tag] = loader()
    return datacache[tag]


# row and column directions of untilted slices, with the physical axis the slices stack along
plane_directions = {
    'axial': ((1, 0, 0), (0, 1, 0), 2),
    'coronal': ((1, 0, 0), (0, 0, 1), 1),
    'sagittal': ((0, 1, 0), (0, 0, 1), 0),
}


def make_stack(
    pixels : list,
    plane : str = 'axial',
    pixel_spacing : float = 1.0,
    slice_spacing : float = 1.0,
    row : tuple = None,
    column : tuple = None,
    positions : list = None,
    photometric_inverse : bool = False) -> mv.OriginalStack:
    """
    Build a stack from a list of slice pixel arrays, spaced regularly along the
    stacking axis of a plane.
    """
    default_row, default_column, axis = plane_directions[plane]
    row = default_row if row is None else row
    column = default_column if column is None else column

    slices = []
    for k, data in enumerate(pixels):
        if positions is None:
            position = [0.0, 0.0, 0.0]
            position[axis] = k * slice_spacing
        else:
            position = positions[k]
        geometry = mv.SliceGeometry(row, column, position, pixel_spacing)
        slices.append(mv.ArraySlice(data, geometry, uid=f'{plane}-{k}',
                                    photometric_inverse=photometric_inverse))
    return mv.OriginalStack(slices, plane)


def uniform_byte_stack() -> mv.OriginalStack:
    """
    Four 4x4 uint8 axial slices, each uniformly filled with its slice index.
    """
    pixels = [torch.full((4, 4), k, dtype=torch.uint8) for k in range(4)]
    return make_stack(pixels)


def random_stack(
    shape : tuple = (12, 10),
    slices : int = 6,
    dtype : torch.dtype = torch.int16,
    plane : str = 'axial') -> mv.OriginalStack:
    """
    A stack of random slices with values in [-100, 400).
    """
    def loader():
        pixels = [torch.randint(-100, 400, shape).to(dtype) for _ in range(slices)]
        return make_stack(pixels, plane=plane)
    return from_cache(f'random-{shape}-{slices}-{dtype}-{plane}', loader)


def tilted_stack(degrees : float = 15.0, slices : int = 8, size : int = 16) -> mv.OriginalStack:
    """
    An axial stack with a gantry tilt: the column direction leans into the
    stacking axis by a fixed angle, and the slices are stacked along Z.
    """
    def loader():
        angle = math.radians(degrees)
        column = (0.0, math.cos(angle), math.sin(angle))
        pixels = [torch.randint(10, 200, (size, size)).to(torch.int16) for _ in range(slices)]
        return make_stack(pixels, column=column)
    return from_cache(f'tilted-{degrees}-{slices}-{size}', loader)


# column directions leaning into the stacking axis by a tilt angle
def tilted_column(plane : str, angle : float) -> tuple:
    c, s = math.cos(angle), math.sin(angle)
    return {'axial': (0.0, c, s), 'coronal': (0.0, s, c), 'sagittal': (s, 0.0, c)}[plane]


def sheet_stack(
    plane : str,
    direction : int = 1,
    degrees : float = 15.0,
    slices : int = 12,
    size : int = 16,
    depth : float = 6.0) -> mv.OriginalStack:
    """
    A tilted stack imaging a flat physical sheet perpendicular to the stacking
    axis, at a coordinate of `direction * depth`. Sheet pixels hold 100 and
    everything else holds 1. The slices advance along the positive stacking
    axis when `direction` is 1 and along the negative axis when it is -1.
    """
    angle = math.radians(degrees)
    _, _, axis = plane_directions[plane]
    rows = torch.arange(size, dtype=torch.float64).view(size, 1).expand(size, size)

    pixels = []
    positions = []
    for k in range(slices):
        # physical coordinate along the stacking axis of every pixel
        coordinate = direction * k + rows * math.sin(angle)
        sheet = (coordinate - direction * depth).abs() < 0.5
        pixels.append(torch.where(sheet, 100, 1).to(torch.int16))
        position = [0.0, 0.0, 0.0]
        position[axis] = direction * k
        positions.append(position)

    return make_stack(pixels, plane=plane, column=tilted_column(plane, angle), positions=positions)
