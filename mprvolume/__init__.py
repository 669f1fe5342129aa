__version__ = '0.1.0'

from . import kinds
from .kinds import ElementKind
from .kinds import cast_element_kind

from . import config
from .config import VolumeConfig

from . import affine
from .affine import AffineMatrix
from .affine import cast_affine

from . import plane
from .plane import Plane
from .plane import cast_plane

from . import chunked
from .chunked import ChunkedArray

from . import mapped
from .mapped import ChunkedMappedBuffer

from . import storage
from .storage import OutOfCapacity

from . import geometry
from .geometry import SliceGeometry
from .geometry import SliceSource
from .geometry import ArraySlice

from . import bounds
from .bounds import VolumeBounds

from . import stack
from .stack import OriginalStack

from . import tasks

from . import volume
from .volume import Volume
from .volume import VolumeBuildError
from .volume import volumes_equal

from . import io
from .io.volume import load_volume
from .io.volume import save_volume
