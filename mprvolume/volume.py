"""
Voxel volumes reconstructed from slice stacks and resampled along arbitrary planes.
"""

from __future__ import annotations

import os
import math
import time
import logging
import threading
import concurrent.futures
import numpy as np
import torch
import mprvolume as mv


logger = logging.getLogger(__name__)


class VolumeBuildError(RuntimeError):
    """
    Terminal failure of a volume reconstruction. The partially built volume
    is released and never returned.
    """


class Volume:
    """
    A multi-channel voxel grid of a single element kind, with a physical
    spacing and a mutable viewing orientation.

    The grid has a size $(sx, sy, sz)$ and voxel channels stored in one flat
    store, at index `((z * sy + y) * sx + x) * channels + c`. The store is
    either an in-memory chunked array or a mapped file, chosen once at
    allocation. After construction the voxel data is read-only, and
    concurrent queries need no locking. The orientation (a translation and a
    rotation quaternion) is plain mutable state that callers must serialize.
    """

    def __init__(self,
        size: tuple,
        kind: mv.ElementKind | str,
        channels: int = 1,
        spacing: tuple = (1.0, 1.0, 1.0),
        config: mv.VolumeConfig | None = None) -> None:
        """
        Allocate the storage of a volume without initializing it. Use `blank`
        or `from_stack` to construct a usable volume.

        Args:
            size (tuple): Grid size (sx, sy, sz).
            kind (ElementKind | str): Element kind of the voxels.
            channels (int, optional): Number of channels per voxel.
            spacing (tuple, optional): Physical distance per voxel step.
            config (VolumeConfig, optional): Storage and build configuration.
        """
        size = tuple(int(s) for s in size)
        if len(size) != 3 or min(size) < 1:
            raise ValueError(f'volume size must be three positive extents, got {size}')
        if channels < 1:
            raise ValueError(f'channel count must be positive, got {channels}')
        spacing = tuple(float(s) for s in spacing)
        if len(spacing) != 3 or min(spacing) <= 0:
            raise ValueError(f'volume spacing must be three positive values, got {spacing}')

        self._size = size
        self._kind = mv.cast_element_kind(kind)
        self._channels = int(channels)
        self._spacing = spacing
        self._config = mv.config.cast_config(config)
        self._store = mv.storage.allocate(self.numel(), self._kind, self._config)

        self._minimum = self._kind.lowest
        self._maximum = self._kind.highest
        self._photometric_inverse = False
        self._row_flip = False
        self._column_flip = False
        self._rectification = None
        self._stack = None

        self.translation = torch.zeros(3, dtype=torch.float64)
        self.rotation = mv.affine.identity_quaternion()

    @classmethod
    def blank(cls,
        size: tuple,
        kind: mv.ElementKind | str,
        channels: int = 1,
        spacing: tuple = (1.0, 1.0, 1.0),
        config: mv.VolumeConfig | None = None) -> Volume:
        """
        Construct a volume with every voxel set to the lowest value of its kind.
        """
        volume = cls(size, kind, channels, spacing, config)
        volume._fill_background()
        return volume

    def __repr__(self) -> str:
        storage = 'mapped' if self.is_mapped else 'memory'
        return (f'{self.__class__.__name__}(size={self._size}, kind={self._kind.label}, '
                f'channels={self._channels}, storage={storage})')

    def __enter__(self) -> Volume:
        return self

    def __exit__(self, *args) -> None:
        self.release()

    # -------------------------------------------------------------------------
    # property getters and core methods
    # -------------------------------------------------------------------------

    @property
    def size(self) -> tuple:
        """
        Grid size (sx, sy, sz).
        """
        return self._size

    @property
    def kind(self) -> mv.ElementKind:
        return self._kind

    @property
    def channels(self) -> int:
        return self._channels

    @property
    def spacing(self) -> tuple:
        """
        Physical distance per voxel step along each axis.
        """
        return self._spacing

    @property
    def config(self) -> mv.VolumeConfig:
        return self._config

    @property
    def store(self) -> mv.storage.VoxelStore:
        """
        The backing voxel store. Raises a RuntimeError once released.
        """
        if self._store is None:
            raise RuntimeError('volume storage has been released')
        return self._store

    @property
    def is_mapped(self) -> bool:
        """
        Whether the voxels live in a mapped file instead of memory.
        """
        return self._store is not None and self._store.is_mapped

    @property
    def released(self) -> bool:
        return self._store is None

    @property
    def minimum(self) -> int | float:
        """
        Smallest voxel value observed during ingestion.
        """
        return self._minimum

    @property
    def maximum(self) -> int | float:
        """
        Largest voxel value observed during ingestion.
        """
        return self._maximum

    @property
    def photometric_inverse(self) -> bool:
        return self._photometric_inverse

    @property
    def background_value(self) -> int | float:
        """
        Value of empty raster pixels and missing interpolation neighbors: the
        maximum for photometric-inverse volumes, otherwise the minimum.
        """
        return self._maximum if self._photometric_inverse else self._minimum

    @property
    def row_flip(self) -> bool:
        return self._row_flip

    @property
    def column_flip(self) -> bool:
        return self._column_flip

    @property
    def stack(self) -> mv.OriginalStack | None:
        """
        Source stack of the volume, or None for a blank volume.
        """
        return self._stack

    @property
    def rectification(self) -> mv.AffineMatrix | None:
        """
        Transform from the source slice grid to this grid that corrects the
        acquisition tilt, including the shift to non-negative coordinates.
        None when the stack was axis-aligned.
        """
        return self._rectification

    @property
    def needs_rectification(self) -> bool:
        """
        Whether the volume required a tilt correction when built.
        """
        return self._rectification is not None

    def numel(self) -> int:
        """
        Number of stored elements, voxels times channels.
        """
        return self._size[0] * self._size[1] * self._size[2] * self._channels

    # -------------------------------------------------------------------------
    # spacing ratios and derived extents
    # -------------------------------------------------------------------------

    @property
    def min_spacing(self) -> float:
        return min(self._spacing)

    @property
    def voxel_ratio(self) -> torch.Tensor:
        """
        Spacing relative to the smallest spacing, so the finest axis is 1.
        """
        return torch.tensor(self._spacing, dtype=torch.float64) / self.min_spacing

    @property
    def spatial_multiplier(self) -> torch.Tensor:
        """
        Voxel ratio scaled by the size of each axis relative to the largest axis.
        """
        size = torch.tensor(self._size, dtype=torch.float64)
        return self.voxel_ratio * size / size.max()

    @property
    def diagonal_length(self) -> float:
        """
        Length of the grid diagonal, in voxels.
        """
        return float(torch.tensor(self._size, dtype=torch.float64).norm())

    @property
    def slice_size(self) -> int:
        """
        Side of a square raster that covers any plane through the volume.
        """
        extent = self.voxel_ratio * torch.tensor(self._size, dtype=torch.float64)
        return int(math.ceil(float(extent.norm())))

    # -------------------------------------------------------------------------
    # exact voxel access
    # -------------------------------------------------------------------------

    def is_outside(self, x: int, y: int, z: int) -> bool:
        sx, sy, sz = self._size
        return x < 0 or x >= sx or y < 0 or y >= sy or z < 0 or z >= sz

    def voxel_index(self, x, y, z, channel=0):
        """
        Flat store index of a voxel channel. Works on ints and index tensors.
        """
        sx, sy, _ = self._size
        return ((z * sy + y) * sx + x) * self._channels + channel

    def _check_channel(self, channel: int) -> None:
        if channel < 0 or channel >= self._channels:
            raise IndexError(f'channel {channel} outside of volume with {self._channels} channels')

    def get(self, x: int, y: int, z: int, channel: int = 0) -> int | float | None:
        """
        Read one voxel channel.

        Returns:
            The value, or None when the coordinates are outside the grid.
        """
        self._check_channel(channel)
        if self.is_outside(x, y, z):
            return None
        return self.store.get(self.voxel_index(x, y, z, channel))

    def get_voxel(self, x: int, y: int, z: int) -> list | None:
        """
        Read all channels of one voxel, or None outside the grid.
        """
        if self.is_outside(x, y, z):
            return None
        start = self.voxel_index(x, y, z)
        return self.store.read(start, self._channels).tolist()

    def set(self, x: int, y: int, z: int, value, channel: int = 0) -> None:
        """
        Write one voxel channel. Writes outside the grid are ignored.
        """
        self._check_channel(channel)
        if self.is_outside(x, y, z):
            return
        self.store.set(self.voxel_index(x, y, z, channel), value)

    def tensor(self) -> torch.Tensor:
        """
        Dense copy of the voxels with shape $(C, sx, sy, sz)$.
        """
        sx, sy, sz = self._size
        flat = self.store.read(0, self.numel())
        return flat.view(sz, sy, sx, self._channels).permute(3, 2, 1, 0).contiguous()

    @classmethod
    def from_tensor(cls,
        tensor: torch.Tensor,
        kind: mv.ElementKind | str | None = None,
        spacing: tuple = (1.0, 1.0, 1.0),
        photometric_inverse: bool = False,
        config: mv.VolumeConfig | None = None) -> Volume:
        """
        Construct a volume from dense voxels.

        Args:
            tensor (Tensor): Voxels of shape $(C, sx, sy, sz)$ or $(sx, sy, sz)$.
            kind (ElementKind, optional): Element kind. Defaults to the kind
                of the tensor dtype.
            spacing (tuple, optional): Physical distance per voxel step.
            photometric_inverse (bool, optional): Whether low values display bright.
            config (VolumeConfig, optional): Storage configuration.

        Returns:
            Volume: The new volume, with extrema computed from the data.
        """
        tensor = torch.as_tensor(tensor)
        if tensor.ndim == 3:
            tensor = tensor.unsqueeze(0)
        elif tensor.ndim != 4:
            raise ValueError(f'expected 3D or 4D voxels, got a {tensor.ndim}D input')
        kind = mv.cast_element_kind(tensor.dtype if kind is None else kind)

        volume = cls(tuple(tensor.shape[1:]), kind, tensor.shape[0], spacing, config)
        volume._photometric_inverse = photometric_inverse
        values = kind.cast(tensor.detach().cpu()).permute(3, 2, 1, 0).reshape(-1)
        volume.store.write(0, values)
        if values.numel() > 0:
            volume._minimum = kind.python_value(values.min())
            volume._maximum = kind.python_value(values.max())
        return volume

    # -------------------------------------------------------------------------
    # interpolation
    # -------------------------------------------------------------------------

    def _gather_corners(self, corners: torch.Tensor) -> torch.Tensor:
        """
        Read all channels at integer voxel coordinates of shape (..., 3), as
        float64 of shape (..., C). Coordinates outside the grid read as the
        background value.
        """
        size = torch.tensor(self._size, dtype=torch.int64)
        inside = ((corners >= 0) & (corners < size)).all(dim=-1)
        clamped = torch.minimum(corners.clamp(min=0), size - 1)
        base = self.voxel_index(clamped[..., 0], clamped[..., 1], clamped[..., 2])
        indices = base.unsqueeze(-1) + torch.arange(self._channels)
        values = self.store.gather(indices).to(torch.float64)
        return torch.where(inside.unsqueeze(-1), values, float(self.background_value))

    def sample(self, points: torch.Tensor) -> tuple:
        """
        Trilinear interpolation of all channels at real-valued voxel coordinates.
        A point is valid only when every coordinate lies in `[0, size - 1)`.

        Args:
            points (Tensor): Voxel coordinates of shape (N, 3).

        Returns:
            tuple: Interpolated float64 values of shape (N, C), with invalid
            points holding the background value, and the validity mask (N,).
        """
        points = torch.as_tensor(points, dtype=torch.float64).reshape(-1, 3)
        upper = torch.tensor(self._size, dtype=torch.float64) - 1
        valid = ((points >= 0) & (points < upper)).all(dim=1)

        values = torch.full((len(points), self._channels), float(self.background_value), dtype=torch.float64)
        if not bool(valid.any()):
            return values, valid

        inside = points[valid]
        base = inside.floor()
        frac = inside - base
        base = base.to(torch.int64)

        # corner offsets ordered (dz, dy, dx) so the gathered block reshapes to (M, 2, 2, 2, C)
        offsets = torch.tensor([[dx, dy, dz] for dz in (0, 1) for dy in (0, 1) for dx in (0, 1)])
        corners = self._gather_corners(base.unsqueeze(1) + offsets)
        corners = corners.view(-1, 2, 2, 2, self._channels)

        fx = frac[:, 0].view(-1, 1, 1, 1)
        fy = frac[:, 1].view(-1, 1, 1)
        fz = frac[:, 2].view(-1, 1)

        along_x = corners[:, :, :, 0] * (1 - fx) + corners[:, :, :, 1] * fx
        along_y = along_x[:, :, 0] * (1 - fy) + along_x[:, :, 1] * fy
        along_z = along_y[:, 0] * (1 - fz) + along_y[:, 1] * fz

        values[valid] = along_z
        return values, valid

    def interpolate(self, x: float, y: float, z: float, channel: int = 0) -> int | float | None:
        """
        Trilinear interpolation of one channel at real-valued voxel coordinates.

        Returns:
            The value converted to the element kind (rounded for integer
            kinds), or None when the point is outside `[0, size - 1)`.
        """
        self._check_channel(channel)
        values, valid = self.sample(torch.tensor([[x, y, z]], dtype=torch.float64))
        if not bool(valid[0]):
            return None
        return self._kind.python_value(self._kind.cast(values[0, channel]))

    # -------------------------------------------------------------------------
    # orientation of the viewing frame
    # -------------------------------------------------------------------------

    def translate(self, dx: float, dy: float, dz: float) -> None:
        self.translation = self.translation + torch.tensor([dx, dy, dz], dtype=torch.float64)

    def reset_translation(self) -> None:
        self.translation = torch.zeros(3, dtype=torch.float64)

    def rotate(self, angle_x: float, angle_y: float, angle_z: float) -> None:
        """
        Compose a rotation (radians, intrinsic XYZ order) onto the current
        rotation. The new rotation applies before the existing one.
        """
        delta = mv.affine.euler_xyz_quaternion(angle_x, angle_y, angle_z)
        self.rotation = mv.affine.quaternion_multiply(self.rotation, delta)

    def reset_rotation(self) -> None:
        self.rotation = mv.affine.identity_quaternion()

    def reset_orientation(self) -> None:
        self.reset_translation()
        self.reset_rotation()

    @property
    def rotation_matrix(self) -> mv.AffineMatrix:
        return mv.affine.quaternion_to_matrix(self.rotation)

    def plane_transform(self,
        center: torch.Tensor | None = None,
        plane: mv.Plane | str = 'axial',
        size: int | None = None) -> mv.AffineMatrix:
        """
        Transform from the pixel coordinates of a square output raster to
        voxel-ratio coordinates of the volume. The raster center maps to
        `center` plus the current translation, and the raster axes follow
        the plane's column and row axes, rotated by the current rotation.

        Args:
            center (Tensor, optional): Center of the plane in voxel-ratio
                coordinates. Defaults to the center of the volume.
            plane (Plane | str, optional): Plane whose axes orient the raster.
            size (int, optional): Raster side. Defaults to `slice_size`.

        Returns:
            AffineMatrix: The combined transform.
        """
        if size is None:
            size = self.slice_size
        if center is None:
            center = self.voxel_ratio * torch.tensor(self._size, dtype=torch.float64) / 2
        center = torch.as_tensor(center, dtype=torch.float64)

        centering = mv.affine.translation_matrix(torch.tensor([-size / 2, -size / 2, 0.0]))
        axes = mv.AffineMatrix(mv.cast_plane(plane).slice_to_volume_matrix())
        placement = mv.affine.translation_matrix(center + self.translation)
        return placement @ self.rotation_matrix @ axes @ centering

    # -------------------------------------------------------------------------
    # plane extraction
    # -------------------------------------------------------------------------

    def extract_plane(self,
        size: int,
        transform: mv.AffineMatrix | torch.Tensor,
        voxel_ratio: torch.Tensor | None = None,
        pool: concurrent.futures.Executor | None = None) -> torch.Tensor:
        """
        Resample the volume on a square raster. Each pixel (x, y) maps through
        `transform` to a point that, divided by the voxel ratio, gives the
        voxel coordinates to interpolate. Pixels that miss the grid (or any
        channel) keep the background value.

        Args:
            size (int): Raster side.
            transform (AffineMatrix): Raster-to-volume transform, for example
                from `plane_transform`.
            voxel_ratio (Tensor, optional): Defaults to the volume voxel ratio.
            pool (Executor, optional): Pool for the pixel ranges. If None, a
                pool is created for the call.

        Returns:
            Tensor: Raster of shape (size, size) or (size, size, C), with the
            storage dtype of the element kind.
        """
        transform = mv.cast_affine(transform)
        ratio = self.voxel_ratio if voxel_ratio is None else torch.as_tensor(voxel_ratio, dtype=torch.float64)

        total = size * size
        raster = torch.full((total, self._channels), self.background_value, dtype=self._kind.torch_dtype)

        def leaf(start: int, end: int) -> None:
            indices = torch.arange(start, end)
            coords = torch.stack((indices % size, indices // size, torch.zeros_like(indices)), dim=1)
            points = transform.transform(coords) / ratio
            values, valid = self.sample(points)
            if bool(valid.any()):
                raster[start:end][valid] = self._kind.cast(values[valid])

        if pool is None:
            with concurrent.futures.ThreadPoolExecutor(self._config.workers) as local:
                mv.tasks.run_pixel_tasks(total, leaf, local, self._config.task_threshold)
        else:
            mv.tasks.run_pixel_tasks(total, leaf, pool, self._config.task_threshold)

        raster = raster.view(size, size, self._channels)
        return raster.squeeze(-1) if self._channels == 1 else raster

    def get_slice(self,
        plane: mv.Plane | str = 'axial',
        center: torch.Tensor | None = None) -> torch.Tensor:
        """
        Extract a raster of `slice_size` through the volume along a plane,
        using the current orientation.
        """
        size = self.slice_size
        return self.extract_plane(size, self.plane_transform(center, plane, size))

    # -------------------------------------------------------------------------
    # ingestion of a slice stack
    # -------------------------------------------------------------------------

    @classmethod
    def from_stack(cls,
        stack: mv.OriginalStack,
        progress: callable = None,
        config: mv.VolumeConfig | None = None) -> Volume:
        """
        Build a volume from a stack of slices. Slices are read and placed
        concurrently, and the volume-wide extrema are reduced as slices
        complete.

        Args:
            stack (OriginalStack): Source stack.
            progress (callable, optional): Called as `progress(done, total)`
                after every completed slice. Failures of the callback are
                logged and ignored.
            config (VolumeConfig, optional): Storage and build configuration.

        Returns:
            Volume: The built volume.

        Raises:
            VolumeBuildError: If any slice fails to read or place. The
                partially built volume is released.
        """
        config = mv.config.cast_config(config)
        start_time = time.perf_counter()

        bounds = stack.compute_volume_bounds()
        first = stack.first_geometry
        rectification = mv.bounds.rectification_matrix(bounds, first.column, first.row)

        size = bounds.size
        if rectification is not None:
            rectification, size = mv.bounds.transformed_bounds(bounds, rectification)
            logger.info('rectifying %s stack, grid %s becomes %s', stack.plane.name, bounds.size, size)

        volume = cls(size, stack.kind, stack.channels, bounds.spacing, config)
        volume._stack = stack
        volume._rectification = rectification
        volume._photometric_inverse = stack.photometric_inverse
        volume._row_flip = stack.needs_row_flip
        volume._column_flip = stack.needs_column_flip

        try:
            volume._fill_background()
            volume._ingest(stack, progress)
        except BaseException:
            volume.release()
            raise

        logger.info('built %s volume %s (%s, %d channels) from %d slices in %.2f s',
                    stack.plane.name, size, volume.kind.label, volume.channels,
                    len(stack), time.perf_counter() - start_time)
        return volume

    def _fill_background(self) -> None:
        # both stores start zeroed
        if self._kind.lowest != 0:
            self.store.fill(self._kind.lowest)

    def _ingest(self, stack: mv.OriginalStack, progress: callable) -> None:
        total = len(stack)
        slice_to_volume = mv.AffineMatrix(stack.plane.slice_to_volume_matrix())

        # reductions start from inverted identities
        minimum = self._kind.highest
        maximum = self._kind.lowest

        # set on failure or interrupt so that slices and pixel leaves still
        # queued or running return without writing
        stop = threading.Event()

        workers = self._config.workers
        with concurrent.futures.ThreadPoolExecutor(workers, thread_name_prefix='volume-slice') as slice_pool, \
             concurrent.futures.ThreadPoolExecutor(workers, thread_name_prefix='volume-pixel') as pixel_pool:

            futures = {slice_pool.submit(self._ingest_slice, stack, z, slice_to_volume, pixel_pool, stop): z
                       for z in range(total)}
            done = 0
            try:
                for future in concurrent.futures.as_completed(futures):
                    z = futures[future]
                    try:
                        low, high = future.result()
                    except Exception as exc:
                        raise VolumeBuildError(f'failed to ingest slice {z} of {total}') from exc
                    minimum = min(minimum, low)
                    maximum = max(maximum, high)
                    done += 1
                    self._report_progress(progress, done, total)
            except BaseException:
                # leaving the pools waits only for the leaves already writing
                stop.set()
                for future in futures:
                    future.cancel()
                raise

        self._minimum = minimum
        self._maximum = maximum

        # voxels that no slice reached still hold the fill value
        if self._kind.lowest < minimum:
            replaced = self.store.replace(self._kind.lowest, minimum)
            if replaced:
                logger.debug('set %d unwritten voxels to the minimum %s', replaced, minimum)

    @staticmethod
    def _report_progress(progress: callable, done: int, total: int) -> None:
        if progress is None:
            return
        try:
            progress(done, total)
        except Exception:
            logger.warning('progress callback failed at %d of %d slices', done, total, exc_info=True)

    def _ingest_slice(self,
        stack: mv.OriginalStack,
        z: int,
        slice_to_volume: mv.AffineMatrix,
        pixel_pool: concurrent.futures.Executor,
        stop: threading.Event) -> tuple | None:
        """
        Read one slice, place its pixels, and return its raw extrema. Returns
        None without reading when the build was stopped.
        """
        if stop.is_set():
            return None
        source = stack[z]
        pixels = mv.geometry.pixels_to_tensor(source.read(), self._kind)
        expected = (stack.rows, stack.columns, self._channels)
        if tuple(pixels.shape) != expected:
            raise ValueError(f'slice {z} decoded to shape {tuple(pixels.shape)}, expected {expected}')

        low = self._kind.python_value(pixels.min())
        high = self._kind.python_value(pixels.max())

        if self._row_flip:
            pixels = pixels.flip(1)
        if self._column_flip:
            pixels = pixels.flip(0)

        self._place_slice(pixels, stack.slice_offset(z), stack.plane, slice_to_volume, pixel_pool, stop)
        return low, high

    def _place_slice(self,
        pixels: torch.Tensor,
        offset: float,
        plane: mv.Plane,
        slice_to_volume: mv.AffineMatrix,
        pixel_pool: concurrent.futures.Executor,
        stop: threading.Event | None = None) -> None:
        """
        Write slice pixels of shape (H, W, C) at a slice offset along the
        stacking axis.
        """
        rows, columns, channels = pixels.shape
        sx, sy, sz = self._size

        # a grid-aligned axial slice is one contiguous block of the store
        aligned = (self._rectification is None and plane == 'axial' and
                   offset == int(offset) and 0 <= offset < sz)
        if aligned:
            self.store.write(int(offset) * sx * sy * channels, pixels.reshape(-1))
            return

        flat = pixels.reshape(-1, channels)

        def leaf(start: int, end: int) -> None:
            if stop is not None and stop.is_set():
                return
            indices = torch.arange(start, end)
            source = torch.stack((indices % columns, indices // columns,
                                  torch.zeros_like(indices)), dim=1).to(torch.float64)
            source[:, 2] = offset
            coords = slice_to_volume.transform(source)
            if self._rectification is not None:
                coords = self._rectification.transform(coords)
            self._splat(coords, flat[start:end])

        mv.tasks.run_pixel_tasks(rows * columns, leaf, pixel_pool, self._config.task_threshold)

    def _splat(self, coords: torch.Tensor, values: torch.Tensor) -> None:
        """
        Scatter values to the voxels at the floor of real-valued coordinates,
        and also to each neighbor whose offset axes all have a fractional part
        above one half.

        Args:
            coords (Tensor): Target voxel coordinates of shape (N, 3).
            values (Tensor): Values of shape (N, C).
        """
        base = coords.floor()
        beyond = (coords - base) > 0.5
        base = base.to(torch.int64)
        size = torch.tensor(self._size, dtype=torch.int64)

        offsets = torch.tensor([[dx, dy, dz] for dz in (0, 1) for dy in (0, 1) for dx in (0, 1)])
        # (N, 8): every offset axis must be beyond the threshold
        selected = (beyond.unsqueeze(1) | (offsets == 0)).all(dim=-1)
        targets = base.unsqueeze(1) + offsets
        selected &= ((targets >= 0) & (targets < size)).all(dim=-1)
        if not bool(selected.any()):
            return

        points = targets[selected]
        index = self.voxel_index(points[:, 0], points[:, 1], points[:, 2])
        index = index.unsqueeze(-1) + torch.arange(self._channels)
        source = values.unsqueeze(1).expand(-1, 8, -1)[selected]
        self.store.scatter(index.reshape(-1), source.reshape(-1))

    # -------------------------------------------------------------------------
    # derived volumes, persistence and lifecycle
    # -------------------------------------------------------------------------

    def clone(self, size: tuple | None = None, spacing: tuple | None = None) -> Volume:
        """
        Construct a blank volume with the same element kind, channels,
        extrema, flips and photometric interpretation.

        Args:
            size (tuple, optional): Grid size. Defaults to this size.
            spacing (tuple, optional): Spacing. Defaults to this spacing.
        """
        volume = Volume.blank(self._size if size is None else size,
                              self._kind,
                              self._channels,
                              self._spacing if spacing is None else spacing,
                              self._config)
        volume._minimum = self._minimum
        volume._maximum = self._maximum
        volume._photometric_inverse = self._photometric_inverse
        volume._row_flip = self._row_flip
        volume._column_flip = self._column_flip
        volume._stack = self._stack
        return volume

    def _x_plane_indices(self, x: int) -> torch.Tensor:
        _, sy, sz = self._size
        y = torch.arange(sy).view(sy, 1, 1)
        z = torch.arange(sz).view(1, sz, 1)
        c = torch.arange(self._channels).view(1, 1, -1)
        return self.voxel_index(x, y, z, c).reshape(-1)

    def write_raw(self, file: os.PathLike | object) -> None:
        """
        Write the voxels as a headerless big-endian stream, one value per
        channel, iterating x, then y, then z, then channel (innermost).

        Args:
            file (PathLike | file): Destination path or binary stream.
        """
        if self._store is None:
            raise OSError('cannot write a released volume')
        if isinstance(file, (str, os.PathLike)):
            with open(file, 'wb') as stream:
                self.write_raw(stream)
            return

        dtype = self._kind.big_endian_dtype
        for x in range(self._size[0]):
            values = self.store.gather(self._x_plane_indices(x))
            file.write(self._kind.to_numpy(values).astype(dtype).tobytes())

    def read_raw(self, file: os.PathLike | object) -> None:
        """
        Fill the voxels from a headerless big-endian stream written by
        `write_raw`, and recompute the extrema. The stream must match the
        element kind, size and channels of this volume.

        Args:
            file (PathLike | file): Source path or binary stream.
        """
        if isinstance(file, (str, os.PathLike)):
            mv.io.volume.check_readable(file)
            with open(file, 'rb') as stream:
                self.read_raw(stream)
            return

        dtype = self._kind.big_endian_dtype
        _, sy, sz = self._size
        count = sy * sz * self._channels
        minimum = self._kind.highest
        maximum = self._kind.lowest
        for x in range(self._size[0]):
            data = file.read(count * dtype.itemsize)
            if len(data) != count * dtype.itemsize:
                raise OSError(f'unexpected end of voxel stream at x = {x}')
            values = self._kind.to_tensor(np.frombuffer(data, dtype=dtype))
            self.store.scatter(self._x_plane_indices(x), values)
            minimum = min(minimum, self._kind.python_value(values.min()))
            maximum = max(maximum, self._kind.python_value(values.max()))
        self._minimum = minimum
        self._maximum = maximum

    def save(self, filename: os.PathLike, fmt: str = None) -> None:
        """
        Save the volume to a file.

        Args:
            filename (PathLike): The path to the file to save.
            fmt (str, optional): The format of the file. If None, the format is
                determined by the file extension.
        """
        mv.save_volume(self, filename, fmt=fmt)

    def release(self) -> None:
        """
        Release the backing storage. A mapped file is unmapped and deleted.
        Releasing twice is a no-op.
        """
        if self._store is not None:
            self._store.release()
            self._store = None


def volumes_equal(a: Volume, b: Volume, tol: float = 0) -> bool:
    """
    Check if two volumes have the same grid and voxel values within a tolerance.

    Args:
        a, b (Volume): Volumes to compare.
        tol (float, optional): Absolute tolerance for the voxel comparison.

    Returns:
        bool: True if the volumes are equal, False otherwise.
    """
    if a.size != b.size or a.channels != b.channels:
        return False
    return bool(torch.allclose(a.tensor().to(torch.float64), b.tensor().to(torch.float64), atol=tol, rtol=0))
