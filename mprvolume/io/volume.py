"""
Reading and writing voxel volumes to various file formats.
"""

from __future__ import annotations

import os
import pathlib
import logging
import numpy as np
import torch
import mprvolume as mv


logger = logging.getLogger(__name__)


def check_readable(filename: os.PathLike) -> pathlib.Path:
    """
    Verify that a volume file exists and can be read before any format is
    chosen for it.

    Returns:
        Path: The file path.
    """
    path = pathlib.Path(filename)
    if path.is_dir():
        raise ValueError(f'{path} is a directory, not a volume file')
    if not path.is_file():
        raise FileNotFoundError(f'volume file {path} does not exist')
    if not os.access(path, os.R_OK):
        raise PermissionError(f'volume file {path} is not readable')
    return path


class VolumeIO:
    """
    Base of the volume file formats. A format declares its `name` and its
    `extensions`, the first one being used for written files, and implements
    `load` and `save`.
    """
    name = ''
    extensions = ()

    @classmethod
    def matches(cls, filename: os.PathLike) -> bool:
        """
        Whether a filename ends with one of the format extensions, ignoring case.
        """
        return str(filename).lower().endswith(cls.extensions)

    @classmethod
    def enforce_extension(cls, filename: os.PathLike) -> pathlib.Path:
        """
        Return the filename, with its suffix replaced by the primary format
        extension unless it already has one of the format extensions.
        """
        path = pathlib.Path(filename)
        return path if cls.matches(path) else path.with_suffix(cls.extensions[0])

    def load(self, filename: os.PathLike, **kwargs) -> mv.Volume:
        raise NotImplementedError(f'reading {self.name} volumes is not supported')

    def save(self, volume: mv.Volume, filename: os.PathLike) -> None:
        raise NotImplementedError(f'writing {self.name} volumes is not supported')


def find_protocol(filename: os.PathLike, fmt: str = None) -> type:
    """
    Select the volume format of a file, by explicit format name or else by
    the filename extension.

    Args:
        filename (PathLike): File to read or write.
        fmt (str, optional): Format name, matched without case.

    Returns:
        type: The matching `VolumeIO` subclass.
    """
    if fmt is not None:
        proto = next((p for p in volume_io_protocols if p.name == fmt.lower()), None)
        if proto is None:
            raise ValueError(f'unknown volume file format {fmt}')
        return proto
    proto = next((p for p in volume_io_protocols if p.matches(filename)), None)
    if proto is None:
        raise ValueError(f'cannot determine volume file format from the extension of {filename}')
    return proto


def load_volume(filename: os.PathLike, fmt: str = None, **kwargs) -> mv.Volume:
    """
    Load a volume from a file.

    Args:
        filename (PathLike): The path to the file to load.
        fmt (str, optional): The format of the file. If None, the format is
            determined by the file extension.
        **kwargs: Format-specific options, such as the size, kind and channels
            of a headerless raw stream.

    Returns:
        Volume: The loaded volume.
    """
    check_readable(filename)
    proto = find_protocol(filename, fmt)
    return proto().load(filename, **kwargs)


def save_volume(volume: mv.Volume, filename: os.PathLike, fmt: str = None) -> None:
    """
    Save a volume to a file.

    Args:
        volume (Volume): The volume to save.
        filename (PathLike): The path to the file to save.
        fmt (str, optional): The format of the file. If None, the format is
            determined by the file extension.
    """
    proto = find_protocol(filename, fmt)
    if fmt is not None:
        filename = proto.enforce_extension(filename)
    proto().save(volume, filename)


class RawVolumeIO(VolumeIO):
    """
    Volume IO protocol for headerless big-endian voxel streams. The reader
    must supply the grid size, element kind and channel count.
    """
    name = 'raw'
    extensions = ('.raw',)

    def load(self,
        filename: os.PathLike,
        size: tuple = None,
        kind: mv.ElementKind | str = None,
        channels: int = 1,
        spacing: tuple = (1.0, 1.0, 1.0),
        config: mv.VolumeConfig | None = None) -> mv.Volume:
        """
        Read a volume from a raw stream.

        Args:
            filename (PathLike): The path to the raw file to read.
            size (tuple): Grid size (sx, sy, sz).
            kind (ElementKind | str): Element kind of the stream.
            channels (int, optional): Channels per voxel.
            spacing (tuple, optional): Voxel spacing.
            config (VolumeConfig, optional): Storage configuration.

        Returns:
            Volume: The loaded volume.
        """
        if size is None or kind is None:
            raise ValueError('a raw volume stream requires an explicit size and element kind')
        volume = mv.Volume(size, kind, channels, spacing, config)
        try:
            volume.read_raw(filename)
        except BaseException:
            volume.release()
            raise
        return volume

    def save(self, volume: mv.Volume, filename: os.PathLike) -> None:
        volume.write_raw(filename)


class PytorchVolumeIO(VolumeIO):
    """
    Volume IO protocol for storing a volume in a pytorch file. The voxel
    tensor is stored along with the element kind, spacing and photometric
    interpretation.
    """
    name = 'torch'
    extensions = ('.pth', '.pt')

    def load(self, filename: os.PathLike, config: mv.VolumeConfig | None = None) -> mv.Volume:
        """
        Read a volume from a pytorch file.

        Args:
            filename (PathLike): The path to the pytorch file to read.
            config (VolumeConfig, optional): Storage configuration.

        Returns:
            Volume: The loaded volume.
        """
        items = torch.load(filename)
        if 'v' not in items or 'k' not in items:
            raise RuntimeError(f'could not find `v` or `k` data keys in {filename}')
        return mv.Volume.from_tensor(items['v'], items['k'],
                                     spacing=items.get('s', (1.0, 1.0, 1.0)),
                                     photometric_inverse=bool(items.get('p', False)),
                                     config=config)

    def save(self, volume: mv.Volume, filename: os.PathLike) -> None:
        """
        Write a volume to a pytorch file.

        Args:
            volume (Volume): The volume to save.
            filename (PathLike): The path to the pytorch file to write.
        """
        torch.save({
            'v': volume.tensor(),
            'k': volume.kind.label,
            's': list(volume.spacing),
            'p': volume.photometric_inverse,
        }, filename)


class NiftiVolumeIO(VolumeIO):
    """
    Volume IO protocol for nifti files. The voxel-to-world affine is a
    scaling by the volume spacing.
    """
    name = 'nifti'
    extensions = ('.nii.gz', '.nii')

    def __init__(self) -> None:
        try:
            import nibabel as nib
        except ImportError:
            raise ImportError('the `nibabel` python package must be installed for nifti volume IO')
        self.nib = nib

    def load(self, filename: os.PathLike, config: mv.VolumeConfig | None = None) -> mv.Volume:
        """
        Read a volume from a nifti file.

        Args:
            filename (PathLike): The path to the nifti file to read.
            config (VolumeConfig, optional): Storage configuration.

        Returns:
            Volume: The loaded volume.
        """
        nii = self.nib.load(filename)
        array = np.asanyarray(nii.dataobj)
        kind = mv.cast_element_kind(array.dtype)

        features = kind.to_tensor(array)
        if features.ndim == 4:
            features = features.moveaxis(-1, 0)

        spacing = tuple(float(s) for s in nii.header['pixdim'][1:4])
        if min(spacing) <= 0:
            logger.warning('nifti header of %s has a non-positive spacing %s, using 1', filename, spacing)
            spacing = (1.0, 1.0, 1.0)

        return mv.Volume.from_tensor(features, kind, spacing=spacing, config=config)

    def save(self, volume: mv.Volume, filename: os.PathLike) -> None:
        """
        Write a volume to a nifti file.

        Args:
            volume (Volume): The volume to save.
            filename (PathLike): The path to the nifti file to write.
        """
        array = volume.kind.to_numpy(volume.tensor().movedim(0, -1))
        if array.shape[-1] == 1:
            array = np.squeeze(array, -1)

        affine = np.diag([*volume.spacing, 1.0])
        nii = self.nib.Nifti1Image(array, affine)

        # set spatial and temporal spacing
        nii.header['pixdim'][:] = 1
        nii.header['pixdim'][1:4] = volume.spacing

        # set units to mm and seconds
        nii.header['xyzt_units'] = np.asarray(2, dtype=np.uint8) | np.asarray(8, dtype=np.uint8)

        nii.set_sform(affine, 1)
        nii.set_qform(affine, 1)
        self.nib.save(nii, filename)


# enabled volume IO protocol classes
volume_io_protocols = [
    RawVolumeIO,
    PytorchVolumeIO,
    NiftiVolumeIO,
]
