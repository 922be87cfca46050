"""Fixel template lookup and streamline-to-fixel assignment."""

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import nibabel as nib
import numpy as np
from nibabel.affines import apply_affine

from fixelcfe.utils.exceptions import ConsistencyError

logger = logging.getLogger(__name__)


def find_fixel_file(fixel_directory: Union[str, Path], stem: str) -> Path:
    """Locate ``<stem>.nii`` or ``<stem>.nii.gz`` inside a fixel directory.

    Raises:
        FileNotFoundError: If no such image exists.
    """
    fixel_directory = Path(fixel_directory)
    for suffix in (".nii.gz", ".nii"):
        candidate = fixel_directory / f"{stem}{suffix}"
        if candidate.is_file():
            return candidate
    raise FileNotFoundError(
        f"Could not find {stem} image (.nii or .nii.gz) in fixel directory {fixel_directory}"
    )


def load_fixel_data_file(path: Union[str, Path]) -> np.ndarray:
    """Load a one-value-per-fixel data file as a 1D float64 array.

    NIfTI images must have all dimensions beyond the first of size one;
    ``.npy`` and text files must hold a single vector.
    """
    path = Path(path)
    name = path.name
    if name.endswith(".nii") or name.endswith(".nii.gz"):
        img = nib.load(str(path))
        data = np.asanyarray(img.dataobj)
        if any(size > 1 for size in data.shape[1:]):
            raise ConsistencyError(
                f'Image file "{path}" does not contain fixel data (wrong dimensions {data.shape})'
            )
        return data.reshape(-1).astype(np.float64)
    if name.endswith(".npy"):
        return np.load(path).reshape(-1).astype(np.float64)
    return np.loadtxt(path, dtype=np.float64, ndmin=1).reshape(-1)


class FixelTemplate:
    """Coordinate lookup for a fixel template.

    Args:
        index: Integer array (X, Y, Z, 2); ``index[x, y, z]`` holds the number
            of fixels in the voxel and the id of its first fixel.
        directions: Unit direction of every fixel, shape (N, 3).
        affine: Voxel to scanner transform (4, 4).
        mask: Optional boolean array (N,) of fixels allowed to receive
            streamlines.
    """

    def __init__(self, index: np.ndarray, directions: np.ndarray,
                 affine: np.ndarray, mask: Optional[np.ndarray] = None):
        index = np.asarray(index)
        if index.ndim != 4 or index.shape[3] != 2:
            raise ConsistencyError(
                f"Fixel index image must have shape (X, Y, Z, 2), got {index.shape}"
            )
        self.index = index.astype(np.int64)
        self.directions = np.asarray(directions, dtype=np.float64).reshape(-1, 3)
        self.affine = np.asarray(affine, dtype=np.float64)

        counts = self.index[..., 0]
        if int(counts.sum()) != self.num_fixels:
            raise ConsistencyError(
                f"Fixel index image accounts for {int(counts.sum())} fixels but "
                f"{self.num_fixels} fixel directions were provided"
            )

        if mask is None:
            mask = np.ones(self.num_fixels, dtype=bool)
        mask = np.asarray(mask, dtype=bool).reshape(-1)
        if mask.size != self.num_fixels:
            raise ConsistencyError(
                f"Fixel mask has {mask.size} entries; template has {self.num_fixels} fixels"
            )
        self.mask = mask

    @classmethod
    def from_directory(cls, fixel_directory: Union[str, Path],
                       mask: Optional[np.ndarray] = None) -> "FixelTemplate":
        """Load the index and directions images of a fixel directory."""
        index_img = nib.load(str(find_fixel_file(fixel_directory, "index")))
        directions_img = nib.load(str(find_fixel_file(fixel_directory, "directions")))
        index = np.asanyarray(index_img.dataobj)
        directions = np.asanyarray(directions_img.dataobj)
        template = cls(index, directions, index_img.affine, mask)
        logger.info(f"Number of fixels in template: {template.num_fixels}")
        return template

    @property
    def num_fixels(self) -> int:
        return int(self.directions.shape[0])

    @property
    def shape(self) -> Tuple[int, int, int]:
        return tuple(self.index.shape[:3])

    def lookup(self, voxel: Sequence[int]) -> Tuple[int, int]:
        """Return ``(fixel count, first fixel id)`` for a voxel."""
        x, y, z = voxel
        count, offset = self.index[x, y, z]
        return int(count), int(offset)

    def positions(self) -> np.ndarray:
        """Scanner-space position of each fixel (the centre of its voxel)."""
        positions = np.zeros((self.num_fixels, 3), dtype=np.float64)
        voxels = np.argwhere(self.index[..., 0] > 0)
        if voxels.size:
            scanner = apply_affine(self.affine, voxels)
            for voxel, position in zip(voxels, scanner):
                count, offset = self.lookup(voxel)
                positions[offset:offset + count] = position
        return positions


class StreamlineMapper:
    """Assign the segments of a streamline to template fixels.

    For every voxel a streamline traverses, its mean tangent is compared to
    the directions of the fixels in that voxel; the best-aligned fixel is
    selected if it lies inside the template mask and is within the angular
    threshold.

    Args:
        template: Fixel template.
        angular_threshold: Maximum angle (degrees) between tangent and fixel.
    """

    def __init__(self, template: FixelTemplate, angular_threshold: float = 45.0):
        self.template = template
        self.angular_threshold = angular_threshold
        self.angular_threshold_dp = np.cos(np.deg2rad(angular_threshold))
        self._inverse_affine = np.linalg.inv(template.affine)

    def __call__(self, streamline: np.ndarray) -> List[int]:
        points = np.asarray(streamline, dtype=np.float64)
        if points.ndim != 2 or points.shape[0] < 2:
            return []

        tangents = np.gradient(points, axis=0)
        lengths = np.linalg.norm(tangents, axis=1)
        valid = lengths > 0
        voxels = np.rint(apply_affine(self._inverse_affine, points)).astype(np.int64)
        valid &= np.all((voxels >= 0) & (voxels < np.array(self.template.shape)), axis=1)
        if not np.any(valid):
            return []
        tangents = tangents[valid] / lengths[valid, None]
        voxels = voxels[valid]

        # Mean tangent per voxel, with segments sign-aligned to the first
        #   tangent seen in that voxel
        unique_voxels, first, inverse = np.unique(
            voxels, axis=0, return_index=True, return_inverse=True
        )
        inverse = inverse.reshape(-1)
        reference = tangents[first][inverse]
        signs = np.where(np.sum(tangents * reference, axis=1) < 0.0, -1.0, 1.0)
        summed = np.zeros((unique_voxels.shape[0], 3))
        np.add.at(summed, inverse, tangents * signs[:, None])
        norms = np.linalg.norm(summed, axis=1)

        fixels = []
        for voxel, direction, norm in zip(unique_voxels, summed, norms):
            if norm == 0.0:
                continue
            count, offset = self.template.lookup(voxel)
            if not count:
                continue
            dp = np.abs(self.template.directions[offset:offset + count] @ (direction / norm))
            closest = int(np.argmax(dp))
            if dp[closest] > self.angular_threshold_dp and self.template.mask[offset + closest]:
                fixels.append(offset + closest)

        return sorted(set(fixels))

    def map_batch(self, streamlines: Sequence[np.ndarray]) -> List[List[int]]:
        return [self(streamline) for streamline in streamlines]


def load_streamlines(path: Union[str, Path]):
    """Load streamlines (TCK, TRK, ...) in scanner coordinates via nibabel."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Track file not found: {path}")
    tractogram = nib.streamlines.load(str(path))
    logger.info(f"Loaded {len(tractogram.streamlines)} streamlines from {path.name}")
    return tractogram.streamlines


def generate(template: FixelTemplate, streamlines, angular_threshold: float = 45.0,
             n_jobs: int = 1, batch_size: int = 1024, max_pending_batches: int = 8):
    """Build the raw connectivity matrix of a template from a set of streamlines.

    Returns:
        RawMatrix with one RawAdjacency per template fixel.
    """
    from fixelcfe.connectivity.matrix import ConnectivityBuilder

    mapper = StreamlineMapper(template, angular_threshold)
    builder = ConnectivityBuilder(template.num_fixels)
    builder.build(streamlines, mapper, n_jobs=n_jobs, batch_size=batch_size,
                  max_pending_batches=max_pending_batches)
    return builder.release()
