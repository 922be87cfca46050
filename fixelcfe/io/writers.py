"""File writers for fixel-wise outputs."""

import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

import nibabel as nib
import numpy as np

from fixelcfe.config.loader import make_serializable
from fixelcfe.connectivity.mapping import find_fixel_file
from fixelcfe.connectivity.matrix import IndexRemapper
from fixelcfe.utils.exceptions import ConsistencyError

logger = logging.getLogger(__name__)


def save_nifti_with_sidecar(
    img: nib.Nifti1Image,
    output_path: Path,
    metadata: Dict[str, Any]
) -> None:
    """Save NIfTI image with JSON sidecar.

    Args:
        img: NIfTI image to save
        output_path: Path for output NIfTI file
        metadata: Dictionary of metadata to save in JSON sidecar
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    nib.save(img, output_path)

    metadata_with_timestamp = make_serializable(dict(metadata))
    metadata_with_timestamp['CreationTime'] = datetime.now().isoformat()

    # x.nii.gz -> x.json
    sidecar_path = output_path.with_suffix('').with_suffix('.json')
    with sidecar_path.open('w') as f:
        json.dump(metadata_with_timestamp, f, indent=2)


def save_matrix_with_sidecar(
    matrix: np.ndarray,
    output_path: Path,
    metadata: Dict[str, Any]
) -> None:
    """Save NumPy array with JSON sidecar.

    Args:
        matrix: NumPy array to save
        output_path: Path for output .npy file
        metadata: Dictionary of metadata to save in JSON sidecar
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    np.save(output_path, matrix)

    metadata_with_info = make_serializable(dict(metadata))
    metadata_with_info['Shape'] = list(matrix.shape)
    metadata_with_info['Dtype'] = str(matrix.dtype)
    metadata_with_info['CreationTime'] = datetime.now().isoformat()

    sidecar_path = output_path.with_suffix('.json')
    with sidecar_path.open('w') as f:
        json.dump(metadata_with_info, f, indent=2)


class FixelOutputWriter:
    """Write per-fixel result arrays into an output fixel directory.

    Values are given in mask-internal order and expanded to the full
    template, with NaN for fixels outside the mask.

    Args:
        output_dir: Output directory (created if needed).
        remapper: Mapping between template and mask-internal fixel ids.
        metadata: Entries added to every JSON sidecar.
    """

    def __init__(self, output_dir: Union[str, Path], remapper: IndexRemapper,
                 metadata: Optional[Dict[str, Any]] = None):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.remapper = remapper
        self.metadata = dict(metadata or {})

    def expand(self, values: np.ndarray) -> np.ndarray:
        values = np.asarray(values, dtype=np.float64).reshape(-1)
        if values.size != self.remapper.num_internal:
            raise ConsistencyError(
                f"Output has {values.size} values; expected {self.remapper.num_internal} fixels"
            )
        full = np.full(self.remapper.num_external, np.nan)
        full[self.remapper.i2e(np.arange(self.remapper.num_internal))] = values
        return full

    def write(self, name: str, values: np.ndarray,
              metadata: Optional[Dict[str, Any]] = None) -> Path:
        """Save one value per fixel as ``<name>.nii.gz`` (N x 1 x 1)."""
        data = self.expand(values).astype(np.float32).reshape(-1, 1, 1)
        img = nib.Nifti1Image(data, affine=np.eye(4))
        output_path = self.output_dir / f"{name}.nii.gz"
        save_nifti_with_sidecar(img, output_path, {**self.metadata, **(metadata or {})})
        logger.debug(f"Saved {output_path.name}")
        return output_path

    def write_vector(self, name: str, values: np.ndarray,
                     metadata: Optional[Dict[str, Any]] = None) -> Path:
        """Save an array that is not indexed by fixel (e.g. a null distribution)."""
        output_path = self.output_dir / f"{name}.npy"
        save_matrix_with_sidecar(np.asarray(values), output_path, {**self.metadata, **(metadata or {})})
        logger.debug(f"Saved {output_path.name}")
        return output_path

    def copy_template(self, fixel_directory: Union[str, Path]) -> None:
        """Copy the index and directions images so the output is a fixel directory."""
        for stem in ("index", "directions"):
            source = find_fixel_file(fixel_directory, stem)
            destination = self.output_dir / source.name
            if source.resolve() != destination.resolve():
                shutil.copyfile(source, destination)
