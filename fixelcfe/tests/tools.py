"""Helpers generating small synthetic fixel datasets for the tests."""

import os

import nibabel as nib
import numpy as np


def write_fixel_template(directory, num_fixels):
    """Write a fixel directory with one fixel per voxel along the x axis.

    Every fixel points along x; voxel ``(x, 0, 0)`` holds fixel ``x``.
    """
    os.makedirs(directory, exist_ok=True)
    index = np.zeros((num_fixels, 1, 1, 2), dtype=np.int32)
    index[:, 0, 0, 0] = 1
    index[:, 0, 0, 1] = np.arange(num_fixels)
    directions = np.zeros((num_fixels, 3, 1), dtype=np.float32)
    directions[:, 0, 0] = 1.0
    nib.save(nib.Nifti1Image(index, np.eye(4)), os.path.join(directory, "index.nii.gz"))
    nib.save(nib.Nifti1Image(directions, np.eye(4)), os.path.join(directory, "directions.nii.gz"))
    return directory


def write_fixel_data(path, values):
    data = np.asarray(values, dtype=np.float32).reshape(-1, 1, 1)
    nib.save(nib.Nifti1Image(data, np.eye(4)), path)
    return path


def line_streamline(start, stop, step=0.25):
    """Points along the x axis from ``start`` to ``stop`` (voxel units)."""
    x = np.arange(start, stop + step / 2, step)
    return np.column_stack([x, np.zeros_like(x), np.zeros_like(x)])


def write_tractogram(path, streamlines):
    tractogram = nib.streamlines.Tractogram(streamlines, affine_to_rasmm=np.eye(4))
    nib.streamlines.save(tractogram, path)
    return path


def chain_graph_file(path, num_fixels, weight=1.0):
    """Connectivity file linking each fixel to itself and its chain neighbours."""
    with open(path, "w") as f:
        for fixel in range(num_fixels):
            neighbours = [n for n in (fixel - 1, fixel, fixel + 1) if 0 <= n < num_fixels]
            f.write(",".join(f"{n}:{weight}" for n in neighbours) + "\n")
    return path


def generate_fixel_dataset(directory, num_subjects, num_fixels, effect=None, seed=0):
    """Template, per-subject data files, subject list and connectivity matrix.

    ``effect`` (one value per fixel) is added to the second half of the
    subjects; the design has an intercept and a group column.
    """
    rng = np.random.RandomState(seed)
    write_fixel_template(directory, num_fixels)
    effect = np.zeros(num_fixels) if effect is None else np.asarray(effect, dtype=np.float64)
    group = np.array([0.0] * (num_subjects // 2) + [1.0] * (num_subjects - num_subjects // 2))
    names = []
    for subject in range(num_subjects):
        name = f"sub-{subject + 1:02d}.nii.gz"
        values = 1.0 + 0.1 * rng.randn(num_fixels) + group[subject] * effect
        write_fixel_data(os.path.join(directory, name), values)
        names.append(name)

    paths = {
        "fixel_directory": directory,
        "subjects": os.path.join(directory, "files.txt"),
        "design": os.path.join(directory, "design.txt"),
        "contrast": os.path.join(directory, "contrast.txt"),
        "connectivity": os.path.join(directory, "matrix.txt"),
    }
    with open(paths["subjects"], "w") as f:
        f.write("\n".join(names) + "\n")
    np.savetxt(paths["design"], np.column_stack([np.ones(num_subjects), group]), fmt="%g")
    with open(paths["contrast"], "w") as f:
        f.write("0 1\n")
    chain_graph_file(paths["connectivity"], num_fixels)
    return paths
