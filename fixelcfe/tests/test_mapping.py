import os
import tempfile

import numpy as np
import pytest

from fixelcfe.connectivity.mapping import (FixelTemplate,
                                           StreamlineMapper,
                                           find_fixel_file,
                                           generate,
                                           load_fixel_data_file)
from fixelcfe.utils.exceptions import ConsistencyError
from fixelcfe.tests.tools import line_streamline, write_fixel_data, write_fixel_template


def test_template_from_directory():
    with tempfile.TemporaryDirectory() as temp_dir:
        write_fixel_template(temp_dir, 6)
        template = FixelTemplate.from_directory(temp_dir)
    assert template.num_fixels == 6
    assert template.shape == (6, 1, 1)
    assert template.lookup((4, 0, 0)) == (1, 4)
    np.testing.assert_allclose(template.positions()[:, 0], np.arange(6))


def test_find_fixel_file_missing():
    with tempfile.TemporaryDirectory() as temp_dir:
        with pytest.raises(FileNotFoundError):
            find_fixel_file(temp_dir, "index")


def test_template_inconsistent_index():
    index = np.zeros((2, 1, 1, 2))
    index[:, 0, 0, 0] = 2
    with pytest.raises(ConsistencyError):
        FixelTemplate(index, np.ones((3, 3)), np.eye(4))


def _template(num_fixels, mask=None):
    index = np.zeros((num_fixels, 1, 1, 2), dtype=np.int64)
    index[:, 0, 0, 0] = 1
    index[:, 0, 0, 1] = np.arange(num_fixels)
    directions = np.tile([1.0, 0.0, 0.0], (num_fixels, 1))
    return FixelTemplate(index, directions, np.eye(4), mask)


def test_mapper_aligned_streamline():
    mapper = StreamlineMapper(_template(6))
    assert mapper(line_streamline(0.0, 3.0)) == [0, 1, 2, 3]


def test_mapper_angular_threshold():
    mapper = StreamlineMapper(_template(6), angular_threshold=30.0)
    across = np.column_stack([np.full(5, 1.0), np.linspace(-0.4, 0.4, 5), np.zeros(5)])
    assert mapper(across) == []
    diagonal = np.column_stack([np.linspace(0, 2, 9), np.linspace(0, 0.4, 9), np.zeros(9)])
    assert mapper(diagonal) == [0, 1, 2]


def test_mapper_respects_mask():
    mask = np.array([True, True, False, True, True, True])
    mapper = StreamlineMapper(_template(6, mask))
    assert mapper(line_streamline(0.0, 4.0)) == [0, 1, 3, 4]


def test_mapper_degenerate_streamlines():
    mapper = StreamlineMapper(_template(6))
    assert mapper(np.zeros((1, 3))) == []
    assert mapper(line_streamline(20.0, 25.0)) == []


def test_generate_counts():
    streamlines = [line_streamline(0.0, 2.0), line_streamline(1.0, 3.0), line_streamline(0.0, 3.0)]
    raw = generate(_template(5), streamlines, n_jobs=2, batch_size=1)
    assert [adjacency.total_visits for adjacency in raw] == [2, 3, 3, 2, 0]
    assert dict(raw[1].items()) == {0: 2, 1: 3, 2: 3, 3: 2}


def test_load_fixel_data_formats():
    values = np.array([0.5, 1.5, 2.5])
    with tempfile.TemporaryDirectory() as temp_dir:
        nifti = write_fixel_data(os.path.join(temp_dir, "data.nii.gz"), values)
        np.testing.assert_allclose(load_fixel_data_file(nifti), values)
        npy = os.path.join(temp_dir, "data.npy")
        np.save(npy, values)
        np.testing.assert_allclose(load_fixel_data_file(npy), values)
        text = os.path.join(temp_dir, "data.txt")
        np.savetxt(text, values)
        np.testing.assert_allclose(load_fixel_data_file(text), values)
