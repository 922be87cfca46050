import json
import os
import tempfile

import nibabel as nib
import numpy as np
import pytest

from fixelcfe.connectivity.matrix import IndexRemapper
from fixelcfe.io.imports import (ArraySubjectImport,
                                 CohortDataImport,
                                 DataContext,
                                 FileSubjectImport)
from fixelcfe.io.readers import load_design_matrix, load_matrix_file, load_subject_list
from fixelcfe.io.writers import FixelOutputWriter
from fixelcfe.utils.exceptions import ConsistencyError
from fixelcfe.tests.tools import write_fixel_data, write_fixel_template


def _write(path, text):
    with open(path, "w") as f:
        f.write(text)
    return path


def test_load_matrix_file_delimiters():
    with tempfile.TemporaryDirectory() as temp_dir:
        whitespace = _write(os.path.join(temp_dir, "a.txt"), "# design\n1 0.5\n1  -0.5 \n")
        comma = _write(os.path.join(temp_dir, "b.csv"), "1,0.5\n1,-0.5\n")
        np.testing.assert_array_equal(load_matrix_file(whitespace), [[1, 0.5], [1, -0.5]])
        np.testing.assert_array_equal(load_matrix_file(comma), [[1, 0.5], [1, -0.5]])
        assert load_matrix_file(_write(os.path.join(temp_dir, "c.txt"), "0 1\n")).shape == (1, 2)


def test_load_matrix_file_errors():
    with tempfile.TemporaryDirectory() as temp_dir:
        with pytest.raises(FileNotFoundError):
            load_matrix_file(os.path.join(temp_dir, "missing.txt"))
        with pytest.raises(ConsistencyError):
            load_matrix_file(_write(os.path.join(temp_dir, "empty.txt"), ""))
        with pytest.raises(ConsistencyError):
            load_matrix_file(_write(os.path.join(temp_dir, "text.txt"), "a b\n1 2\n"))
        with pytest.raises(ConsistencyError):
            load_design_matrix(_write(os.path.join(temp_dir, "nan.txt"), "1 nan\n1 2\n"))


def test_load_subject_list():
    with tempfile.TemporaryDirectory() as temp_dir:
        path = _write(os.path.join(temp_dir, "files.txt"), "# subjects\nsub-01.nii.gz\n\n  sub-02.nii.gz  \n")
        assert load_subject_list(path) == ["sub-01.nii.gz", "sub-02.nii.gz"]
        with pytest.raises(ConsistencyError):
            load_subject_list(_write(os.path.join(temp_dir, "none.txt"), "\n# nothing\n"))


def test_data_context_resolution():
    with tempfile.TemporaryDirectory() as temp_dir:
        write_fixel_data(os.path.join(temp_dir, "sub.nii.gz"), [1.0, 2.0])
        context = DataContext(temp_dir)
        assert str(context.resolve("sub.nii.gz")) == os.path.join(temp_dir, "sub.nii.gz")
        with pytest.raises(FileNotFoundError):
            context.resolve("other.nii.gz")


def test_file_import_with_mask():
    with tempfile.TemporaryDirectory() as temp_dir:
        write_fixel_data(os.path.join(temp_dir, "sub.nii.gz"), [1.0, 2.0, 3.0, 4.0])
        remapper = IndexRemapper(np.array([True, False, True, True]))
        subject = FileSubjectImport("sub.nii.gz", DataContext(temp_dir), remapper)
        assert subject.size() == 3
        assert subject[1] == 3.0
        with pytest.raises(ConsistencyError):
            FileSubjectImport("sub.nii.gz", DataContext(temp_dir), IndexRemapper(5))


def test_cohort_import():
    cohort = CohortDataImport([ArraySubjectImport([1.0, 2.0]), ArraySubjectImport([3.0, np.nan])])
    assert len(cohort) == 2
    assert cohort.size() == 2
    np.testing.assert_array_equal(cohort.fill_row(0), [1.0, 2.0])
    np.testing.assert_array_equal(cohort(0), [1.0, 3.0])
    assert cohort.matrix().shape == (2, 2)
    assert not cohort.all_finite()
    with pytest.raises(ConsistencyError):
        CohortDataImport([ArraySubjectImport([1.0]), ArraySubjectImport([1.0, 2.0])])


def test_cohort_from_file():
    with tempfile.TemporaryDirectory() as temp_dir:
        for i in range(3):
            write_fixel_data(os.path.join(temp_dir, f"sub-{i}.nii.gz"), [i, i + 0.5])
        subjects = _write(os.path.join(temp_dir, "files.txt"), "sub-0.nii.gz\nsub-1.nii.gz\nsub-2.nii.gz\n")
        cohort = CohortDataImport.from_file(subjects, DataContext(temp_dir))
        np.testing.assert_array_equal(cohort(1), [0.5, 1.5, 2.5])


def test_output_writer():
    with tempfile.TemporaryDirectory() as temp_dir:
        template = write_fixel_template(os.path.join(temp_dir, "template"), 4)
        output_dir = os.path.join(temp_dir, "out")
        remapper = IndexRemapper(np.array([True, True, False, True]))
        writer = FixelOutputWriter(output_dir, remapper, {"CFE_h": 3.0})
        path = writer.write("tvalue", np.array([1.0, 2.0, 3.0]))

        data = np.asanyarray(nib.load(str(path)).dataobj).reshape(-1)
        np.testing.assert_array_equal(data[[0, 1, 3]], [1.0, 2.0, 3.0])
        assert np.isnan(data[2])
        with open(os.path.join(output_dir, "tvalue.json")) as f:
            sidecar = json.load(f)
        assert sidecar["CFE_h"] == 3.0
        assert "CreationTime" in sidecar

        vector = writer.write_vector("null_dist", np.arange(5.0))
        np.testing.assert_array_equal(np.load(vector), np.arange(5.0))
        with open(os.path.join(output_dir, "null_dist.json")) as f:
            assert json.load(f)["Shape"] == [5]

        writer.copy_template(template)
        assert os.path.isfile(os.path.join(output_dir, "index.nii.gz"))
        assert os.path.isfile(os.path.join(output_dir, "directions.nii.gz"))

        with pytest.raises(ConsistencyError):
            writer.write("bad", np.ones(4))
