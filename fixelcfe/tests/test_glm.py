import os
import tempfile

import numpy as np
import pytest
from scipy import stats

from fixelcfe.io.imports import ArraySubjectImport, CohortDataImport
from fixelcfe.statistics.glm import (GLMTestFixed,
                                     GLMTestVariable,
                                     Hypothesis,
                                     all_stats,
                                     check_design,
                                     load_hypotheses,
                                     make_glm_test,
                                     mask_shuffling_matrix)
from fixelcfe.statistics.shuffle import Shuffler
from fixelcfe.utils.exceptions import ConsistencyError, StatisticalError


def _two_groups(num_subjects=10, num_fixels=6, seed=0):
    rng = np.random.RandomState(seed)
    group = np.array([0.0] * (num_subjects // 2) + [1.0] * (num_subjects - num_subjects // 2))
    design = np.column_stack([np.ones(num_subjects), group])
    data = rng.randn(num_subjects, num_fixels) + np.outer(group, np.linspace(0, 2, num_fixels))
    return design, data, group


def test_one_sample_t():
    y = np.array([[1.0], [2.0], [3.0], [4.0]])
    glm = GLMTestFixed(y, np.ones((4, 1)), [Hypothesis([1.0])])
    t = glm(np.eye(4))
    expected = stats.ttest_1samp(y[:, 0], 0.0).statistic
    np.testing.assert_allclose(t[0, 0], expected)
    np.testing.assert_allclose(all_stats(glm).betas[0, 0], 2.5)


def test_two_sample_t():
    design, data, group = _two_groups()
    glm = GLMTestFixed(data, design, [Hypothesis([0.0, 1.0])])
    t = glm(np.eye(design.shape[0]))[:, 0]
    expected = stats.ttest_ind(data[group == 1], data[group == 0]).statistic
    np.testing.assert_allclose(t, expected)


def test_negative_contrast_flips_sign():
    design, data, _ = _two_groups()
    positive = GLMTestFixed(data, design, [Hypothesis([0.0, 1.0])])(np.eye(10))
    negative = GLMTestFixed(data, design, [Hypothesis([0.0, -1.0])])(np.eye(10))
    np.testing.assert_allclose(negative, -positive)


def test_F_equals_t_squared():
    design, data, _ = _two_groups()
    hypotheses = [Hypothesis([0.0, 1.0]), Hypothesis([[0.0, 1.0]], is_F=True)]
    glm = GLMTestFixed(data, design, hypotheses)
    rng = np.random.RandomState(2)
    shuffle = np.eye(10)[rng.permutation(10)]
    result = glm(shuffle)
    np.testing.assert_allclose(result[:, 1], result[:, 0] ** 2)


def test_F_matches_anova():
    rng = np.random.RandomState(4)
    labels = np.repeat([0, 1, 2], 5)
    design = np.column_stack([labels == k for k in range(3)]).astype(float)
    data = rng.randn(15, 3) + labels[:, None]
    contrast = np.array([[1.0, -1.0, 0.0], [0.0, 1.0, -1.0]])
    glm = GLMTestFixed(data, design, [Hypothesis(contrast, is_F=True)])
    F = glm(np.eye(15))[:, 0]
    for fixel in range(3):
        expected = stats.f_oneway(*(data[labels == k, fixel] for k in range(3))).statistic
        np.testing.assert_allclose(F[fixel], expected)


def test_variable_matches_fixed_without_nans():
    design, data, _ = _two_groups()
    hypotheses = [Hypothesis([0.0, 1.0]), Hypothesis([[1.0, 0.0], [0.0, 1.0]], is_F=True)]
    fixed = GLMTestFixed(data, design, hypotheses)
    variable = GLMTestVariable(data, design, hypotheses)
    shuffler = Shuffler(10, 5, "both", seed=1)
    for shuffle in shuffler:
        np.testing.assert_allclose(variable(shuffle.matrix()), fixed(shuffle.matrix()), atol=1e-10)


def test_variable_excludes_nan_subjects():
    design, data, _ = _two_groups()
    data[0, 2] = np.nan
    glm = make_glm_test(data, design, [Hypothesis([0.0, 1.0])])
    assert isinstance(glm, GLMTestVariable)
    t = glm(np.eye(10))
    assert np.all(np.isfinite(t))

    reduced = GLMTestFixed(data[1:, 2:3], design[1:], [Hypothesis([0.0, 1.0])])
    np.testing.assert_allclose(t[2, 0], reduced(np.eye(9))[0, 0])


def test_variable_extra_column():
    design, data, group = _two_groups(num_fixels=3)
    rng = np.random.RandomState(9)
    covariate = rng.randn(10, 3)
    column = CohortDataImport([ArraySubjectImport(row) for row in covariate])
    hypothesis = Hypothesis([0.0, 1.0, 0.0])
    glm = make_glm_test(data, design, [hypothesis], [column])
    t = glm(np.eye(10))
    for fixel in range(3):
        full = np.column_stack([design, covariate[:, fixel]])
        expected = GLMTestFixed(data[:, fixel:fixel + 1], full, [hypothesis])(np.eye(10))
        np.testing.assert_allclose(t[fixel], expected[0])


def test_zero_variance_gives_zero():
    data = np.column_stack([np.full(6, 3.0), np.arange(6.0)])
    glm = GLMTestFixed(data, np.ones((6, 1)), [Hypothesis([1.0])])
    t = glm(np.eye(6))
    assert t[0, 0] == 0.0
    assert np.isfinite(t[1, 0])


def test_no_degrees_of_freedom_gives_zero():
    design = np.eye(3)
    glm = GLMTestFixed(np.random.RandomState(0).randn(3, 2), design, [Hypothesis([1.0, 0.0, 0.0])])
    np.testing.assert_array_equal(glm(np.eye(3)), 0.0)


def test_variable_rank_deficient_after_masking_gives_zero():
    group = np.array([0.0, 0.0, 1.0, 1.0, 1.0])
    design = np.column_stack([np.ones(5), group])
    data = np.column_stack([[np.nan, np.nan, 1.0, 2.0, 4.0], [1.0, 3.0, 2.0, 5.0, 7.0]])
    glm = make_glm_test(data, design, [Hypothesis([0.0, 1.0])])
    assert isinstance(glm, GLMTestVariable)
    for shuffle in (np.eye(5), np.diag([1.0, 1.0, -1.0, 1.0, 1.0])):
        t = glm(shuffle)
        assert t[0, 0] == 0.0
        assert np.isfinite(t[1, 0])
    assert glm(np.eye(5))[1, 0] != 0.0


def test_mask_shuffling_matrix():
    shuffle = np.eye(4)[[1, 0, 2, 3]]
    masked = mask_shuffling_matrix(shuffle, np.array([True, True, False, True]))
    np.testing.assert_array_equal(masked, np.eye(3)[[1, 0, 2]])

    # Excluded subject 2 lands in row 0; row 2 takes its place
    shuffle = np.eye(4)[[2, 0, 1, 3]]
    masked = mask_shuffling_matrix(shuffle, np.array([True, True, False, True]))
    np.testing.assert_array_equal(masked, np.eye(3))

    signs = np.diag([1.0, -1.0, 1.0, -1.0]) @ np.eye(4)[[2, 0, 1, 3]]
    masked = mask_shuffling_matrix(signs, np.array([True, True, False, True]))
    np.testing.assert_array_equal(np.abs(masked), np.eye(3))
    np.testing.assert_array_equal(np.diag(masked), [-1.0, 1.0, -1.0])

    shuffle = np.eye(4)[[0, 2, 2, 3]]
    with pytest.raises(StatisticalError):
        mask_shuffling_matrix(shuffle, np.array([True, True, False, True]))


def test_hypothesis_validation():
    with pytest.raises(StatisticalError):
        Hypothesis([[1.0, 0.0], [0.0, 1.0]])
    with pytest.raises(StatisticalError):
        Hypothesis([0.0, 0.0])
    assert Hypothesis([1.0, 0.0], index=1).name == "t2"
    assert Hypothesis([[1.0, 0.0]], is_F=True).name == "F1"


def test_partition_splits_columns():
    design = np.column_stack([np.ones(5), np.arange(5.0), np.arange(5.0) ** 2])
    partition = Hypothesis([0.0, 1.0, 0.0]).partition(design)
    assert partition.X.shape == (5, 1)
    assert partition.Z.shape == (5, 2)
    np.testing.assert_allclose(partition.Rz @ partition.Z, 0.0, atol=1e-10)


def test_load_hypotheses():
    with tempfile.TemporaryDirectory() as temp_dir:
        contrast = os.path.join(temp_dir, "contrast.txt")
        ftests = os.path.join(temp_dir, "ftests.txt")
        with open(contrast, "w") as f:
            f.write("0 1 0\n0 0 1\n")
        with open(ftests, "w") as f:
            f.write("1 1\n")
        hypotheses = load_hypotheses(contrast, ftests)
        assert [h.name for h in hypotheses] == ["t1", "t2", "F1"]
        assert hypotheses[2].matrix.shape == (2, 3)
        assert hypotheses[2].rank == 2

        assert [h.name for h in load_hypotheses(contrast, ftests, fonly=True)] == ["F1"]
        with pytest.raises(StatisticalError):
            load_hypotheses(contrast, fonly=True)

        with open(ftests, "w") as f:
            f.write("1 1 0\n")
        with pytest.raises(ConsistencyError):
            load_hypotheses(contrast, ftests)


def test_design_checks():
    design, data, _ = _two_groups()
    assert np.isfinite(check_design(design))
    with pytest.raises(ConsistencyError):
        GLMTestFixed(data, design, [Hypothesis([1.0, 0.0, 0.0])])
    with pytest.raises(ConsistencyError):
        GLMTestFixed(data[:5], design, [Hypothesis([0.0, 1.0])])


def test_all_stats_effect_sizes():
    design, data, group = _two_groups()
    glm = GLMTestFixed(data, design, [Hypothesis([0.0, 1.0])])
    default = all_stats(glm)
    difference = data[group == 1].mean(axis=0) - data[group == 0].mean(axis=0)
    np.testing.assert_allclose(default.abs_effect[:, 0], difference)
    np.testing.assert_allclose(default.std_effect[:, 0], difference / default.stdev)
    assert default.cond is None
