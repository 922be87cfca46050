import os
import tempfile
from collections import Counter

import numpy as np
import pytest

from fixelcfe.connectivity.matrix import (ConnectivityBuilder,
                                          ConnectivityGraph,
                                          IndexRemapper,
                                          NormAdjacency,
                                          RawAdjacency,
                                          RawMatrix,
                                          load_matrix,
                                          normalise,
                                          normalise_matrix,
                                          parse_line,
                                          save_matrix)
from fixelcfe.utils.exceptions import FormatError


def _scenario_builder():
    builder = ConnectivityBuilder(3)
    for fixels in ([0, 1], [1, 2], [0, 1, 2]):
        builder.insert(fixels)
    return builder


def test_raw_counts_three_streamlines():
    raw = _scenario_builder().release()
    assert [adjacency.total_visits for adjacency in raw] == [2, 3, 2]
    assert dict(raw[0].items()) == {0: 2, 1: 2, 2: 1}
    assert dict(raw[1].items()) == {0: 2, 1: 3, 2: 2}
    assert dict(raw[2].items()) == {0: 1, 1: 2, 2: 2}


def test_normalise_threshold_is_inclusive():
    graph = normalise_matrix(_scenario_builder().release(), 0.5)
    assert dict(graph[0].items()) == {0: 1.0, 1: 1.0, 2: 0.5}

    graph = normalise_matrix(_scenario_builder().release(), 0.6)
    assert dict(graph[0].items()) == {0: 1.0, 1: 1.0}
    np.testing.assert_allclose(graph[1].weights, [2 / 3, 1.0, 2 / 3])
    assert dict(graph[2].items()) == {1: 1.0, 2: 1.0}


def test_norm_multiplier_deferred():
    graph = normalise_matrix(_scenario_builder().release(), 0.6)
    np.testing.assert_allclose(graph[1].norm_multiplier, 1.0 / (1.0 + 4 / 3))
    # weights themselves are not rescaled
    assert graph[1].weights.max() == 1.0


def test_raw_adjacency_matches_brute_force():
    rng = np.random.RandomState(3)
    adjacency = RawAdjacency()
    expected = Counter()
    for _ in range(200):
        fixels = sorted(set(rng.randint(0, 40, size=rng.randint(1, 12)).tolist()))
        adjacency.add(fixels)
        expected.update(fixels)
    assert adjacency.indices == sorted(expected)
    assert adjacency.counts == [expected[i] for i in sorted(expected)]
    assert adjacency.total_visits == 200


def test_threshold_monotonic():
    rng = np.random.RandomState(0)
    builder = ConnectivityBuilder(20)
    for _ in range(300):
        builder.insert(sorted(set(rng.randint(0, 20, size=5).tolist())))
    raw = builder.release()
    sizes = []
    for threshold in (0.0, 0.1, 0.3, 0.6, 1.0):
        sizes.append(sum(len(normalise(adjacency, threshold)) for adjacency in raw))
    assert sizes == sorted(sizes, reverse=True)


def test_weights_bounded_and_self_connected():
    rng = np.random.RandomState(1)
    builder = ConnectivityBuilder(15)
    for _ in range(100):
        builder.insert(sorted(set(rng.randint(0, 15, size=4).tolist())))
    graph = normalise_matrix(builder.release(), 0.2)
    for fixel, adjacency in enumerate(graph):
        if not len(adjacency):
            continue
        assert np.all(adjacency.weights > 0.0)
        assert np.all(adjacency.weights <= 1.0)
        assert dict(adjacency.items())[fixel] == 1.0


def test_normalise_matrix_releases_raw():
    raw = _scenario_builder().release()
    normalise_matrix(raw, 0.5, n_jobs=2)
    assert len(raw) == 0


class _RecordingMatrix(RawMatrix):
    def __init__(self, entries):
        super().__init__()
        self.extend(entries)
        self.released = []

    def __setitem__(self, index, value):
        if value is None:
            self.released.append(index)
        super().__setitem__(index, value)


def test_normalise_matrix_frees_each_entry_in_place():
    raw = _RecordingMatrix(_scenario_builder().release())
    graph = normalise_matrix(raw, 0.5, n_jobs=1)
    assert raw.released == [0, 1, 2]
    assert len(graph) == 3
    assert all(adjacency is not None for adjacency in graph)


def test_disconnected_fixels():
    builder = ConnectivityBuilder(4)
    builder.insert([0, 1])
    graph = normalise_matrix(builder.release(), 0.1)
    np.testing.assert_array_equal(graph.disconnected(), [2, 3])
    assert graph.num_connections == 4


class _ListMapper:
    """Mapper whose streamlines are already fixel lists."""

    def map_batch(self, batch):
        return [sorted(set(fixels)) for fixels in batch]


def test_build_independent_of_threads():
    rng = np.random.RandomState(7)
    streamlines = [rng.randint(0, 30, size=rng.randint(1, 8)).tolist() for _ in range(500)]
    matrices = []
    for n_jobs in (1, 4):
        builder = ConnectivityBuilder(30)
        builder.build(streamlines, _ListMapper(), n_jobs=n_jobs, batch_size=17, max_pending_batches=3)
        matrices.append(normalise_matrix(builder.release(), 0.05, n_jobs=n_jobs))
    assert matrices[0] == matrices[1]


def test_save_load_round_trip():
    rng = np.random.RandomState(5)
    builder = ConnectivityBuilder(12)
    for _ in range(80):
        builder.insert(sorted(set(rng.randint(0, 12, size=3).tolist())))
    graph = normalise_matrix(builder.release(), 0.1)
    with tempfile.TemporaryDirectory() as temp_dir:
        path = save_matrix(graph, os.path.join(temp_dir, "matrix.txt"))
        loaded = load_matrix(path)
    assert len(loaded) == len(graph)
    for original, reloaded in zip(graph, loaded):
        np.testing.assert_array_equal(original.indices, reloaded.indices)
        np.testing.assert_array_equal(original.weights, reloaded.weights)
        assert reloaded.norm_multiplier == 1.0


def test_save_empty_line_for_disconnected():
    graph = ConnectivityGraph([NormAdjacency([0], [1.0]), NormAdjacency()])
    with tempfile.TemporaryDirectory() as temp_dir:
        path = save_matrix(graph, os.path.join(temp_dir, "matrix.txt"))
        with open(path) as f:
            assert f.read() == "0:1.0\n\n"


@pytest.mark.parametrize("line", ["0:1.0,1", "a:0.5", "0:1.0:2", "-1:0.5"])
def test_parse_line_malformed(line):
    with pytest.raises(FormatError):
        parse_line(line)


def test_load_malformed_reports_line():
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "matrix.txt")
        with open(path, "w") as f:
            f.write("0:1.0,1:0.5\n1:1.0,0:x\n")
        with pytest.raises(FormatError) as excinfo:
            load_matrix(path)
    assert excinfo.value.line_number == 1
    assert excinfo.value.entry == "0:x"


def test_load_dangling_index():
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "matrix.txt")
        with open(path, "w") as f:
            f.write("0:1.0,5:0.5\n1:1.0\n")
        with pytest.raises(FormatError):
            load_matrix(path)


def test_index_remapper():
    remapper = IndexRemapper(np.array([True, False, True, True, False]))
    assert remapper.num_external == 5
    assert remapper.num_internal == 3
    assert not remapper.is_default()
    np.testing.assert_array_equal(remapper.e2i(np.arange(5)), [0, -1, 1, 2, -1])
    np.testing.assert_array_equal(remapper.i2e(np.arange(3)), [0, 2, 3])
    assert IndexRemapper(4).is_default()


def test_load_with_remapper():
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "matrix.txt")
        with open(path, "w") as f:
            f.write("0:1.0,1:0.5,2:0.25\n0:0.5,1:1.0\n0:0.25,2:1.0\n")
        graph = load_matrix(path, IndexRemapper(np.array([True, False, True])))
    assert len(graph) == 2
    assert dict(graph[0].items()) == {0: 1.0, 1: 0.25}
    assert dict(graph[1].items()) == {0: 0.25, 1: 1.0}
