"""Fixel-fixel connectivity matrix: construction, normalisation and storage.

The matrix is held as an arena of per-fixel adjacency lists indexed by
integer fixel id. Two representations exist:

- :class:`RawAdjacency` holds integer streamline co-occurrence counts and is
  only mutated while the matrix is being built.
- :class:`NormAdjacency` holds thresholded floating-point connectivity
  values in [0, 1] plus a separate ``norm_multiplier`` that is applied when
  the weights are consumed rather than baked into them.

On disk, the matrix is a text file with one line per fixel; line ``i`` holds
comma-separated ``neighbour:value`` pairs for fixel ``i`` (empty line when
the fixel has no connections).
"""

import logging
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
from joblib import Parallel, delayed

from fixelcfe.utils.exceptions import ConnectivityError, FormatError
from fixelcfe.utils.logging import timer

logger = logging.getLogger(__name__)


class RawAdjacency:
    """Streamline co-occurrence counts of one fixel during construction.

    Attributes:
        indices: Ascending, unique neighbour fixel ids.
        counts: Number of streamlines shared with each neighbour.
        total_visits: Number of streamlines traversing this fixel.
    """

    __slots__ = ("indices", "counts", "total_visits")

    def __init__(self):
        self.indices: List[int] = []
        self.counts: List[int] = []
        self.total_visits: int = 0

    def __len__(self) -> int:
        return len(self.indices)

    def items(self) -> Iterator[Tuple[int, int]]:
        return zip(self.indices, self.counts)

    def add(self, fixels: Sequence[int]) -> None:
        """Merge the fixels traversed by one streamline into this list.

        ``fixels`` must be sorted and unique. Neighbours already present
        have their count incremented; new ones are inserted with a count of
        one at their sorted position. The existing list is extended once and
        filled from the back, so it never needs re-sorting.
        """
        if not self.indices:
            self.indices = list(fixels)
            self.counts = [1] * len(self.indices)
            self.total_visits += 1
            return

        indices = self.indices
        counts = self.counts
        old_size = len(indices)
        in_count = len(fixels)

        # First pass: increment the intersection, count what is missing
        self_index = 0
        in_index = 0
        intersection = 0
        while self_index < old_size and in_index < in_count:
            existing = indices[self_index]
            incoming = fixels[in_index]
            if existing == incoming:
                counts[self_index] += 1
                self_index += 1
                in_index += 1
                intersection += 1
            elif existing > incoming:
                in_index += 1
            else:
                self_index += 1

        num_new = in_count - intersection
        if num_new:
            indices.extend([0] * num_new)
            counts.extend([0] * num_new)

            # Second pass: back to front, shift retained entries and
            #   insert new entries at their sorted position
            self_index = old_size - 1
            in_index = in_count - 1
            out_index = old_size + num_new - 1
            while out_index > self_index and self_index >= 0 and in_index >= 0:
                existing = indices[self_index]
                incoming = fixels[in_index]
                if existing == incoming:
                    indices[out_index] = existing
                    counts[out_index] = counts[self_index]
                    self_index -= 1
                    in_index -= 1
                elif existing > incoming:
                    indices[out_index] = existing
                    counts[out_index] = counts[self_index]
                    self_index -= 1
                else:
                    indices[out_index] = incoming
                    counts[out_index] = 1
                    in_index -= 1
                out_index -= 1
            if self_index < 0:
                while in_index >= 0 and out_index >= 0:
                    indices[out_index] = fixels[in_index]
                    counts[out_index] = 1
                    in_index -= 1
                    out_index -= 1

        self.total_visits += 1


class NormAdjacency:
    """Thresholded connectivity of one fixel.

    Weights are stored unscaled; ``norm_multiplier`` (1 / sum of weights, or
    1 when unset) is applied by consumers.

    Attributes:
        indices: Ascending neighbour fixel ids (int64 array).
        weights: Connectivity value per neighbour (float64 array).
        norm_multiplier: Deferred normalisation factor.
    """

    __slots__ = ("indices", "weights", "norm_multiplier")

    def __init__(self, indices=None, weights=None, norm_multiplier: float = 1.0):
        self.indices = np.asarray([] if indices is None else indices, dtype=np.int64)
        self.weights = np.asarray([] if weights is None else weights, dtype=np.float64)
        if self.indices.shape != self.weights.shape:
            raise ValueError(
                f"Mismatched adjacency: {self.indices.size} indices, "
                f"{self.weights.size} weights"
            )
        self.norm_multiplier = float(norm_multiplier)

    def __len__(self) -> int:
        return int(self.indices.size)

    def __eq__(self, other) -> bool:
        if not isinstance(other, NormAdjacency):
            return NotImplemented
        return (
            np.array_equal(self.indices, other.indices)
            and np.array_equal(self.weights, other.weights)
        )

    def __repr__(self) -> str:
        pairs = ", ".join(f"{i}:{w:g}" for i, w in self.items())
        return f"NormAdjacency([{pairs}], norm_multiplier={self.norm_multiplier:g})"

    def items(self) -> Iterator[Tuple[int, float]]:
        return zip(self.indices.tolist(), self.weights.tolist())

    def exponentiate(self, exponent: float) -> None:
        self.weights = np.power(self.weights, exponent)

    def normalise(self) -> None:
        """Recompute the deferred multiplier from the current weights."""
        total = float(self.weights.sum())
        self.norm_multiplier = 1.0 / total if total > 0.0 else 1.0

    def rescale(self) -> None:
        """Bake normalisation into the weights so that they sum to exactly one."""
        total = float(self.weights.sum())
        if total > 0.0:
            self.weights = self.weights / total
        self.norm_multiplier = 1.0


class RawMatrix(list):
    """Connectivity matrix under construction: one RawAdjacency per fixel."""

    def __init__(self, num_fixels: int = 0):
        super().__init__(RawAdjacency() for _ in range(num_fixels))


class ConnectivityGraph(list):
    """Normalised connectivity matrix: one NormAdjacency per fixel."""

    @property
    def num_connections(self) -> int:
        return sum(len(adjacency) for adjacency in self)

    def disconnected(self) -> np.ndarray:
        """Ids of fixels without any connections."""
        return np.array([i for i, adjacency in enumerate(self) if not len(adjacency)], dtype=np.int64)

    def validate(self) -> None:
        """Check that no adjacency references a fixel outside the matrix.

        Raises:
            FormatError: If a dangling or unsorted fixel id is found.
        """
        num_fixels = len(self)
        for fixel, adjacency in enumerate(self):
            if not len(adjacency):
                continue
            if adjacency.indices.min() < 0 or adjacency.indices.max() >= num_fixels:
                raise FormatError(
                    f"Connectivity of fixel {fixel} references a fixel outside "
                    f"the matrix (size {num_fixels})",
                    line_number=fixel,
                )
            if np.any(np.diff(adjacency.indices) <= 0):
                raise FormatError(
                    f"Connectivity of fixel {fixel} is not sorted by unique fixel index",
                    line_number=fixel,
                )


class ConnectivityBuilder:
    """Accumulate streamline fixel visitations into a RawMatrix.

    Only one thread may call :meth:`insert`; all fixels traversed by a
    streamline are updated together in that call.

    Args:
        num_fixels: Number of fixels in the template.
    """

    def __init__(self, num_fixels: int):
        self.num_fixels = int(num_fixels)
        self.matrix = RawMatrix(self.num_fixels)
        self.num_streamlines = 0

    def insert(self, fixels: Sequence[int]) -> None:
        """Record that all fixels in a sorted unique list share one streamline.

        Raises:
            ConnectivityError: If memory cannot be allocated for the matrix.
        """
        fixels = list(fixels)
        try:
            for fixel in fixels:
                self.matrix[fixel].add(fixels)
        except MemoryError as e:
            raise ConnectivityError(
                "Error assigning memory for CFE connectivity matrix"
            ) from e
        self.num_streamlines += 1

    def build(
        self,
        streamlines: Iterable[np.ndarray],
        mapper,
        n_jobs: int = 1,
        batch_size: int = 1024,
        max_pending_batches: int = 8,
    ) -> RawMatrix:
        """Map streamlines to fixels in parallel and insert them serially.

        Mapping runs on joblib worker threads; results are consumed in
        submission order on the calling thread, with at most
        ``max_pending_batches`` batches dispatched ahead of the consumer.
        The first exception raised by a worker aborts the build.

        Args:
            streamlines: Iterable of (P, 3) scanner-space point arrays.
            mapper: Callable with a ``map_batch(list) -> list of fixel lists`` method.
            n_jobs: Number of mapping threads.
            batch_size: Streamlines per mapping task.
            max_pending_batches: Bound on dispatched-but-unconsumed batches.

        Returns:
            The populated RawMatrix.
        """
        results = Parallel(
            n_jobs=n_jobs,
            prefer="threads",
            return_as="generator",
            pre_dispatch=max_pending_batches,
        )(delayed(mapper.map_batch)(batch) for batch in _batched(streamlines, batch_size))

        for fixel_lists in results:
            for fixels in fixel_lists:
                if fixels:
                    self.insert(fixels)

        logger.info(
            f"Mapped {self.num_streamlines} streamlines onto {self.num_fixels} fixels"
        )
        return self.matrix

    def release(self) -> RawMatrix:
        """Hand the matrix over to the caller and drop the builder's reference."""
        matrix = self.matrix
        self.matrix = RawMatrix(0)
        return matrix


def _batched(iterable: Iterable, size: int) -> Iterator[list]:
    batch = []
    for item in iterable:
        batch.append(item)
        if len(batch) == size:
            yield batch
            batch = []
    if batch:
        yield batch


def normalise(raw: RawAdjacency, threshold: float) -> NormAdjacency:
    """Convert one fixel's streamline counts into thresholded connectivity.

    Each connectivity value is the fraction of this fixel's streamlines that
    also traverse the neighbour; values below ``threshold`` are discarded.
    The self-connection has a value of exactly one and is always retained.

    Args:
        raw: Raw adjacency of a single fixel.
        threshold: Connectivity threshold in [0, 1].

    Returns:
        NormAdjacency with ``norm_multiplier`` set to 1 / sum of kept weights
        (left at 1 when nothing is kept).
    """
    if not raw.total_visits or not len(raw):
        return NormAdjacency()
    indices = np.asarray(raw.indices, dtype=np.int64)
    weights = np.asarray(raw.counts, dtype=np.float64) / float(raw.total_visits)
    keep = weights >= threshold
    adjacency = NormAdjacency(indices[keep], weights[keep])
    adjacency.normalise()
    return adjacency


def normalise_matrix(raw_matrix: RawMatrix, threshold: float, n_jobs: int = 1) -> ConnectivityGraph:
    """Normalise and threshold every fixel of a raw connectivity matrix.

    The memory held by each fixel's raw adjacency is released as soon as that
    fixel has been processed, and the raw matrix is left empty on return.

    Args:
        raw_matrix: Matrix produced by ConnectivityBuilder (consumed).
        threshold: Connectivity threshold in [0, 1].
        n_jobs: Number of worker threads.

    Returns:
        ConnectivityGraph of the same size.
    """
    num_fixels = len(raw_matrix)
    graph = ConnectivityGraph([None] * num_fixels)

    def process(fixels: range) -> None:
        for fixel in fixels:
            graph[fixel] = normalise(raw_matrix[fixel], threshold)
            raw_matrix[fixel] = None

    with timer(logger, "Normalising and thresholding fixel-fixel connectivity matrix"):
        Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(process)(chunk) for chunk in _chunks(num_fixels, n_jobs)
        )
    raw_matrix.clear()

    num_disconnected = len(graph.disconnected())
    if num_disconnected:
        logger.warning(
            f"{num_disconnected} of {num_fixels} fixels are not traversed by "
            f"any streamline and have no connectivity"
        )
    logger.info(
        f"Connectivity matrix: {num_fixels} fixels, {graph.num_connections} connections "
        f"(threshold {threshold})"
    )
    return graph


def _chunks(count: int, n_jobs: int) -> List[range]:
    """Split ``range(count)`` into contiguous chunks, a few per worker."""
    workers = max(1, n_jobs if n_jobs > 0 else 1)
    num_chunks = max(1, min(count, 4 * workers))
    bounds = np.linspace(0, count, num_chunks + 1).astype(int)
    return [range(bounds[i], bounds[i + 1]) for i in range(num_chunks) if bounds[i] < bounds[i + 1]]


class IndexRemapper:
    """Map between template fixel ids and contiguous ids inside a mask.

    Args:
        mask: Boolean array over template fixels, or an integer fixel count
            for the identity mapping.
    """

    invalid = -1

    def __init__(self, mask: Union[int, np.ndarray]):
        if np.isscalar(mask):
            mask = np.ones(int(mask), dtype=bool)
        mask = np.asarray(mask, dtype=bool).ravel()
        self._i2e = np.flatnonzero(mask).astype(np.int64)
        self._e2i = np.full(mask.size, self.invalid, dtype=np.int64)
        self._e2i[self._i2e] = np.arange(self._i2e.size, dtype=np.int64)

    @property
    def num_external(self) -> int:
        return int(self._e2i.size)

    @property
    def num_internal(self) -> int:
        return int(self._i2e.size)

    def is_default(self) -> bool:
        return self.num_internal == self.num_external

    def e2i(self, external):
        return self._e2i[external]

    def i2e(self, internal):
        return self._i2e[internal]


def _format_value(value) -> str:
    if isinstance(value, (int, np.integer)):
        return str(int(value))
    return repr(float(value))


def save_matrix(matrix: Sequence, path: Union[str, Path]) -> Path:
    """Save a RawMatrix or ConnectivityGraph to the sparse text format.

    Floating-point values are written with enough digits to be read back
    exactly.

    Args:
        matrix: Sequence of adjacencies providing ``items()``.
        path: Output file path.

    Returns:
        Path to the written file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with timer(logger, f'Saving fixel-fixel connectivity matrix to "{path}"'):
        with path.open("w") as f:
            for adjacency in matrix:
                f.write(",".join(
                    f"{index}:{_format_value(value)}" for index, value in adjacency.items()
                ))
                f.write("\n")
    return path


def parse_line(line: str, remapper: Optional[IndexRemapper] = None) -> NormAdjacency:
    """Parse one line of the sparse text format.

    Args:
        line: Text of the line, without the trailing newline.
        remapper: If given, neighbour ids are mapped to mask-internal ids and
            neighbours outside the mask are dropped.

    Raises:
        FormatError: On an unpaired or non-numeric entry.
    """
    line = line.strip()
    if not line:
        return NormAdjacency()
    indices = []
    weights = []
    for entry in line.split(","):
        pair = entry.split(":")
        if len(pair) != 2:
            raise FormatError(
                "Malformed sparse matrix data (unpaired)", line=line, entry=entry
            )
        try:
            index = int(pair[0])
            weight = float(pair[1])
        except ValueError as e:
            raise FormatError(
                "Malformed sparse matrix data (conversion)", line=line, entry=entry
            ) from e
        if index < 0:
            raise FormatError(
                "Malformed sparse matrix data (negative fixel index)", line=line, entry=entry
            )
        if remapper is not None:
            if index >= remapper.num_external:
                raise FormatError(
                    "Malformed sparse matrix data (fixel index out of range)",
                    line=line, entry=entry,
                )
            index = int(remapper.e2i(index))
            if index == IndexRemapper.invalid:
                continue
        indices.append(index)
        weights.append(weight)
    return NormAdjacency(indices, weights)


def load_matrix(path: Union[str, Path], remapper: Optional[IndexRemapper] = None) -> ConnectivityGraph:
    """Load a ConnectivityGraph from the sparse text format.

    When a remapper is given, only fixels inside its mask are retained and
    ids are renumbered to be contiguous; otherwise line ``i`` becomes fixel
    ``i``. The loaded adjacencies have ``norm_multiplier`` of 1.

    Raises:
        FormatError: If any line is malformed; nothing is returned.
        FileNotFoundError: If the file does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Connectivity matrix file not found: {path}")

    graph = ConnectivityGraph()
    with timer(logger, f'Loading fixel-fixel connectivity matrix "{path}"'):
        with path.open() as f:
            for line_number, line in enumerate(f):
                line = line.rstrip("\n")
                if remapper is not None:
                    if line_number >= remapper.num_external:
                        raise FormatError(
                            f"Connectivity matrix has more lines than the "
                            f"{remapper.num_external} fixels of the template",
                            line_number=line_number, path=path,
                        )
                    if remapper.e2i(line_number) == IndexRemapper.invalid:
                        continue
                try:
                    graph.append(parse_line(line, remapper))
                except FormatError as e:
                    raise FormatError(
                        "Unable to read file as fixel-fixel connectivity matrix: "
                        + str(e).splitlines()[0],
                        line=e.line, entry=e.entry, line_number=line_number, path=path,
                    ) from e
    graph.validate()
    return graph
