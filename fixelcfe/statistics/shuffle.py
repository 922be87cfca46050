"""Generation of subject shuffles for permutation testing.

A shuffle relabels subjects (a permutation, for exchangeable errors), flips
the sign of their residuals (for independent symmetric errors), or both.
Shuffles are stored compactly and only expanded to a subjects x subjects
matrix when evaluated.
"""

import itertools
import logging
import math
from pathlib import Path
from typing import Iterator, List, Optional, Union

import numpy as np

from fixelcfe.config.defaults import ERROR_TYPES
from fixelcfe.io.readers import load_matrix_file
from fixelcfe.utils.exceptions import ConfigurationError, ConsistencyError

logger = logging.getLogger(__name__)


class Shuffle:
    """One relabelling / sign-flip of the subjects.

    Row ``i`` of the shuffling matrix draws subject ``permutation[i]`` with
    sign ``signs[i]``.
    """

    __slots__ = ("index", "permutation", "signs")

    def __init__(self, index: int, permutation: np.ndarray, signs: np.ndarray):
        self.index = index
        self.permutation = np.asarray(permutation, dtype=np.int64)
        self.signs = np.asarray(signs, dtype=np.float64)

    def __repr__(self) -> str:
        return f"Shuffle({self.index}, {self.permutation.tolist()}, {self.signs.tolist()})"

    def is_identity(self) -> bool:
        return bool(
            np.array_equal(self.permutation, np.arange(self.permutation.size))
            and np.all(self.signs > 0.0)
        )

    def matrix(self) -> np.ndarray:
        num_subjects = self.permutation.size
        data = np.zeros((num_subjects, num_subjects))
        data[np.arange(num_subjects), self.permutation] = self.signs
        return data


def load_permutations_file(path: Union[str, Path], num_subjects: int) -> np.ndarray:
    """Load explicit permutations, one per column (or one per row).

    Indices may be zero- or one-based.

    Returns:
        Integer array, shape (permutations, subjects), zero-based.
    """
    data = load_matrix_file(path)
    if data.shape[0] == num_subjects:
        permutations = data.T
    elif data.shape[1] == num_subjects:
        permutations = data
    else:
        raise ConsistencyError(
            f"Permutations file {path} has shape {data.shape}; "
            f"neither dimension matches the number of subjects ({num_subjects})"
        )
    if not np.all(permutations == np.round(permutations)):
        raise ConsistencyError(f"Permutations file {path} contains non-integer values")
    permutations = permutations.astype(np.int64)
    if permutations.min() == 1 and permutations.max() == num_subjects:
        permutations = permutations - 1
    expected = np.arange(num_subjects)
    for i, permutation in enumerate(permutations):
        if not np.array_equal(np.sort(permutation), expected):
            raise ConsistencyError(
                f"Entry {i + 1} of permutations file {path} is not a valid permutation"
            )
    return permutations


class Shuffler:
    """Deterministic set of shuffles for one permutation run.

    If the number of possible shuffles does not exceed the number requested,
    all of them are generated; otherwise unique random shuffles are drawn
    from a ``RandomState`` seeded with ``seed``.

    Args:
        num_subjects: Number of subjects.
        num_shuffles: Number of shuffles requested (including the identity
            when ``include_default``).
        error_types: "ee", "ise" or "both".
        seed: Random seed.
        include_default: Make the first shuffle the identity.
        permutations: Explicit permutations (shape (K, subjects)); overrides
            random generation.
    """

    def __init__(self, num_subjects: int, num_shuffles: int, error_types: str = "ee",
                 seed: Optional[int] = None, include_default: bool = True,
                 permutations: Optional[np.ndarray] = None):
        if error_types not in ERROR_TYPES:
            raise ConfigurationError(
                f"Unknown error type '{error_types}'; must be one of {ERROR_TYPES}"
            )
        self.num_subjects = int(num_subjects)
        self.error_types = error_types
        self.include_default = include_default
        self.seed = seed

        if permutations is not None:
            if error_types != "ee":
                raise ConfigurationError("Explicit permutations require exchangeable errors ('ee')")
            self._pairs = self._from_permutations(np.asarray(permutations, dtype=np.int64))
        elif self.num_possible() <= num_shuffles:
            self._pairs = self._exhaustive()
            if len(self._pairs) < num_shuffles:
                logger.warning(
                    f"Only {len(self._pairs)} unique shuffles are possible with "
                    f"{self.num_subjects} subjects; using all of them instead of {num_shuffles}"
                )
        else:
            self._pairs = self._random(num_shuffles)

        logger.debug(f"Generated {len(self._pairs)} shuffles ({error_types})")

    def num_possible(self) -> int:
        """Number of distinct shuffles for the error model."""
        n = self.num_subjects
        if self.error_types == "ee":
            total = math.factorial(n)
        elif self.error_types == "ise":
            total = 2 ** n
        else:
            total = math.factorial(n) * 2 ** n
        return total if self.include_default else total - 1

    def _identity(self):
        return np.arange(self.num_subjects), np.ones(self.num_subjects)

    def _from_permutations(self, permutations: np.ndarray):
        pairs = [(p, np.ones(self.num_subjects)) for p in permutations]
        identity = np.arange(self.num_subjects)
        starts_with_identity = bool(pairs) and np.array_equal(pairs[0][0], identity)
        if self.include_default and not starts_with_identity:
            pairs.insert(0, self._identity())
        elif not self.include_default and starts_with_identity:
            pairs.pop(0)
        return pairs

    def _exhaustive(self):
        n = self.num_subjects
        if self.error_types in ("ee", "both"):
            permutations = [np.array(p) for p in itertools.permutations(range(n))]
        else:
            permutations = [np.arange(n)]
        if self.error_types in ("ise", "both"):
            signs = [np.array(s, dtype=np.float64) for s in itertools.product((1.0, -1.0), repeat=n)]
        else:
            signs = [np.ones(n)]
        # The identity comes first in both product orders
        pairs = [(p, s) for p in permutations for s in signs]
        if not self.include_default:
            pairs = pairs[1:]
        return pairs

    def _random(self, num_shuffles: int):
        rng = np.random.RandomState(self.seed)
        n = self.num_subjects
        pairs = []
        identity = self._identity()
        seen = {self._key(*identity)}
        if self.include_default:
            pairs.append(identity)
        while len(pairs) < num_shuffles:
            if self.error_types in ("ee", "both"):
                permutation = rng.permutation(n)
            else:
                permutation = np.arange(n)
            if self.error_types in ("ise", "both"):
                signs = rng.choice((1.0, -1.0), size=n)
            else:
                signs = np.ones(n)
            key = self._key(permutation, signs)
            if key in seen:
                continue
            seen.add(key)
            pairs.append((permutation, signs))
        return pairs

    @staticmethod
    def _key(permutation: np.ndarray, signs: np.ndarray) -> tuple:
        return tuple(permutation.tolist()) + tuple((signs > 0).tolist())

    def __len__(self) -> int:
        return len(self._pairs)

    def __getitem__(self, index: int) -> Shuffle:
        permutation, signs = self._pairs[index]
        return Shuffle(index, permutation, signs)

    def __iter__(self) -> Iterator[Shuffle]:
        for index in range(len(self)):
            yield self[index]

    def shuffles(self, indices: range) -> List[Shuffle]:
        return [self[index] for index in indices]
