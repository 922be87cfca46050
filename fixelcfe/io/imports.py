"""Per-subject fixel data import.

A :class:`SubjectDataImport` supplies one scalar per fixel for a single
subject; a :class:`CohortDataImport` groups one importer per subject and
serves either a subject's full row or one fixel's values across subjects.
Relative file names are resolved through an explicit :class:`DataContext`.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence, Union

import numpy as np

from fixelcfe.connectivity.mapping import load_fixel_data_file
from fixelcfe.connectivity.matrix import IndexRemapper
from fixelcfe.io.readers import load_subject_list
from fixelcfe.utils.exceptions import ConsistencyError

logger = logging.getLogger(__name__)


class DataContext:
    """Resolve subject data paths.

    Relative paths are looked up in the fixel directory first, then in the
    current working directory.

    Args:
        fixel_directory: Directory holding the fixel template and, usually,
            the subject data files.
    """

    def __init__(self, fixel_directory: Optional[Union[str, Path]] = None):
        self.fixel_directory = Path(fixel_directory) if fixel_directory is not None else None

    def resolve(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        candidates = [path] if path.is_absolute() else []
        if not path.is_absolute():
            if self.fixel_directory is not None:
                candidates.append(self.fixel_directory / path)
            candidates.append(Path.cwd() / path)
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        raise FileNotFoundError(
            f'Input fixel data file not found: "{path}"'
            + (f" (searched {self.fixel_directory} and {Path.cwd()})" if not path.is_absolute() else "")
        )


class SubjectDataImport(ABC):
    """Fixel data of a single subject."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def size(self) -> int:
        """Number of fixels."""

    @abstractmethod
    def __getitem__(self, index: int) -> float:
        """Value at one fixel."""

    @abstractmethod
    def fill_row(self, row: np.ndarray) -> None:
        """Write this subject's value for every fixel into ``row``."""

    def all_finite(self) -> bool:
        row = np.empty(self.size())
        self.fill_row(row)
        return bool(np.all(np.isfinite(row)))


class ArraySubjectImport(SubjectDataImport):
    """Subject data held in memory."""

    def __init__(self, values: Sequence[float], name: str = "array"):
        super().__init__(name)
        self.values = np.asarray(values, dtype=np.float64).reshape(-1)

    def size(self) -> int:
        return int(self.values.size)

    def __getitem__(self, index: int) -> float:
        return float(self.values[index])

    def fill_row(self, row: np.ndarray) -> None:
        row[:] = self.values

    def all_finite(self) -> bool:
        return bool(np.all(np.isfinite(self.values)))


class FileSubjectImport(ArraySubjectImport):
    """Subject data read from a fixel data file.

    Args:
        path: File name, absolute or relative to the data context.
        context: Path resolution context.
        remapper: If given, only fixels inside its mask are retained, in
            mask-internal order.
    """

    def __init__(self, path: Union[str, Path], context: Optional[DataContext] = None,
                 remapper: Optional[IndexRemapper] = None):
        context = context or DataContext()
        resolved = context.resolve(path)
        values = load_fixel_data_file(resolved)
        if remapper is not None:
            if values.size != remapper.num_external:
                raise ConsistencyError(
                    f'Fixel data file "{resolved}" has {values.size} fixels; '
                    f"template has {remapper.num_external}"
                )
            values = values[remapper.i2e(np.arange(remapper.num_internal))]
        super().__init__(values, name=str(path))
        self.path = resolved


class CohortDataImport:
    """One SubjectDataImport per subject, all of the same size."""

    def __init__(self, subjects: List[SubjectDataImport]):
        if not subjects:
            raise ConsistencyError("No subject data provided")
        sizes = {subject.size() for subject in subjects}
        if len(sizes) != 1:
            raise ConsistencyError(
                f"Subject data files have differing numbers of fixels: {sorted(sizes)}"
            )
        self.subjects = list(subjects)
        self._size = sizes.pop()
        self._data = None

    @classmethod
    def from_file(cls, list_path: Union[str, Path], context: Optional[DataContext] = None,
                  remapper: Optional[IndexRemapper] = None) -> "CohortDataImport":
        """Import every file named in a subject list file."""
        names = load_subject_list(list_path)
        subjects = [FileSubjectImport(name, context, remapper) for name in names]
        logger.info(f"Imported data for {len(subjects)} subjects from {Path(list_path).name}")
        return cls(subjects)

    def __len__(self) -> int:
        return len(self.subjects)

    def size(self) -> int:
        return self._size

    def fill_row(self, subject_index: int) -> np.ndarray:
        row = np.empty(self._size)
        self.subjects[subject_index].fill_row(row)
        return row

    def matrix(self) -> np.ndarray:
        """Data of all subjects, shape (subjects, fixels)."""
        if self._data is None:
            self._data = np.vstack([self.fill_row(i) for i in range(len(self))])
        return self._data

    def __call__(self, index: int) -> np.ndarray:
        """Values of one fixel across all subjects."""
        return self.matrix()[:, index]

    def all_finite(self) -> bool:
        return all(subject.all_finite() for subject in self.subjects)
