"""Input/output operations for fixelcfe."""

from fixelcfe.io.readers import load_matrix_file, load_design_matrix, load_subject_list
from fixelcfe.io.imports import (
    DataContext,
    SubjectDataImport,
    ArraySubjectImport,
    FileSubjectImport,
    CohortDataImport,
)
from fixelcfe.io.writers import (
    save_nifti_with_sidecar,
    save_matrix_with_sidecar,
    FixelOutputWriter,
)

__all__ = [
    "load_matrix_file",
    "load_design_matrix",
    "load_subject_list",
    "DataContext",
    "SubjectDataImport",
    "ArraySubjectImport",
    "FileSubjectImport",
    "CohortDataImport",
    "save_nifti_with_sidecar",
    "save_matrix_with_sidecar",
    "FixelOutputWriter",
]
