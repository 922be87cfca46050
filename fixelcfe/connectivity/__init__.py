"""Fixel-fixel connectivity for fixelcfe.

This module provides tools for:
- Mapping streamlines onto a fixel template
- Building, normalising and storing the connectivity matrix
- Connectivity-based smoothing and connected-component labelling
"""

from fixelcfe.connectivity.matrix import (
    RawAdjacency,
    NormAdjacency,
    RawMatrix,
    ConnectivityGraph,
    ConnectivityBuilder,
    IndexRemapper,
    normalise,
    normalise_matrix,
    save_matrix,
    load_matrix,
    parse_line,
)
from fixelcfe.connectivity.mapping import (
    FixelTemplate,
    StreamlineMapper,
    find_fixel_file,
    load_fixel_data_file,
    load_streamlines,
    generate,
)
from fixelcfe.connectivity.filters import (
    graph_to_sparse,
    build_smoothing_matrix,
    smooth,
    connected_components,
)

__all__ = [
    # Matrix
    "RawAdjacency",
    "NormAdjacency",
    "RawMatrix",
    "ConnectivityGraph",
    "ConnectivityBuilder",
    "IndexRemapper",
    "normalise",
    "normalise_matrix",
    "save_matrix",
    "load_matrix",
    "parse_line",
    # Mapping
    "FixelTemplate",
    "StreamlineMapper",
    "find_fixel_file",
    "load_fixel_data_file",
    "load_streamlines",
    "generate",
    # Filters
    "graph_to_sparse",
    "build_smoothing_matrix",
    "smooth",
    "connected_components",
]
