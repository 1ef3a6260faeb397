"""Exploratory bulk RNA-seq differential expression analysis."""

from ._version import __version__
from .io import (
    CountDataset,
    build_sample_metadata,
    count_dataset_from_frame,
    derive_condition_label,
    load_count_matrix,
    validate_count_matrix,
)
from .qc import filter_zero_count_genes, summarize_library_sizes
from .normalization import (
    NORM,
    estimate_size_factors,
    log2_transform,
    normalize_counts,
    rescale_counts,
    transform_counts,
)
from .transform import rlog_transform
from .explore import compute_pca, explore_samples, sample_correlation

__all__ = [
    "__version__",
    "CountDataset",
    "build_sample_metadata",
    "count_dataset_from_frame",
    "derive_condition_label",
    "load_count_matrix",
    "validate_count_matrix",
    "filter_zero_count_genes",
    "summarize_library_sizes",
    "NORM",
    "estimate_size_factors",
    "log2_transform",
    "normalize_counts",
    "rescale_counts",
    "transform_counts",
    "rlog_transform",
    "compute_pca",
    "explore_samples",
    "sample_correlation",
]
