"""Loading count matrices and deriving per-sample condition labels."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

__all__ = [
    "CountDataset",
    "REPLICATE_SUFFIX_PATTERN",
    "derive_condition_label",
    "build_sample_metadata",
    "validate_count_matrix",
    "count_dataset_from_frame",
    "load_count_matrix",
]

REPLICATE_SUFFIX_PATTERN = re.compile(r"^(?P<condition>.+)_(?P<replicate>\d+)$")


@dataclass
class CountDataset:
    """Container for a genes x samples count matrix and its sample metadata."""

    counts: pd.DataFrame
    metadata: pd.DataFrame
    parameters: Mapping[str, Any] = field(default_factory=dict)

    @property
    def n_genes(self) -> int:
        return int(self.counts.shape[0])

    @property
    def n_samples(self) -> int:
        return int(self.counts.shape[1])

    @property
    def conditions(self) -> List[str]:
        """Distinct condition labels in order of first appearance."""
        return list(dict.fromkeys(self.metadata["condition"].astype(str)))

    def with_counts(self, counts: pd.DataFrame, **extra_parameters: Any) -> "CountDataset":
        """Return a new dataset sharing metadata but holding ``counts``."""
        if list(counts.columns) != list(self.counts.columns):
            raise ValueError("Replacement counts must keep the original sample columns.")
        params = dict(self.parameters)
        params.update(extra_parameters)
        return CountDataset(counts=counts, metadata=self.metadata.copy(), parameters=params)


def derive_condition_label(sample_name: str) -> str:
    """
    Strip the trailing ``_<digits>`` replicate suffix from a sample name.

    ``"WT_1"`` becomes ``"WT"`` and ``"KO_liver_12"`` becomes ``"KO_liver"``.
    """
    match = REPLICATE_SUFFIX_PATTERN.match(str(sample_name))
    if match is None:
        raise ValueError(
            f"Sample name '{sample_name}' lacks a '_<replicate>' suffix; "
            "expected names such as 'WT_1' or 'treatment_3'."
        )
    return match.group("condition")


def build_sample_metadata(sample_names: Sequence[str]) -> pd.DataFrame:
    """Build a per-sample metadata frame with ``condition`` and ``replicate`` columns."""
    names = [str(name) for name in sample_names]
    duplicated = sorted({name for name in names if names.count(name) > 1})
    if duplicated:
        raise ValueError(f"Sample names must be unique; duplicated: {duplicated}")

    rows = []
    for name in names:
        condition = derive_condition_label(name)
        replicate = int(REPLICATE_SUFFIX_PATTERN.match(name).group("replicate"))
        rows.append({"condition": condition, "replicate": replicate})
    metadata = pd.DataFrame(rows, index=pd.Index(names, name="sample"))
    return metadata


def validate_count_matrix(counts: pd.DataFrame) -> pd.DataFrame:
    """
    Check the count-matrix invariants and return an ``int64`` copy.

    Genes are rows and samples are columns. Identifiers must be unique, every
    cell must hold a non-negative integer and no cell may be missing.
    """
    if not isinstance(counts, pd.DataFrame):
        raise ValueError("Counts must be provided as a pandas DataFrame (genes x samples).")
    if counts.shape[0] == 0 or counts.shape[1] == 0:
        raise ValueError(f"Count matrix is empty (shape {counts.shape}).")

    if counts.index.has_duplicates:
        dups = counts.index[counts.index.duplicated()].unique().tolist()[:5]
        raise ValueError(f"Gene identifiers must be unique; first duplicates: {dups}")
    if counts.columns.has_duplicates:
        dups = counts.columns[counts.columns.duplicated()].unique().tolist()[:5]
        raise ValueError(f"Sample names must be unique; first duplicates: {dups}")

    if counts.isnull().to_numpy().any():
        n_missing = int(counts.isnull().to_numpy().sum())
        raise ValueError(f"Count matrix contains {n_missing} missing cells.")

    non_numeric = [col for col in counts.columns if not pd.api.types.is_numeric_dtype(counts[col])]
    if non_numeric:
        raise ValueError(f"Non-numeric values found in sample columns: {non_numeric[:5]}")

    values = counts.to_numpy(dtype=float)
    if (values < 0).any():
        raise ValueError("Count matrix contains negative values.")
    if not np.all(np.isfinite(values)) or not np.allclose(values, np.round(values)):
        raise ValueError("Count matrix must contain integer read counts only.")

    clean = counts.astype(np.int64)
    clean.index = clean.index.astype(str)
    clean.columns = clean.columns.astype(str)
    return clean


def count_dataset_from_frame(
    counts: pd.DataFrame,
    *,
    source: Optional[Union[str, Path]] = None,
) -> CountDataset:
    """Validate an in-memory matrix and attach derived sample metadata."""
    clean = validate_count_matrix(counts)
    metadata = build_sample_metadata(clean.columns)
    parameters = {"source": str(source) if source is not None else None}
    return CountDataset(counts=clean, metadata=metadata, parameters=parameters)


def load_count_matrix(path: Union[str, Path], *, sep: str = ",") -> CountDataset:
    """
    Read a delimited count matrix from disk.

    The header row holds sample names and the first column holds gene
    identifiers. Condition labels are derived from the sample names.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Count matrix '{path}' does not exist.")

    try:
        counts = pd.read_csv(path, sep=sep, index_col=0)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as exc:
        raise ValueError(f"Could not parse count matrix '{path}': {exc}") from exc

    counts.index.name = counts.index.name or "gene_id"
    dataset = count_dataset_from_frame(counts, source=path)
    logger.info(
        "Loaded %d genes x %d samples from %s (conditions: %s)",
        dataset.n_genes,
        dataset.n_samples,
        path,
        ", ".join(dataset.conditions),
    )
    return dataset
