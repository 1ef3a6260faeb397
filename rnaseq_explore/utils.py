"""Small shared helpers: output directories, filename fragments, toy data."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

__all__ = [
    "ensure_directory",
    "sanitize_fragment",
    "simulate_count_matrix",
]


def ensure_directory(path: Optional[Union[str, Path]]) -> Optional[Path]:
    if path is None:
        return None
    out = Path(path)
    out.mkdir(parents=True, exist_ok=True)
    return out


def sanitize_fragment(fragment: str, default: str = "item") -> str:
    clean = re.sub(r"[^A-Za-z0-9._-]+", "_", str(fragment).strip())
    clean = re.sub(r"_+", "_", clean).strip("_")
    return clean or default


def simulate_count_matrix(
    n_genes: int = 500,
    *,
    conditions: Sequence[str] = ("control", "treatment"),
    n_replicates: int = 3,
    fold_changes: Optional[Mapping[str, float]] = None,
    dispersion: float = 0.05,
    mean_range: Sequence[float] = (20.0, 2000.0),
    depth_factors: Optional[Sequence[float]] = None,
    seed: int = 123456,
) -> pd.DataFrame:
    """
    Draw a genes x samples negative-binomial count matrix.

    Sample names follow the ``<condition>_<replicate>`` convention understood by
    :func:`rnaseq_explore.io.derive_condition_label`.

    Parameters
    ----------
    n_genes:
        Number of background genes (``GENE1`` .. ``GENE<n>``).
    conditions:
        Condition labels; the first is treated as the baseline.
    n_replicates:
        Replicates per condition.
    fold_changes:
        Optional ``{gene_id: fold}`` applied to every non-baseline condition.
        Genes not already present are appended.
    dispersion:
        NB dispersion shared by all genes.
    mean_range:
        Log-uniform range of baseline gene means.
    depth_factors:
        Optional per-sample sequencing depth multipliers.
    """
    rng = np.random.default_rng(seed)
    genes = [f"GENE{i}" for i in range(1, n_genes + 1)]
    fold_changes = dict(fold_changes or {})
    for gene in fold_changes:
        if gene not in genes:
            genes.append(gene)

    low, high = np.log(mean_range[0]), np.log(mean_range[1])
    base_means = pd.Series(np.exp(rng.uniform(low, high, size=len(genes))), index=genes)

    samples = [f"{cond}_{rep}" for cond in conditions for rep in range(1, n_replicates + 1)]
    if depth_factors is None:
        depth = np.ones(len(samples))
    else:
        depth = np.asarray(depth_factors, dtype=float)
        if depth.shape[0] != len(samples):
            raise ValueError("depth_factors must provide one value per simulated sample.")

    counts = np.empty((len(genes), len(samples)), dtype=np.int64)
    for j, sample in enumerate(samples):
        condition = sample.rsplit("_", 1)[0]
        means = base_means.copy()
        if condition != conditions[0]:
            for gene, fold in fold_changes.items():
                means[gene] = means[gene] * fold
        mu = means.to_numpy() * depth[j]
        if dispersion > 0:
            shape = 1.0 / dispersion
            lam = rng.gamma(shape, mu / shape)
        else:
            lam = mu
        counts[:, j] = rng.poisson(lam)

    return pd.DataFrame(counts, index=pd.Index(genes, name="gene_id"), columns=samples)
