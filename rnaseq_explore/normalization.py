import logging

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


def estimate_size_factors(counts):
    """Median-of-ratios size factors, one per sample (genes x samples input).

    The per-gene reference is the geometric mean across samples, computed only
    over genes with no zero count. Each sample's factor is the median of its
    ratios to that reference. Factors are rescaled to a geometric mean of 1.

    Parameters:
      counts: pandas DataFrame of raw counts, genes in rows, samples in columns.

    Returns:
      pandas Series of positive size factors indexed by sample.
    """
    values = counts.to_numpy(dtype=float)
    usable = (values > 0).all(axis=1)
    if not usable.any():
        raise ValueError(
            "Every gene contains at least one zero count; median-of-ratios size factors "
            "cannot be computed."
        )
    log_counts = np.log(values[usable])
    log_geo_means = log_counts.mean(axis=1)
    log_ratios = log_counts - log_geo_means[:, None]
    log_factors = np.median(log_ratios, axis=0)
    # Center so the factors multiply to one
    log_factors = log_factors - log_factors.mean()
    factors = np.exp(log_factors)
    if not np.all(np.isfinite(factors)) or (factors <= 0).any():
        raise ValueError("Size factor estimation produced non-positive or non-finite values.")
    logger.debug("Size factors estimated from %d reference genes", int(usable.sum()))
    return pd.Series(factors, index=counts.columns, name="size_factor")


def normalize_counts(counts, size_factors=None):
    """Divide every sample column by its size factor."""
    if size_factors is None:
        size_factors = estimate_size_factors(counts)
    if not isinstance(size_factors, pd.Series):
        size_factors = pd.Series(np.asarray(size_factors, dtype=float), index=counts.columns)
    missing = counts.columns.difference(size_factors.index)
    if len(missing) > 0:
        raise KeyError(f"No size factor for samples: {list(missing)}")
    return counts.div(size_factors.loc[counts.columns], axis=1)


def rescale_counts(normalized, size_factors):
    """Inverse of :func:`normalize_counts`."""
    return normalized.mul(size_factors.loc[normalized.columns], axis=1)


def log2_transform(counts, pseudocount=1.0):
    return np.log2(counts + pseudocount)


def norm_raw(counts):
    return counts


def norm_mor(counts):
    return normalize_counts(counts)


def norm_log2(counts):
    return log2_transform(counts)


def norm_mor_log2(counts):
    """Median-of-ratios depth normalization followed by log2(x + 1)."""
    return log2_transform(normalize_counts(counts))


NORM = {
    "raw": norm_raw,
    "mor": norm_mor,
    "log2": norm_log2,
    "mor_log2": norm_mor_log2,
}


def transform_counts(counts, method="mor_log2"):
    if method not in NORM:
        raise ValueError("method must be one of: " + ", ".join(sorted(NORM)))
    return NORM[method](counts)
