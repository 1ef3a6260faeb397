"""Variance-stabilizing views of count data (regularized log)."""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy.stats import nbinom, norm

from .normalization import estimate_size_factors, normalize_counts

logger = logging.getLogger(__name__)

__all__ = [
    "estimate_dispersion_trend",
    "estimate_rlog_prior_variance",
    "rlog_transform",
]

MIN_DISPERSION = 1e-8
MIN_MU = 0.5
INTERCEPT_PENALTY = 1e-6


def estimate_dispersion_trend(
    normalized: pd.DataFrame,
    *,
    min_disp: float = MIN_DISPERSION,
    max_iter: int = 25,
) -> Tuple[pd.Series, Tuple[float, float]]:
    """
    Fit the parametric mean-dispersion trend ``a0 + a1 / mean``.

    Gene-wise dispersions are method-of-moments estimates on normalized
    counts. The trend is a gamma-family GLM with identity link, refit while
    dropping genes whose dispersion is more than 15x (or under 1e-4x) the
    current fit. Falls back to the mean gene-wise dispersion when the fit does
    not produce positive coefficients.

    Returns
    -------
    (Series, (asymptotic, extra_poisson))
        Trended dispersion per gene and the fitted coefficients.
    """
    values = normalized.to_numpy(dtype=float)
    means = values.mean(axis=1)
    if values.shape[1] < 2:
        raise ValueError("At least two samples are required to estimate dispersions.")
    variances = values.var(axis=1, ddof=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        genewise = (variances - means) / means**2
    usable = (means > 0) & np.isfinite(genewise) & (genewise > 100 * min_disp)

    if usable.sum() < 3:
        logger.warning(
            "Only %d genes show overdispersion; using a constant dispersion of %g.",
            int(usable.sum()),
            min_disp,
        )
        coefs = (min_disp, 0.0)
    else:
        y = genewise[usable]
        design = np.column_stack([np.ones(y.shape[0]), 1.0 / means[usable]])
        coefs_arr = np.array([0.1, 1.0])
        failed = False
        for _ in range(max_iter):
            fitted = design @ coefs_arr
            ratio = y / fitted
            good = (ratio > 1e-4) & (ratio < 15)
            if good.sum() < 2:
                failed = True
                break
            weights = 1.0 / fitted[good] ** 2
            xw = design[good] * weights[:, None]
            new = np.linalg.solve(design[good].T @ xw, xw.T @ y[good])
            if not np.all(new > 0):
                failed = True
                break
            converged = np.sum(np.log(new / coefs_arr) ** 2) < 1e-6
            coefs_arr = new
            if converged:
                break
        if failed:
            mean_disp = float(np.mean(y))
            logger.warning(
                "Parametric dispersion trend failed; using the mean gene-wise dispersion (%.4g).",
                mean_disp,
            )
            coefs = (mean_disp, 0.0)
        else:
            coefs = (float(coefs_arr[0]), float(coefs_arr[1]))

    asymptotic, extra_poisson = coefs
    with np.errstate(divide="ignore"):
        trend = np.where(means > 0, asymptotic + extra_poisson / np.where(means > 0, means, 1.0), asymptotic)
    trend = np.maximum(trend, min_disp)
    return pd.Series(trend, index=normalized.index, name="dispersion"), coefs


def _weighted_quantile(values: np.ndarray, weights: np.ndarray, q: float) -> float:
    order = np.argsort(values)
    sorted_values = values[order]
    sorted_weights = weights[order]
    cumulative = np.cumsum(sorted_weights) - 0.5 * sorted_weights
    cumulative /= sorted_weights.sum()
    return float(np.interp(q, cumulative, sorted_values))


def estimate_rlog_prior_variance(
    normalized: pd.DataFrame,
    dispersions: pd.Series,
    *,
    upper_quantile: float = 0.05,
) -> float:
    """
    Variance of the zero-centred normal prior on per-sample log2 deviations.

    The weighted upper quantile of absolute deviations from each gene's mean is
    matched to the same quantile of a normal distribution.
    """
    values = normalized.to_numpy(dtype=float)
    base_mean = values.mean(axis=1)
    keep = base_mean > 0
    if not keep.any():
        raise ValueError("Cannot estimate the rlog prior from an all-zero matrix.")

    log_counts = np.log2(values[keep] + 0.5)
    deviations = log_counts - np.log2(base_mean[keep] + 0.5)[:, None]
    disp = dispersions.loc[normalized.index[keep]].to_numpy(dtype=float)
    gene_weights = 1.0 / (1.0 / base_mean[keep] + disp)
    weights = np.repeat(gene_weights, values.shape[1])

    q = _weighted_quantile(np.abs(deviations).ravel(), weights, 1.0 - upper_quantile)
    sd = q / norm.ppf(1.0 - upper_quantile / 2.0)
    return max(float(sd**2), 1e-8)


def _nb_deviance(y: np.ndarray, mu: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    size = 1.0 / alpha[:, None]
    return -2.0 * nbinom.logpmf(y, size, size / (size + mu)).sum(axis=1)


def _fit_ridge_nb_chunk(
    y: np.ndarray,
    log_sf: np.ndarray,
    alpha: np.ndarray,
    design: np.ndarray,
    penalty: np.ndarray,
    *,
    max_iter: int,
    tol: float,
) -> np.ndarray:
    """IRLS for a ridge-penalized NB GLM, one row of ``y`` per gene."""
    n_genes = y.shape[0]
    sf = np.exp(log_sf)
    beta = np.zeros((n_genes, design.shape[1]))
    beta[:, 0] = np.log(np.maximum((y / sf).mean(axis=1), 0.1))

    mu = np.maximum(sf * np.exp(beta @ design.T), MIN_MU)
    dev = _nb_deviance(y, mu, alpha)
    active = np.ones(n_genes, dtype=bool)
    ridge = np.diag(penalty)[None, :, :]

    for _ in range(max_iter):
        if not active.any():
            break
        idx = np.flatnonzero(active)
        mu_a = mu[idx]
        w = mu_a / (1.0 + alpha[idx, None] * mu_a)
        z = np.log(mu_a / sf) + (y[idx] - mu_a) / mu_a
        xtwx = np.einsum("ip,gi,iq->gpq", design, w, design) + ridge
        xtwz = np.einsum("ip,gi->gp", design, w * z)
        beta[idx] = np.linalg.solve(xtwx, xtwz[..., None])[..., 0]

        mu[idx] = np.maximum(sf * np.exp(beta[idx] @ design.T), MIN_MU)
        new_dev = _nb_deviance(y[idx], mu[idx], alpha[idx])
        converged = np.abs(new_dev - dev[idx]) / (np.abs(new_dev) + 0.1) < tol
        dev[idx] = new_dev
        active[idx[converged]] = False

    if active.any():
        logger.warning("rlog IRLS did not converge for %d genes", int(active.sum()))
    return beta


def rlog_transform(
    counts: pd.DataFrame,
    *,
    size_factors: Optional[pd.Series] = None,
    dispersions: Optional[pd.Series] = None,
    beta_prior_var: Optional[float] = None,
    max_iter: int = 100,
    tol: float = 1e-8,
    chunk_size: int = 2000,
) -> pd.DataFrame:
    """
    Blind regularized-log transform of a genes x samples count matrix.

    For every gene, fits a negative-binomial GLM with an intercept and one
    coefficient per sample, shrinking the sample coefficients toward zero with
    a normal prior. The returned value is the fitted log2 normalized count, so
    low counts are pulled toward the gene mean while well-measured genes stay
    close to ``log2(normalized)``.

    Parameters
    ----------
    counts:
        Raw counts (genes x samples).
    size_factors:
        Optional precomputed size factors; median-of-ratios by default.
    dispersions:
        Optional per-gene dispersions (e.g. a fitted trend from PyDESeq2). A
        parametric trend on normalized counts is used when omitted.
    beta_prior_var:
        Optional prior variance (log2 scale). Estimated from the data when omitted.
    max_iter, tol:
        IRLS iteration cap and relative deviance tolerance.
    chunk_size:
        Genes fitted per batched solve.
    """
    if counts.shape[1] < 2:
        raise ValueError("The regularized log requires at least two samples.")
    if size_factors is None:
        size_factors = estimate_size_factors(counts)
    size_factors = size_factors.loc[counts.columns]
    normalized = normalize_counts(counts, size_factors)

    if dispersions is None:
        dispersions, _ = estimate_dispersion_trend(normalized)
    else:
        dispersions = pd.Series(dispersions, index=counts.index) if not isinstance(dispersions, pd.Series) else dispersions
        dispersions = dispersions.loc[counts.index].clip(lower=MIN_DISPERSION)

    if beta_prior_var is None:
        beta_prior_var = estimate_rlog_prior_variance(normalized, dispersions)

    n_samples = counts.shape[1]
    design = np.column_stack([np.ones(n_samples), np.eye(n_samples)])
    penalty = np.concatenate([[INTERCEPT_PENALTY], np.full(n_samples, 1.0 / beta_prior_var)])
    # Priors are specified on the log2 scale; the fit runs on natural log.
    penalty = penalty / np.log(2) ** 2

    values = counts.to_numpy(dtype=float)
    nonzero = values.sum(axis=1) > 0
    out = np.zeros_like(values)
    log_sf = np.log(size_factors.to_numpy(dtype=float))
    alpha_all = dispersions.to_numpy(dtype=float)

    rows = np.flatnonzero(nonzero)
    for start in range(0, rows.shape[0], chunk_size):
        chunk = rows[start : start + chunk_size]
        beta = _fit_ridge_nb_chunk(
            values[chunk],
            log_sf,
            alpha_all[chunk],
            design,
            penalty,
            max_iter=max_iter,
            tol=tol,
        )
        out[chunk] = (beta @ design.T) / np.log(2)

    logger.info(
        "rlog computed for %d genes (prior variance %.4g)", int(nonzero.sum()), beta_prior_var
    )
    return pd.DataFrame(out, index=counts.index, columns=counts.columns)
