"""Gene filtering and library-level quality control helpers.

The module covers the first stages of the exploratory workflow:
  1. Drop genes that were never observed in any sample.
  2. Summarize sequencing depth before and after normalization.
  3. Plot per-sample depth and count distributions for a quick sanity check.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib import pyplot as plt

logger = logging.getLogger(__name__)

__all__ = [
    "filter_zero_count_genes",
    "library_sizes",
    "summarize_library_sizes",
    "plot_library_sizes",
    "plot_count_distributions",
    "plot_sample_scatter",
]


def filter_zero_count_genes(counts: pd.DataFrame) -> pd.DataFrame:
    """
    Keep genes whose total count across all samples is above zero.

    An empty result is logged as a warning and returned; deciding whether that
    is fatal is left to the caller.
    """
    keep = counts.sum(axis=1) > 0
    filtered = counts.loc[keep]
    n_dropped = int((~keep).sum())
    if n_dropped:
        logger.info("Dropped %d of %d genes with zero total count", n_dropped, counts.shape[0])
    if filtered.shape[0] == 0:
        logger.warning("No genes with a non-zero total count remain after filtering.")
    return filtered


def library_sizes(counts: pd.DataFrame) -> pd.Series:
    """Total counts per sample."""
    return counts.sum(axis=0).rename("library_size")


def summarize_library_sizes(
    raw: pd.DataFrame,
    normalized: Optional[pd.DataFrame] = None,
    size_factors: Optional[pd.Series] = None,
    metadata: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """Per-sample table of raw (and optionally normalized) depth."""
    summary = pd.DataFrame({"raw_total": library_sizes(raw)})
    summary["detected_genes"] = (raw > 0).sum(axis=0)
    if size_factors is not None:
        summary["size_factor"] = size_factors.loc[summary.index]
    if normalized is not None:
        summary["normalized_total"] = library_sizes(normalized).loc[summary.index]
    if metadata is not None and "condition" in metadata.columns:
        summary.insert(0, "condition", metadata.loc[summary.index, "condition"])
    summary.index.name = "sample"
    return summary


def _condition_palette(metadata: Optional[pd.DataFrame], samples) -> Optional[list]:
    if metadata is None or "condition" not in metadata.columns:
        return None
    conditions = metadata.loc[list(samples), "condition"].astype(str)
    levels = list(dict.fromkeys(conditions))
    colors = dict(zip(levels, sns.color_palette(n_colors=len(levels))))
    return [colors[c] for c in conditions]


def plot_library_sizes(
    raw: pd.DataFrame,
    normalized: Optional[pd.DataFrame] = None,
    *,
    figsize: Tuple[float, float] = (8, 4),
    title: str = "Library sizes",
) -> Tuple[plt.Figure, plt.Axes]:
    """Bar chart of total counts per sample, side by side with normalized totals."""
    plot_df = pd.DataFrame({"raw": library_sizes(raw)})
    if normalized is not None:
        plot_df["normalized"] = library_sizes(normalized).loc[plot_df.index]
    melted = plot_df.reset_index(names="sample").melt(
        id_vars="sample", var_name="counts", value_name="total"
    )

    fig, ax = plt.subplots(figsize=figsize)
    sns.barplot(data=melted, x="sample", y="total", hue="counts", ax=ax)
    ax.set_xlabel("Sample")
    ax.set_ylabel("Total counts")
    ax.set_title(title)
    ax.tick_params(axis="x", rotation=45)
    for label in ax.get_xticklabels():
        label.set_horizontalalignment("right")
    fig.tight_layout()
    return fig, ax


def plot_count_distributions(
    log_counts: pd.DataFrame,
    *,
    metadata: Optional[pd.DataFrame] = None,
    figsize: Tuple[float, float] = (8, 4),
    title: str = "log2(count + 1) per sample",
    ax: Optional[plt.Axes] = None,
) -> Tuple[plt.Figure, plt.Axes]:
    """Box plot of a log-scale matrix, one box per sample coloured by condition."""
    created_fig = False
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
        created_fig = True
    else:
        fig = ax.figure

    palette = _condition_palette(metadata, log_counts.columns)
    melted = log_counts.melt(var_name="sample", value_name="value")
    sns.boxplot(
        data=melted,
        x="sample",
        y="value",
        hue="sample",
        palette=palette,
        legend=False,
        fliersize=1,
        ax=ax,
    )
    ax.set_xlabel("Sample")
    ax.set_ylabel("log2(count + 1)")
    ax.set_title(title)
    ax.tick_params(axis="x", rotation=45)
    for label in ax.get_xticklabels():
        label.set_horizontalalignment("right")
    if created_fig:
        fig.tight_layout()
    return fig, ax


def plot_sample_scatter(
    log_counts: pd.DataFrame,
    sample_x: str,
    sample_y: str,
    *,
    figsize: Tuple[float, float] = (5, 5),
    point_size: float = 4.0,
    ax: Optional[plt.Axes] = None,
) -> Tuple[plt.Figure, plt.Axes]:
    """Scatter of two samples on a log scale with the identity line."""
    missing = [s for s in (sample_x, sample_y) if s not in log_counts.columns]
    if missing:
        raise KeyError(f"Samples not found in matrix: {missing}")

    created_fig = False
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
        created_fig = True
    else:
        fig = ax.figure

    x = log_counts[sample_x]
    y = log_counts[sample_y]
    ax.scatter(x, y, s=point_size, c="black", alpha=0.4, linewidth=0)
    lim = float(np.nanmax([x.max(), y.max()]))
    ax.plot([0, lim], [0, lim], color="red", linestyle="dashed", linewidth=1)
    ax.set_xlabel(sample_x)
    ax.set_ylabel(sample_y)
    ax.set_title(f"{sample_x} vs {sample_y}")
    if created_fig:
        fig.tight_layout()
    return fig, ax
