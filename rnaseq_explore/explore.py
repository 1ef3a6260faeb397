"""Sample-level exploration: correlation structure and principal components."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib import pyplot as plt
from scipy.cluster.hierarchy import leaves_list, linkage
from scipy.spatial.distance import squareform
from sklearn.decomposition import PCA

logger = logging.getLogger(__name__)

__all__ = [
    "PCAResult",
    "SampleExplorationResult",
    "sample_correlation",
    "correlation_distance",
    "cluster_sample_order",
    "select_top_variable_genes",
    "compute_pca",
    "explore_samples",
]

DEFAULT_TOP_GENES = 500


@dataclass
class PCAResult:
    """Sample scores and gene loadings from a PCA of top-variance genes."""

    scores: pd.DataFrame
    explained_variance_ratio: pd.Series
    loadings: pd.DataFrame
    genes_used: List[str] = field(default_factory=list)

    def axis_label(self, component: str) -> str:
        pct = 100.0 * float(self.explained_variance_ratio[component])
        return f"{component} ({pct:.1f}% variance)"


@dataclass
class SampleExplorationResult:
    """Correlation, distance, clustering order and PCA for one transformed matrix."""

    correlation: pd.DataFrame
    distance: pd.DataFrame
    sample_order: List[str]
    pca: PCAResult
    metadata: Optional[pd.DataFrame] = None
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def plot_correlation_heatmap(
        self,
        *,
        figsize: Tuple[float, float] = (7, 6),
        cmap: str = "viridis",
        annot: bool = True,
        annot_fmt: str = ".2f",
        title: str = "Sample correlation",
        ax: Optional[plt.Axes] = None,
    ) -> Tuple[plt.Figure, plt.Axes]:
        """Heatmap of the correlation matrix with samples in clustering order."""
        created_fig = False
        if ax is None:
            fig, ax = plt.subplots(figsize=figsize)
            created_fig = True
        else:
            fig = ax.figure

        ordered = self.correlation.loc[self.sample_order, self.sample_order]
        sns.heatmap(
            ordered,
            ax=ax,
            cmap=cmap,
            annot=annot,
            fmt=annot_fmt,
            square=True,
            cbar_kws={"label": "correlation"},
            annot_kws={"fontsize": 8} if annot else None,
        )
        ax.set_xlabel("")
        ax.set_ylabel("")
        ax.set_title(title)
        ax.tick_params(axis="x", rotation=45)
        ax.tick_params(axis="y", rotation=0)
        for label in ax.get_xticklabels():
            label.set_horizontalalignment("right")
        if created_fig:
            fig.tight_layout()
        return fig, ax

    def plot_pca(
        self,
        *,
        components: Tuple[str, str] = ("PC1", "PC2"),
        hue: str = "condition",
        figsize: Tuple[float, float] = (6, 5),
        point_size: float = 80.0,
        label_samples: bool = True,
        title: str = "PCA",
        ax: Optional[plt.Axes] = None,
    ) -> Tuple[plt.Figure, plt.Axes]:
        """Scatter of two principal components coloured by a metadata column."""
        pc_x, pc_y = components
        missing = [pc for pc in components if pc not in self.pca.scores.columns]
        if missing:
            raise KeyError(f"Components not available in PCA scores: {missing}")

        plot_df = self.pca.scores.copy()
        hue_col: Optional[str] = None
        if self.metadata is not None and hue in self.metadata.columns:
            plot_df[hue] = self.metadata.loc[plot_df.index, hue].astype(str)
            hue_col = hue

        created_fig = False
        if ax is None:
            fig, ax = plt.subplots(figsize=figsize)
            created_fig = True
        else:
            fig = ax.figure

        sns.scatterplot(data=plot_df, x=pc_x, y=pc_y, hue=hue_col, s=point_size, ax=ax)
        if label_samples:
            for sample, row in plot_df.iterrows():
                ax.annotate(
                    sample,
                    xy=(row[pc_x], row[pc_y]),
                    xytext=(4, 4),
                    textcoords="offset points",
                    fontsize=8,
                )
        ax.set_xlabel(self.pca.axis_label(pc_x))
        ax.set_ylabel(self.pca.axis_label(pc_y))
        ax.set_title(title)
        if created_fig:
            fig.tight_layout()
        return fig, ax

    def save_plots(
        self,
        output_dir: Union[str, Path],
        *,
        file_prefix: str = "samples",
        dpi: int = 300,
        logger: Optional[Callable[[str], None]] = None,
    ) -> List[Path]:
        """Write the correlation heatmap and PCA scatter as PNG files."""
        out_dir = Path(output_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        saved: List[Path] = []
        for name, plotter in (
            ("correlation_heatmap", self.plot_correlation_heatmap),
            ("pca", self.plot_pca),
        ):
            fig, _ = plotter()
            destination = out_dir / f"{file_prefix}_{name}.png"
            fig.savefig(destination, dpi=dpi, bbox_inches="tight")
            plt.close(fig)
            if logger:
                logger(f"Saved plot to {destination}")
            saved.append(destination)
        return saved


def sample_correlation(matrix: pd.DataFrame, method: str = "pearson") -> pd.DataFrame:
    """Samples x samples correlation of a genes x samples matrix."""
    if matrix.shape[1] < 2:
        raise ValueError("At least two samples are required to compute correlations.")
    return matrix.corr(method=method)


def correlation_distance(corr: pd.DataFrame) -> pd.DataFrame:
    """Convert a correlation matrix into a ``1 - r`` distance matrix."""
    dist = 1.0 - corr
    values = dist.to_numpy(copy=True)
    np.fill_diagonal(values, 0.0)
    return pd.DataFrame(values, index=corr.index, columns=corr.columns)


def cluster_sample_order(distance: pd.DataFrame, method: str = "average") -> List[str]:
    """Leaf order of an agglomerative clustering of samples."""
    if distance.shape[0] <= 2:
        return list(distance.index)
    arr = np.nan_to_num(distance.to_numpy(dtype=float), nan=0.0)
    arr = np.clip((arr + arr.T) / 2.0, 0.0, None)
    condensed = squareform(arr, checks=False)
    order = leaves_list(linkage(condensed, method=method))
    return [distance.index[i] for i in order]


def select_top_variable_genes(matrix: pd.DataFrame, n_top: int = DEFAULT_TOP_GENES) -> pd.DataFrame:
    """Rows of ``matrix`` with the largest variance across samples."""
    if n_top <= 0:
        raise ValueError("n_top must be a positive integer.")
    variances = matrix.var(axis=1)
    ranked = variances.sort_values(ascending=False, kind="mergesort")
    return matrix.loc[ranked.index[: min(n_top, matrix.shape[0])]]


def compute_pca(
    matrix: pd.DataFrame,
    *,
    n_top_genes: int = DEFAULT_TOP_GENES,
    n_components: int = 2,
) -> PCAResult:
    """
    PCA of samples using the most variable genes of a transformed matrix.

    Genes are centred across samples by :class:`sklearn.decomposition.PCA`.
    ``n_components`` is capped by the number of samples and selected genes.
    """
    top = select_top_variable_genes(matrix, n_top=n_top_genes)
    n_comp = min(n_components, top.shape[1], top.shape[0])
    if n_comp < 1:
        raise ValueError("PCA needs at least one gene and one sample.")

    data = top.T.to_numpy(dtype=float)
    pca = PCA(n_components=n_comp)
    scores = pca.fit_transform(data)
    names = [f"PC{i + 1}" for i in range(n_comp)]
    logger.debug("PCA on %d genes; explained variance %s", top.shape[0], pca.explained_variance_ratio_)
    return PCAResult(
        scores=pd.DataFrame(scores, index=top.columns, columns=names),
        explained_variance_ratio=pd.Series(pca.explained_variance_ratio_, index=names),
        loadings=pd.DataFrame(pca.components_.T, index=top.index, columns=names),
        genes_used=list(top.index),
    )


def explore_samples(
    transformed: pd.DataFrame,
    metadata: Optional[pd.DataFrame] = None,
    *,
    n_top_genes: int = DEFAULT_TOP_GENES,
    n_components: int = 2,
    method: str = "pearson",
    linkage_method: str = "average",
) -> SampleExplorationResult:
    corr = sample_correlation(transformed, method=method)
    dist = correlation_distance(corr)
    order = cluster_sample_order(dist, method=linkage_method)
    pca = compute_pca(transformed, n_top_genes=n_top_genes, n_components=n_components)
    return SampleExplorationResult(
        correlation=corr,
        distance=dist,
        sample_order=order,
        pca=pca,
        metadata=metadata,
        parameters={
            "n_top_genes": n_top_genes,
            "n_components": n_components,
            "method": method,
            "linkage_method": linkage_method,
        },
    )
