"""Plotting utilities for differential expression and gene-set enrichment."""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple

import networkx as nx
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

__all__ = [
    "volcano_plot",
    "volcano_plot_with_labels",
    "plot_de_volcano",
    "plot_ma",
    "enrichment_dot_plot",
    "build_enrichment_network",
    "plot_enrichment_network",
    "plot_running_sum",
]


def _prepare_dataframe(df: pd.DataFrame, required: Sequence[str]) -> pd.DataFrame:
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise KeyError(f"Dataframe missing required columns: {missing}")
    return df.copy()


def _split_genes(value) -> List[str]:
    if isinstance(value, (list, tuple, set)):
        return [str(g).strip() for g in value if str(g).strip()]
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return []
    return [g.strip() for g in str(value).replace(",", ";").split(";") if g.strip()]


def volcano_plot(
    df: pd.DataFrame,
    *,
    alpha: float = 0.05,
    x_col: str = "log2FoldChange",
    p_col: str = "padj",
    x_lab: str = "log2 Fold Change",
    y_lab: str = "-log10(padj)",
    title: str = "Volcano Plot",
    figsize: Tuple[float, float] = (8, 6),
    point_size: float = 10.0,
    epsilon: float = 1e-300,
    ax: Optional[plt.Axes] = None,
) -> Tuple[plt.Figure, plt.Axes]:
    """
    Create a volcano plot from a differential expression dataframe.

    Rows with an undefined fold change or adjusted p-value are not drawn.
    """
    plot_df = _prepare_dataframe(df, [x_col, p_col]).dropna(subset=[x_col, p_col])
    plot_df["minusLog10Padj"] = -np.log10(plot_df[p_col] + epsilon)
    plot_df["significant"] = plot_df[p_col] < alpha
    up = plot_df["significant"] & (plot_df[x_col] > 0)
    down = plot_df["significant"] & (plot_df[x_col] < 0)

    created_fig = False
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
        created_fig = True
    else:
        fig = ax.figure

    ax.scatter(
        plot_df.loc[~plot_df["significant"], x_col],
        plot_df.loc[~plot_df["significant"], "minusLog10Padj"],
        c="black",
        s=point_size,
        alpha=0.5,
        label="Not significant",
    )
    ax.scatter(
        plot_df.loc[up, x_col],
        plot_df.loc[up, "minusLog10Padj"],
        c="red",
        s=point_size,
        label=f"Up ({int(up.sum())})",
    )
    ax.scatter(
        plot_df.loc[down, x_col],
        plot_df.loc[down, "minusLog10Padj"],
        c="blue",
        s=point_size,
        label=f"Down ({int(down.sum())})",
    )
    threshold = -np.log10(alpha)
    ax.axhline(
        threshold,
        color="grey",
        linestyle="dashed",
        linewidth=1,
        label=f"p-adj = {alpha} (-log10: {threshold:.2f})",
    )
    ax.axvline(0, color="grey", linewidth=0.8)
    ax.set_xlabel(x_lab)
    ax.set_ylabel(y_lab)
    ax.set_title(title)
    ax.legend()

    if created_fig:
        fig.tight_layout()
    return fig, ax


def volcano_plot_with_labels(
    df: pd.DataFrame,
    genes_of_interest: Iterable[str],
    *,
    var_name_col: Optional[str] = None,
    alpha: float = 0.05,
    x_col: str = "log2FoldChange",
    p_col: str = "padj",
    title: str = "Volcano Plot",
    figsize: Tuple[float, float] = (8, 6),
    point_size: float = 10.0,
    offset: Tuple[float, float] = (5, 5),
    epsilon: float = 1e-300,
    ax: Optional[plt.Axes] = None,
) -> Tuple[plt.Figure, plt.Axes]:
    """
    Create a volcano plot and annotate selected genes.

    Genes are matched against ``var_name_col`` when given, otherwise against
    the index.
    """
    required = [x_col, p_col] + ([var_name_col] if var_name_col else [])
    plot_df = _prepare_dataframe(df, required)
    fig, ax = volcano_plot(
        plot_df,
        alpha=alpha,
        x_col=x_col,
        p_col=p_col,
        title=title,
        figsize=figsize,
        point_size=point_size,
        epsilon=epsilon,
        ax=ax,
    )

    names = plot_df[var_name_col].astype(str) if var_name_col else pd.Series(plot_df.index.astype(str), index=plot_df.index)
    for gene in genes_of_interest:
        gene_rows = plot_df[names == str(gene)].dropna(subset=[x_col, p_col])
        for _, row in gene_rows.iterrows():
            ax.annotate(
                str(gene),
                xy=(row[x_col], -np.log10(row[p_col] + epsilon)),
                xytext=offset,
                textcoords="offset points",
                ha="left",
                va="bottom",
                arrowprops=dict(arrowstyle="-", color="black", lw=1.0),
                bbox=dict(boxstyle="round,pad=0.1", fc="white", ec="none", alpha=0.5),
            )
    fig.tight_layout()
    return fig, ax


def plot_de_volcano(
    df: pd.DataFrame,
    genes_of_interest: Optional[Iterable[str]] = None,
    *,
    alpha: float = 0.05,
    x_col: str = "log2FoldChange",
    p_col: str = "padj",
    title: str = "Differential Expression Volcano",
    figsize: Tuple[float, float] = (8, 6),
    point_size: float = 10.0,
) -> Tuple[plt.Figure, plt.Axes]:
    """Convenience wrapper around :func:`volcano_plot` for DE results."""
    go_list = list(genes_of_interest) if genes_of_interest is not None else []
    if go_list:
        var_name_col = "gene_name" if "gene_name" in df.columns else None
        return volcano_plot_with_labels(
            df,
            go_list,
            var_name_col=var_name_col,
            alpha=alpha,
            x_col=x_col,
            p_col=p_col,
            title=title,
            figsize=figsize,
            point_size=point_size,
        )
    return volcano_plot(
        df,
        alpha=alpha,
        x_col=x_col,
        p_col=p_col,
        title=title,
        figsize=figsize,
        point_size=point_size,
    )


def plot_ma(
    df: pd.DataFrame,
    *,
    alpha: float = 0.05,
    mean_col: str = "baseMean",
    lfc_col: str = "log2FoldChange",
    p_col: str = "padj",
    title: str = "MA Plot",
    figsize: Tuple[float, float] = (8, 6),
    point_size: float = 6.0,
    ax: Optional[plt.Axes] = None,
) -> Tuple[plt.Figure, plt.Axes]:
    """Log fold change against mean normalized count, significant genes in red."""
    plot_df = _prepare_dataframe(df, [mean_col, lfc_col, p_col])
    plot_df = plot_df[(plot_df[mean_col] > 0) & plot_df[lfc_col].notna()]
    sig = plot_df[p_col].fillna(1.0) < alpha

    created_fig = False
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
        created_fig = True
    else:
        fig = ax.figure

    ax.scatter(plot_df.loc[~sig, mean_col], plot_df.loc[~sig, lfc_col], c="grey", s=point_size, alpha=0.5, label="Not significant")
    ax.scatter(plot_df.loc[sig, mean_col], plot_df.loc[sig, lfc_col], c="red", s=point_size, label=f"padj < {alpha}")
    ax.axhline(0, color="black", linewidth=0.8)
    ax.set_xscale("log")
    ax.set_xlabel("Mean of normalized counts")
    ax.set_ylabel("log2 Fold Change")
    ax.set_title(title)
    ax.legend()
    if created_fig:
        fig.tight_layout()
    return fig, ax


def enrichment_dot_plot(
    df: pd.DataFrame,
    *,
    top_n: int = 20,
    term_col: str = "pathway",
    size_col: str = "matched_size",
    total_col: str = "set_size",
    fdr_col: str = "fdr",
    title: str = "Gene-set enrichment",
    figsize: Tuple[float, float] = (8, 7),
    cmap: str = "viridis_r",
    epsilon: float = 1e-10,
    ax: Optional[plt.Axes] = None,
) -> Tuple[plt.Figure, plt.Axes]:
    """
    Dot plot of the most significant terms.

    The x axis is the gene ratio (``size_col / total_col``), dot size is the
    number of matched genes and colour is ``-log10(fdr_col)``.
    """
    plot_df = _prepare_dataframe(df, [term_col, size_col, total_col, fdr_col])
    if plot_df.empty:
        raise ValueError("Enrichment table is empty; nothing to plot.")
    plot_df = plot_df.sort_values(fdr_col, kind="mergesort").head(top_n)
    totals = plot_df[total_col].astype(float).replace(0.0, np.nan)
    plot_df["gene_ratio"] = plot_df[size_col].astype(float) / totals
    plot_df["minusLog10FDR"] = -np.log10(plot_df[fdr_col].astype(float) + epsilon)
    plot_df = plot_df.iloc[::-1]

    created_fig = False
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
        created_fig = True
    else:
        fig = ax.figure

    points = ax.scatter(
        plot_df["gene_ratio"],
        plot_df[term_col].astype(str),
        s=plot_df[size_col].astype(float) * 10.0,
        c=plot_df["minusLog10FDR"],
        cmap=cmap,
        edgecolors="black",
        linewidths=0.5,
    )
    cbar = fig.colorbar(points, ax=ax)
    cbar.set_label(f"-log10({fdr_col})")
    ax.set_xlabel("Gene ratio")
    ax.set_ylabel("")
    ax.set_title(title)
    if created_fig:
        fig.tight_layout()
    return fig, ax


def build_enrichment_network(
    df: pd.DataFrame,
    *,
    term_col: str = "pathway",
    genes_col: str = "leading_edge",
    score_col: str = "fdr",
    top_n: int = 30,
    jaccard_cutoff: float = 0.25,
) -> nx.Graph:
    """
    Graph of enriched terms, linked when their gene lists overlap.

    Nodes carry ``score`` and ``size`` attributes; edges carry the Jaccard
    index of the two gene lists.
    """
    plot_df = _prepare_dataframe(df, [term_col, genes_col, score_col])
    plot_df = plot_df.sort_values(score_col, kind="mergesort").head(top_n)

    graph = nx.Graph()
    members = {}
    for _, row in plot_df.iterrows():
        term = str(row[term_col])
        genes = set(_split_genes(row[genes_col]))
        members[term] = genes
        graph.add_node(term, score=float(row[score_col]), size=len(genes))

    terms = list(members)
    for i, left in enumerate(terms):
        for right in terms[i + 1 :]:
            union = members[left] | members[right]
            if not union:
                continue
            jaccard = len(members[left] & members[right]) / len(union)
            if jaccard >= jaccard_cutoff:
                graph.add_edge(left, right, weight=jaccard)
    return graph


def plot_enrichment_network(
    df: pd.DataFrame,
    *,
    term_col: str = "pathway",
    genes_col: str = "leading_edge",
    score_col: str = "fdr",
    top_n: int = 30,
    jaccard_cutoff: float = 0.25,
    seed: int = 123456,
    title: str = "Enrichment network",
    figsize: Tuple[float, float] = (9, 8),
    cmap: str = "viridis_r",
    epsilon: float = 1e-10,
    ax: Optional[plt.Axes] = None,
) -> Tuple[plt.Figure, plt.Axes]:
    """Draw :func:`build_enrichment_network` with a seeded spring layout."""
    graph = build_enrichment_network(
        df,
        term_col=term_col,
        genes_col=genes_col,
        score_col=score_col,
        top_n=top_n,
        jaccard_cutoff=jaccard_cutoff,
    )
    if graph.number_of_nodes() == 0:
        raise ValueError("Enrichment table is empty; nothing to plot.")

    created_fig = False
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
        created_fig = True
    else:
        fig = ax.figure

    pos = nx.spring_layout(graph, seed=seed)
    nodes = list(graph.nodes)
    colors = [-np.log10(graph.nodes[n]["score"] + epsilon) for n in nodes]
    sizes = [50.0 + 20.0 * graph.nodes[n]["size"] for n in nodes]
    widths = [4.0 * graph.edges[e]["weight"] for e in graph.edges]

    nx.draw_networkx_edges(graph, pos, ax=ax, width=widths, edge_color="grey", alpha=0.6)
    drawn = nx.draw_networkx_nodes(graph, pos, nodelist=nodes, ax=ax, node_color=colors, node_size=sizes, cmap=cmap)
    nx.draw_networkx_labels(graph, pos, ax=ax, font_size=7)
    cbar = fig.colorbar(drawn, ax=ax)
    cbar.set_label(f"-log10({score_col})")
    ax.set_title(title)
    ax.axis("off")
    if created_fig:
        fig.tight_layout()
    return fig, ax


def plot_running_sum(
    running_sum: Sequence[float],
    hit_indices: Sequence[int],
    ranking: Optional[pd.Series] = None,
    *,
    title: str = "Running enrichment score",
    figsize: Tuple[float, float] = (8, 5),
) -> Tuple[plt.Figure, np.ndarray]:
    """
    Classic GSEA panel: running sum, hit ticks and (optionally) the ranked scores.

    Returns the figure and the array of axes.
    """
    curve = np.asarray(running_sum, dtype=float)
    n_panels = 3 if ranking is not None else 2
    ratios = [3, 1, 2] if ranking is not None else [3, 1]
    fig, axes = plt.subplots(
        n_panels,
        1,
        figsize=figsize,
        sharex=True,
        gridspec_kw={"height_ratios": ratios},
    )
    positions = np.arange(curve.shape[0])

    axes[0].plot(positions, curve, color="green", linewidth=1.5)
    axes[0].axhline(0, color="black", linewidth=0.8)
    peak = int(np.argmax(np.abs(curve))) if curve.size else 0
    if curve.size:
        axes[0].axvline(peak, color="red", linestyle="dashed", linewidth=1)
    axes[0].set_ylabel("Enrichment score")
    axes[0].set_title(title)

    axes[1].vlines(list(hit_indices), 0, 1, color="black", linewidth=0.6)
    axes[1].set_yticks([])
    axes[1].set_ylabel("Hits")

    if ranking is not None:
        axes[2].fill_between(positions, np.asarray(ranking, dtype=float), color="grey")
        axes[2].axhline(0, color="black", linewidth=0.8)
        axes[2].set_ylabel("Ranked score")
    axes[-1].set_xlabel("Rank in ordered gene list")
    fig.tight_layout()
    return fig, axes
