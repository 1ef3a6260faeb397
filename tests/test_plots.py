import numpy as np
import pandas as pd
import pytest

import matplotlib.pyplot as plt

from rnaseq_explore.de.plots import (
    build_enrichment_network,
    enrichment_dot_plot,
    plot_de_volcano,
    plot_enrichment_network,
    plot_ma,
    plot_running_sum,
    volcano_plot,
)


def _make_de_df() -> pd.DataFrame:
    genes = [f"GENE{i}" for i in range(1, 21)]
    return pd.DataFrame(
        {
            "baseMean": np.linspace(0.0, 1000.0, num=len(genes)),
            "log2FoldChange": np.linspace(-3.0, 3.0, num=len(genes)),
            "padj": np.r_[np.linspace(0.0001, 0.2, num=len(genes) - 1), np.nan],
            "gene_name": genes,
        },
        index=pd.Index(genes, name="gene_id"),
    )


def _make_enrichment_df() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "library": "toy",
            "pathway": ["SET_A", "SET_B", "SET_C", "SET_D"],
            "fdr": [0.001, 0.01, 0.2, 0.5],
            "matched_size": [10, 8, 5, 4],
            "set_size": [20, 10, 50, 4],
            "leading_edge": ["G1;G2;G3", "G2;G3;G4", "G9", "G1,G2,G3"],
        }
    )


def test_volcano_plot_skips_undefined_rows():
    df = _make_de_df()
    fig, ax = volcano_plot(df, alpha=0.05)
    drawn = sum(collection.get_offsets().shape[0] for collection in ax.collections)
    assert drawn == df["padj"].notna().sum()
    plt.close(fig)


def test_plot_de_volcano_labels_requested_genes():
    fig, ax = plot_de_volcano(_make_de_df(), genes_of_interest=["GENE1", "GENE20", "MISSING"])
    labels = [text.get_text() for text in ax.texts]
    # GENE20 has no adjusted p-value and is not drawn
    assert labels == ["GENE1"]
    plt.close(fig)


def test_plot_ma_uses_log_scale_and_drops_zero_means():
    fig, ax = plot_ma(_make_de_df())
    assert ax.get_xscale() == "log"
    drawn = sum(collection.get_offsets().shape[0] for collection in ax.collections)
    assert drawn == 19
    plt.close(fig)


def test_enrichment_dot_plot_keeps_top_terms():
    fig, ax = enrichment_dot_plot(_make_enrichment_df(), top_n=2)
    labels = [tick.get_text() for tick in ax.get_yticklabels()]
    assert set(labels) == {"SET_A", "SET_B"}
    plt.close(fig)
    with pytest.raises(ValueError):
        enrichment_dot_plot(_make_enrichment_df().iloc[0:0])


def test_build_enrichment_network_links_overlapping_terms():
    graph = build_enrichment_network(_make_enrichment_df(), jaccard_cutoff=0.4)
    assert set(graph.nodes) == {"SET_A", "SET_B", "SET_C", "SET_D"}
    assert graph.has_edge("SET_A", "SET_D")
    assert graph.edges["SET_A", "SET_D"]["weight"] == pytest.approx(1.0)
    assert graph.edges["SET_A", "SET_B"]["weight"] == pytest.approx(0.5)
    assert not graph.has_edge("SET_A", "SET_C")
    assert graph.nodes["SET_A"]["size"] == 3


def test_plot_enrichment_network_returns_axes():
    fig, ax = plot_enrichment_network(_make_enrichment_df(), top_n=3)
    assert ax.get_title() == "Enrichment network"
    plt.close(fig)
    with pytest.raises(ValueError):
        plot_enrichment_network(_make_enrichment_df().iloc[0:0])


def test_plot_running_sum_panel_count():
    curve = np.array([0.2, 0.4, 0.3, 0.1, 0.0])
    ranking = pd.Series([2.0, 1.0, 0.0, -1.0, -2.0], index=list("ABCDE"))
    fig, axes = plot_running_sum(curve, [0, 1], ranking)
    assert len(axes) == 3
    plt.close(fig)
    fig, axes = plot_running_sum(curve, [0, 1])
    assert len(axes) == 2
    plt.close(fig)
