import logging

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

from rnaseq_explore.io import build_sample_metadata
from rnaseq_explore.normalization import estimate_size_factors, log2_transform, normalize_counts
from rnaseq_explore.qc import (
    filter_zero_count_genes,
    library_sizes,
    plot_count_distributions,
    plot_library_sizes,
    plot_sample_scatter,
    summarize_library_sizes,
)
from rnaseq_explore.utils import simulate_count_matrix


def _counts_with_zero_gene() -> pd.DataFrame:
    counts = simulate_count_matrix(50, seed=3)
    counts.loc["ZERO"] = 0
    return counts


def test_filter_removes_all_zero_genes_and_is_idempotent():
    counts = _counts_with_zero_gene()
    filtered = filter_zero_count_genes(counts)
    assert "ZERO" not in filtered.index
    assert filtered.shape[0] == counts.shape[0] - 1
    pd.testing.assert_frame_equal(filter_zero_count_genes(filtered), filtered)
    # Pure: the input keeps its zero row
    assert "ZERO" in counts.index


def test_filter_keeps_genes_seen_in_a_single_sample():
    counts = pd.DataFrame({"A_1": [0, 1], "B_1": [0, 0]}, index=["G1", "G2"])
    assert list(filter_zero_count_genes(counts).index) == ["G2"]


def test_filter_warns_on_empty_result(caplog):
    counts = pd.DataFrame({"A_1": [0, 0], "B_1": [0, 0]}, index=["G1", "G2"])
    with caplog.at_level(logging.WARNING, logger="rnaseq_explore.qc"):
        filtered = filter_zero_count_genes(counts)
    assert filtered.empty
    assert any("No genes" in rec.getMessage() for rec in caplog.records)


def test_summarize_library_sizes():
    counts = filter_zero_count_genes(_counts_with_zero_gene())
    sf = estimate_size_factors(counts)
    normalized = normalize_counts(counts, sf)
    meta = build_sample_metadata(counts.columns)
    summary = summarize_library_sizes(counts, normalized, sf, metadata=meta)
    assert list(summary.columns) == ["condition", "raw_total", "detected_genes", "size_factor", "normalized_total"]
    pd.testing.assert_series_equal(summary["raw_total"], library_sizes(counts), check_names=False)
    assert summary.index.name == "sample"


def test_qc_plots_return_figure_and_axes():
    counts = filter_zero_count_genes(_counts_with_zero_gene())
    normalized = normalize_counts(counts)
    meta = build_sample_metadata(counts.columns)

    fig, ax = plot_library_sizes(counts, normalized)
    assert ax.get_title() == "Library sizes"
    plt.close(fig)

    fig, ax = plot_count_distributions(log2_transform(normalized), metadata=meta)
    assert len(ax.get_xticklabels()) == counts.shape[1]
    plt.close(fig)

    fig, ax = plot_sample_scatter(log2_transform(normalized), "control_1", "treatment_1")
    assert ax.get_xlabel() == "control_1"
    plt.close(fig)


def test_sample_scatter_unknown_sample():
    counts = simulate_count_matrix(10, seed=1)
    with pytest.raises(KeyError):
        plot_sample_scatter(np.log2(counts + 1), "control_1", "missing_1")
