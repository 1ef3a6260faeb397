import numpy as np
import pandas as pd
import pytest

from rnaseq_explore.de.differential_expression import (
    filter_significant,
    sort_by_fold_change,
    summarize_de_results,
)
from rnaseq_explore.io import count_dataset_from_frame
from rnaseq_explore.qc import filter_zero_count_genes
from rnaseq_explore.utils import simulate_count_matrix


def _simulated_dataset():
    counts = simulate_count_matrix(200, dispersion=0.05, mean_range=(50.0, 2000.0), seed=99)
    # Low-variance gene with a 4-fold increase in treatment
    counts.loc["DE_GENE"] = [100, 102, 98, 400, 405, 395]
    counts.loc["NEVER_SEEN"] = 0
    return count_dataset_from_frame(counts)


@pytest.fixture(scope="module")
def fitted():
    pytest.importorskip("pydeseq2")
    from rnaseq_explore.de.differential_expression import fit_deseq_dataset, prepare_deseq_dataset

    dataset = _simulated_dataset()
    filtered = dataset.with_counts(filter_zero_count_genes(dataset.counts))
    dds = prepare_deseq_dataset(
        filtered,
        treatment="treatment",
        control="control",
        inference_kwargs={"n_cpus": 1},
    )
    return filtered, fit_deseq_dataset(dds)


def test_known_fold_change_is_detected(fitted):
    from rnaseq_explore.de.differential_expression import run_condition_contrast

    filtered, dds = fitted
    result = run_condition_contrast(dds, treatment="treatment", control="control")
    assert result.available_contrasts == ["treatment_vs_control"]
    df = result.get_contrast_df("treatment_vs_control")
    assert df.loc["DE_GENE", "padj"] < 0.05
    assert df.loc["DE_GENE", "log2FoldChange"] == pytest.approx(2.0, abs=0.5)
    assert result.parameters["shrunk_contrasts"] == ["treatment_vs_control"]


def test_one_row_per_filtered_gene(fitted):
    from rnaseq_explore.de.differential_expression import run_condition_contrast

    filtered, dds = fitted
    df = run_condition_contrast(dds, treatment="treatment", control="control", shrink_lfc=False).get_contrast_df(
        "treatment_vs_control"
    )
    assert sorted(df.index) == sorted(filtered.counts.index)
    assert "NEVER_SEEN" not in df.index
    assert {"baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj", "gene_name"} <= set(df.columns)
    defined = df["padj"].notna() & df["pvalue"].notna()
    assert (df.loc[defined, "padj"] >= df.loc[defined, "pvalue"] - 1e-12).all()


def test_reverse_contrast_flips_sign(fitted):
    from rnaseq_explore.de.differential_expression import run_pairwise_conditions

    _, dds = fitted
    result = run_pairwise_conditions(dds, [("control", "treatment")], shrink_lfc=True)
    df = result.get_contrast_df("control_vs_treatment")
    assert df.loc["DE_GENE", "log2FoldChange"] < -1.5
    # Not a coefficient of the design, so nothing was shrunk
    assert result.parameters["shrunk_contrasts"] == []


def test_all_pairwise_conditions_uses_reference_as_control(fitted):
    from rnaseq_explore.de.differential_expression import run_all_pairwise_conditions

    _, dds = fitted
    result = run_all_pairwise_conditions(dds)
    assert result.available_contrasts == ["treatment_vs_control"]


def test_contrast_writes_tables_and_plots(tmp_path, fitted):
    from rnaseq_explore.de.differential_expression import run_condition_contrast

    _, dds = fitted
    run_condition_contrast(
        dds,
        treatment="treatment",
        control="control",
        shrink_lfc=False,
        plot_dir=tmp_path / "plots",
        save_dir=tmp_path / "tables",
    )
    assert (tmp_path / "plots" / "MA_plot_treatment_vs_control.png").exists()
    assert (tmp_path / "tables" / "contrast_treatment_vs_control.csv").exists()


def test_prepare_rejects_unknown_or_single_levels():
    pytest.importorskip("pydeseq2")
    from rnaseq_explore.de.differential_expression import prepare_deseq_dataset

    dataset = _simulated_dataset()
    with pytest.raises(ValueError):
        prepare_deseq_dataset(dataset, treatment="drug", control="control")
    with pytest.raises(ValueError):
        prepare_deseq_dataset(dataset, treatment="control", control="control")

    single = count_dataset_from_frame(dataset.counts[["control_1", "control_2", "control_3"]])
    with pytest.raises(ValueError):
        prepare_deseq_dataset(single, treatment="treatment", control="control")


def _results_table() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "baseMean": [10.0, 50.0, 0.0, 30.0, 20.0, 40.0],
            "log2FoldChange": [1.0, np.nan, 0.0, 1.0, -2.0, 3.0],
            "lfcSE": [0.1] * 6,
            "stat": [1.0] * 6,
            "pvalue": [0.001, np.nan, np.nan, 0.2, 0.0001, 0.01],
            "padj": [0.01, np.nan, np.nan, np.nan, 0.001, 0.04],
        },
        index=["A", "B", "C", "D", "E", "F"],
    )


def test_sort_by_fold_change_is_stable_and_idempotent():
    df = _results_table()
    ordered = sort_by_fold_change(df)
    assert list(ordered.index) == ["F", "A", "D", "C", "E", "B"]
    pd.testing.assert_frame_equal(sort_by_fold_change(ordered), ordered)
    assert list(sort_by_fold_change(df, ascending=True).index) == ["E", "C", "A", "D", "F", "B"]
    with pytest.raises(KeyError):
        sort_by_fold_change(df, "missing")


def test_filter_significant_only_keeps_defined_padj():
    df = _results_table()
    sig = filter_significant(df, alpha=0.05)
    assert list(sig.index) == ["E", "A", "F"]
    assert list(filter_significant(df, alpha=0.05, lfc_threshold=1.5).index) == ["E", "F"]


def test_summarize_de_results_counts_outcomes():
    summary = summarize_de_results(_results_table(), alpha=0.05)
    assert summary == {
        "tested": 6,
        "up": 2,
        "down": 1,
        "outliers": 1,
        "low_counts": 1,
        "zero_mean": 1,
    }
