import numpy as np
import pandas as pd
import pytest

from rnaseq_explore.de.base import DEAnalysisResult, GeneSetEnrichmentResult
from rnaseq_explore.de.pathways import running_enrichment_score


def _make_mock_de_df() -> pd.DataFrame:
    genes = [f"GENE{i}" for i in range(1, 21)]
    return pd.DataFrame(
        {
            "baseMean": np.linspace(10.0, 1000.0, num=len(genes)),
            "log2FoldChange": np.linspace(1.5, -1.5, num=len(genes)),
            "padj": np.linspace(0.001, 0.2, num=len(genes)),
            "gene_name": genes,
        },
        index=pd.Index(genes, name="gene_id"),
    )


def _make_mock_enrichment_df() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "library": ["lib/one", "lib/one", "lib_two"],
            "pathway": ["PathwayA", "PathwayB", "PathwayC"],
            "es": [0.8, -0.5, 0.3],
            "nes": [2.1, -1.4, 0.9],
            "pvalue": [0.001, 0.02, 0.4],
            "fdr": [0.005, 0.05, 0.6],
            "fwer": [0.01, 0.1, 0.9],
            "set_size": [5, 4, 6],
            "matched_size": [5, 4, 6],
            "leading_edge": ["GENE1;GENE2;GENE3", "GENE19;GENE20", "GENE1;GENE2"],
        }
    )


def _make_gsea_result() -> GeneSetEnrichmentResult:
    de_df = _make_mock_de_df()
    ranking = de_df.set_index("gene_name")["log2FoldChange"]
    return GeneSetEnrichmentResult(
        per_contrast={"treatment_vs_control": _make_mock_enrichment_df()},
        libraries=["lib/one", "lib_two"],
        parameters={"method": "gsea"},
        rankings={"treatment_vs_control": ranking},
        gene_sets={
            "lib/one": {
                "PathwayA": ["GENE1", "GENE2", "GENE3", "GENE4", "GENE5"],
                "PathwayB": ["GENE17", "GENE18", "GENE19", "GENE20"],
            }
        },
    )


def test_de_analysis_result_getter_handles_missing():
    df = _make_mock_de_df()
    de_result = DEAnalysisResult(dds=None, contrast_results={"contrastA": df}, parameters={})
    assert de_result.get_contrast_df("contrastA") is df
    assert de_result.get_contrast_df("contrastA", copy=True) is not df
    assert de_result.available_contrasts == ["contrastA"]
    with pytest.raises(KeyError, match="contrastA"):
        de_result.get_contrast_df("missing")


def test_de_analysis_result_significant_uses_stored_alpha():
    de_result = DEAnalysisResult(
        dds=None,
        contrast_results={"contrastA": _make_mock_de_df()},
        parameters={"alpha": 0.01},
    )
    sig = de_result.significant("contrastA")
    assert (sig["padj"] < 0.01).all()
    assert len(de_result.significant("contrastA", alpha=0.1)) > len(sig)


def test_de_analysis_result_saves_tables_and_plots(tmp_path):
    de_result = DEAnalysisResult(
        dds=None,
        contrast_results={"treatment_vs_control": _make_mock_de_df()},
        parameters={"alpha": 0.05},
    )
    logs = []
    tables = de_result.save_tables(tmp_path / "tables", logger=logs.append)
    assert [path.name for path in tables] == [
        "de_treatment_vs_control.csv",
        "de_treatment_vs_control_significant.csv",
    ]
    reloaded = pd.read_csv(tables[0], index_col=0)
    assert list(reloaded.index) == list(_make_mock_de_df().index)

    volcano = de_result.save_volcano_plots(
        output_dir=tmp_path / "figures",
        genes_of_interest=["GENE1"],
        dpi=72,
        logger=logs.append,
    )
    ma = de_result.save_ma_plots(output_dir=tmp_path / "figures", dpi=72, logger=logs.append)
    assert volcano[0].name == "de_volcano_treatment_vs_control.png"
    assert ma[0].name == "MA_plot_treatment_vs_control.png"
    assert all(path.exists() for path in tables + volcano + ma)
    assert any("Saved DE table" in msg for msg in logs)
    assert any("Saved plot" in msg for msg in logs)


def test_enrichment_result_tidy_and_tables(tmp_path):
    result = _make_gsea_result()
    tidy = result.tidy()
    assert list(tidy.columns[:2]) == ["contrast", "library"]
    assert result.tidy() is tidy

    saved = result.save_tables(tmp_path)
    assert saved[0].name == "gsea_treatment_vs_control.csv"
    reloaded = pd.read_csv(saved[0])
    assert list(reloaded["pathway"]) == ["PathwayA", "PathwayB", "PathwayC"]
    with pytest.raises(KeyError):
        result.get_contrast_df("other")


def test_enrichment_result_saves_dot_and_network_plots(tmp_path):
    result = _make_gsea_result()
    logs = []
    dots = result.save_dot_plots(output_dir=tmp_path, dpi=72, logger=logs.append)
    assert sorted(path.name for path in dots) == [
        "gsea_dotplot_treatment_vs_control_lib_one.png",
        "gsea_dotplot_treatment_vs_control_lib_two.png",
    ]
    network = result.save_network_plots(output_dir=tmp_path, dpi=72, logger=logs.append)
    assert network[0].name == "gsea_network_treatment_vs_control.png"
    assert all(path.exists() for path in dots + network)


def test_enrichment_result_skips_empty_network(tmp_path):
    result = GeneSetEnrichmentResult(
        per_contrast={"a_vs_b": _make_mock_enrichment_df().iloc[0:0]},
        libraries=[],
        parameters={"method": "ora"},
    )
    logs = []
    assert result.save_network_plots(output_dir=tmp_path, logger=logs.append) == []
    assert any("skipping" in msg for msg in logs)


def test_running_sum_plots_use_stored_ranking(tmp_path):
    result = _make_gsea_result()
    logs = []
    saved = result.save_running_sum_plots(
        "treatment_vs_control",
        ["PathwayA", "PathwayC", "Unknown"],
        output_dir=tmp_path,
        dpi=72,
        logger=logs.append,
    )
    assert [path.name for path in saved] == ["treatment_vs_control_running_sum_PathwayA.png"]
    assert saved[0].exists()
    assert any("Saved running-sum plot" in msg for msg in logs)
    assert any("not recorded" in msg for msg in logs)
    assert any("not found" in msg for msg in logs)

    es, _, _ = running_enrichment_score(result.rankings["treatment_vs_control"], ["GENE1", "GENE2"])
    assert es > 0
    with pytest.raises(KeyError):
        result.save_running_sum_plots("other", ["PathwayA"], output_dir=tmp_path)
