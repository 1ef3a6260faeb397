"""Differential expression helpers backed by PyDESeq2."""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from itertools import combinations
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ..io import CountDataset
from ..utils import sanitize_fragment
from .base import DEAnalysisResult, _save_figure
from .plots import plot_ma

logger = logging.getLogger(__name__)

__all__ = [
    "prepare_deseq_dataset",
    "fit_deseq_dataset",
    "run_condition_contrast",
    "run_pairwise_conditions",
    "run_all_pairwise_conditions",
    "sort_by_fold_change",
    "filter_significant",
    "summarize_de_results",
]

DEFAULT_ALPHA = 0.05
RESULT_COLUMNS = ["baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj"]


def _import_pydeseq2():
    try:
        from pydeseq2.dds import DeseqDataSet  # type: ignore
        from pydeseq2.ds import DeseqStats  # type: ignore
        from pydeseq2.default_inference import DefaultInference  # type: ignore
    except ImportError as exc:
        raise ImportError(
            "Optional dependency 'pydeseq2' is required for differential expression. "
            "Install it via pip or conda before using `rnaseq_explore.de.differential_expression`."
        ) from exc
    return DeseqDataSet, DeseqStats, DefaultInference


def _effective_n_jobs(n_jobs: Optional[int]) -> int:
    """Normalize parallelism requests (0 -> all CPUs, negative offsets allowed)."""
    total = os.cpu_count() or 1
    if n_jobs is None:
        return 1
    if n_jobs == 0:
        return total
    if n_jobs < 0:
        return max(1, total + 1 + int(n_jobs))
    return max(1, int(n_jobs))


def contrast_key(treatment: str, control: str) -> str:
    return f"{treatment}_vs_{control}"


def _check_alignment(counts: pd.DataFrame, metadata: pd.DataFrame) -> None:
    samples = set(map(str, counts.columns))
    meta_samples = set(map(str, metadata.index))
    if samples == meta_samples:
        return
    if meta_samples == set(map(str, counts.index)):
        raise ValueError(
            "Sample metadata matches the count matrix rows rather than its columns; "
            "the count matrix appears to be transposed (expected genes x samples)."
        )
    missing = sorted(meta_samples - samples)[:5]
    extra = sorted(samples - meta_samples)[:5]
    raise ValueError(
        "Sample metadata does not match the count matrix columns "
        f"(missing from counts: {missing}; missing from metadata: {extra}). "
        "Check that the matrix is genes x samples and not transposed."
    )


def prepare_deseq_dataset(
    dataset: CountDataset,
    *,
    treatment: str,
    control: str,
    condition_column: str = "condition",
    min_counts: Optional[float] = None,
    refit_cooks: bool = True,
    inference_kwargs: Optional[Mapping[str, Union[int, float]]] = None,
) -> "DeseqDataSet":
    """
    Prepare a :class:`pydeseq2.dds.DeseqDataSet` for a ``~condition`` design.

    The count matrix is transposed to PyDESeq2's samples x genes layout and the
    condition column becomes an ordered categorical with ``control`` first so
    that it is the reference level. Every sample stays in the model; the
    treatment/control contrast is applied at testing time.

    Parameters
    ----------
    dataset:
        Filtered counts (genes x samples) and sample metadata.
    treatment, control:
        Condition levels to contrast. Both must be present.
    condition_column:
        Metadata column holding the condition labels.
    min_counts:
        Optional extra filter on total counts per gene (strictly greater than).
    refit_cooks:
        Refit genes with outlier samples after Cook's distance screening.
    inference_kwargs:
        Passed to :class:`pydeseq2.default_inference.DefaultInference`.
    """
    DeseqDataSet, _, DefaultInference = _import_pydeseq2()

    counts = dataset.counts
    metadata = dataset.metadata
    _check_alignment(counts, metadata)
    if condition_column not in metadata.columns:
        raise KeyError(f"Metadata is missing the '{condition_column}' column.")

    levels = list(dict.fromkeys(metadata[condition_column].astype(str)))
    if len(levels) < 2:
        raise ValueError(
            f"At least two condition levels are required for a contrast; found {levels}."
        )
    for level in (treatment, control):
        if level not in levels:
            raise ValueError(f"Condition level '{level}' not found; available levels: {levels}.")
    if treatment == control:
        raise ValueError("Treatment and control must be different condition levels.")

    if min_counts is not None:
        keep = counts.sum(axis=1) > min_counts
        counts = counts.loc[keep]
        if counts.shape[0] == 0:
            raise ValueError("No genes remain after the min_counts filter.")

    ordered_levels = [control] + [level for level in levels if level != control]
    design_df = pd.DataFrame(
        {
            condition_column: pd.Categorical(
                metadata.loc[counts.columns, condition_column].astype(str),
                categories=ordered_levels,
            )
        },
        index=pd.Index(counts.columns, name=metadata.index.name),
    )

    inference_kwargs = dict(inference_kwargs or {})
    inference_kwargs["n_cpus"] = _effective_n_jobs(inference_kwargs.get("n_cpus", 1))
    inference = DefaultInference(**inference_kwargs)

    dds = DeseqDataSet(
        counts=counts.T,
        metadata=design_df,
        design=f"~{condition_column}",
        refit_cooks=refit_cooks,
        inference=inference,
    )
    logger.info(
        "Prepared DESeq2 dataset: %d samples x %d genes, levels %s (reference '%s')",
        counts.shape[1],
        counts.shape[0],
        ordered_levels,
        control,
    )
    return dds


def fit_deseq_dataset(dds: "DeseqDataSet") -> "DeseqDataSet":
    """
    Run the standard DESeq2 fitting steps on an existing dataset.
    """
    _import_pydeseq2()
    dds.fit_size_factors()
    dds.fit_genewise_dispersions()
    dds.fit_dispersion_trend()
    dds.fit_dispersion_prior()
    dds.fit_MAP_dispersions()
    dds.fit_LFC()
    dds.calculate_cooks()
    if getattr(dds, "refit_cooks", False):
        dds.refit()
    return dds


def _ensure_design_matrix(dds: "DeseqDataSet") -> pd.DataFrame:
    if "design_matrix" not in dds.obsm:
        raise AttributeError("DeseqDataSet is missing 'design_matrix' in `.obsm`. Fit the dataset first.")
    matrix = dds.obsm["design_matrix"]
    if not isinstance(matrix, pd.DataFrame):
        matrix = pd.DataFrame(matrix)
    return matrix


def _condition_levels(dds: "DeseqDataSet", condition_column: str) -> List[str]:
    values = dds.obs[condition_column]
    if isinstance(values.dtype, pd.CategoricalDtype):
        return [str(level) for level in values.cat.categories if (values == level).any()]
    return list(dict.fromkeys(values.astype(str)))


def _find_shrinkage_coefficient(
    design_cols: Sequence[str],
    condition_column: str,
    treatment: str,
) -> Optional[str]:
    suffix = f"[T.{treatment}]"
    for column in design_cols:
        if column.startswith(condition_column) and column.endswith(suffix):
            return column
    return None


def _run_single_contrast(
    dds: "DeseqDataSet",
    contrast: List[str],
    *,
    alpha: float,
    cooks_filter: bool,
    independent_filter: bool,
    shrink_coeff: Optional[str],
) -> "DeseqStats":
    _, DeseqStats, _ = _import_pydeseq2()
    ds = DeseqStats(
        dds,
        contrast=contrast,
        alpha=alpha,
        cooks_filter=cooks_filter,
        independent_filter=independent_filter,
        quiet=True,
    )
    ds.run_wald_test()
    if ds.cooks_filter:
        ds._cooks_filtering()
    if ds.independent_filter:
        ds._independent_filtering()
    else:
        ds._p_value_adjustment()
    ds.summary()
    if shrink_coeff is not None:
        ds.lfc_shrink(coeff=shrink_coeff)
    return ds


def _standardize_gene_annotations(df: pd.DataFrame) -> pd.DataFrame:
    annot = df.copy()
    rename_map = {
        "Gene stable ID": "gene_id",
        "geneID": "gene_id",
        "GeneID": "gene_id",
        "ensembl_id": "gene_id",
        "Gene name": "gene_name",
        "geneSymbol": "gene_name",
        "symbol": "gene_name",
        "Gene description": "gene_description",
        "description": "gene_description",
    }
    for orig, new in rename_map.items():
        if orig in annot.columns and new not in annot.columns:
            annot = annot.rename(columns={orig: new})

    if "gene_id" not in annot.columns:
        if annot.index.name == "gene_id":
            annot = annot.reset_index(drop=False)
        else:
            raise KeyError(
                "Gene annotations must include a 'gene_id' column or be indexed by gene_id."
            )

    annot["gene_id"] = annot["gene_id"].astype(str)
    annot = annot.drop_duplicates(subset="gene_id", keep="first")
    annot = annot.set_index("gene_id", drop=True)
    if "gene_name" in annot.columns:
        annot["gene_name"] = annot["gene_name"].astype(str)
    return annot


def _merge_annotations(
    results_df: pd.DataFrame,
    gene_annotations: Optional[pd.DataFrame],
) -> pd.DataFrame:
    """Left-join optional annotations onto a results table; ``gene_name`` falls back to the id."""
    merged = results_df.copy()
    if gene_annotations is not None:
        annot = _standardize_gene_annotations(gene_annotations)
        extra = [col for col in annot.columns if col not in merged.columns]
        merged = merged.join(annot[extra], how="left")
    index_series = pd.Series(merged.index.astype(str), index=merged.index)
    if "gene_name" in merged.columns:
        merged["gene_name"] = merged["gene_name"].fillna(index_series)
    else:
        merged["gene_name"] = index_series
    return merged


def _run_contrasts(
    dds: "DeseqDataSet",
    pairs: Sequence[Tuple[str, str]],
    *,
    condition_column: str,
    alpha: float,
    shrink_lfc: bool,
    cooks_filter: bool,
    independent_filter: bool,
    gene_annotations: Optional[pd.DataFrame],
    plot_dir: Optional[Union[str, Path]],
    save_dir: Optional[Union[str, Path]],
    save_objects: bool,
    n_jobs: int,
    mode: str,
) -> DEAnalysisResult:
    matrix = _ensure_design_matrix(dds)
    design_cols = [str(col) for col in matrix.columns]
    levels = _condition_levels(dds, condition_column)

    plot_dir_path = Path(plot_dir) if plot_dir is not None else None
    save_dir_path = Path(save_dir) if save_dir is not None else None
    if plot_dir_path is not None:
        plot_dir_path.mkdir(parents=True, exist_ok=True)
    if save_dir_path is not None:
        save_dir_path.mkdir(parents=True, exist_ok=True)

    tasks: List[Tuple[str, List[str], Optional[str]]] = []
    for treatment, control in pairs:
        if treatment not in levels or control not in levels:
            raise ValueError(
                f"Both conditions must exist in the dataset: {treatment}, {control} (levels: {levels})"
            )
        if treatment == control:
            raise ValueError(f"Cannot contrast condition '{treatment}' with itself.")
        shrink_coeff = None
        if shrink_lfc:
            reference = levels[0]
            shrink_coeff = (
                _find_shrinkage_coefficient(design_cols, condition_column, treatment)
                if control == reference
                else None
            )
            if shrink_coeff is None:
                logger.warning(
                    "No design coefficient for %s vs %s; reporting unshrunken fold changes.",
                    treatment,
                    control,
                )
        tasks.append(
            (contrast_key(treatment, control), [condition_column, treatment, control], shrink_coeff)
        )

    def compute(key: str, contrast: List[str], shrink_coeff: Optional[str]) -> Tuple[str, object, pd.DataFrame]:
        stats_obj = _run_single_contrast(
            dds,
            contrast,
            alpha=alpha,
            cooks_filter=cooks_filter,
            independent_filter=independent_filter,
            shrink_coeff=shrink_coeff,
        )
        results_df = stats_obj.results_df.copy()
        results_df.index = results_df.index.astype(str)
        results_df.index.name = "gene_id"
        results_df = _merge_annotations(results_df, gene_annotations)
        return key, stats_obj, results_df

    results_map: Dict[str, Tuple[object, pd.DataFrame]] = {}
    workers = _effective_n_jobs(n_jobs)
    if workers == 1 or len(tasks) <= 1:
        for key, contrast, shrink_coeff in tasks:
            key, stats_obj, results_df = compute(key, contrast, shrink_coeff)
            results_map[key] = (stats_obj, results_df)
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_map = {
                executor.submit(compute, key, contrast, shrink_coeff): key
                for key, contrast, shrink_coeff in tasks
            }
            for future in as_completed(future_map):
                key, stats_obj, results_df = future.result()
                results_map[key] = (stats_obj, results_df)

    contrast_results: Dict[str, pd.DataFrame] = {}
    artifacts: MutableMapping[str, object] = {}
    for key, _, shrink_coeff in tasks:
        stats_obj, results_df = results_map[key]
        contrast_results[key] = results_df
        artifacts[key] = stats_obj
        summary = summarize_de_results(results_df, alpha=alpha)
        logger.info(
            "%s: %d up, %d down at padj < %g (%d genes tested)",
            key,
            summary["up"],
            summary["down"],
            alpha,
            summary["tested"],
        )

        if plot_dir_path is not None:
            fig, _ = plot_ma(results_df, alpha=alpha, title=f"{key} MA plot")
            _save_figure(fig, plot_dir_path / f"MA_plot_{sanitize_fragment(key)}.png", dpi=300)

        if save_dir_path is not None:
            results_df.to_csv(save_dir_path / f"{mode}_{sanitize_fragment(key)}.csv")
            if save_objects:
                import dill

                with open(save_dir_path / f"deseq_stats_{sanitize_fragment(key)}.dill", "wb") as handle:
                    dill.dump(stats_obj, handle)

    return DEAnalysisResult(
        dds=dds,
        contrast_results=contrast_results,
        parameters={
            "alpha": alpha,
            "mode": mode,
            "condition_column": condition_column,
            "shrink_lfc": shrink_lfc,
            "shrunk_contrasts": [key for key, _, coeff in tasks if coeff is not None],
            "cooks_filter": cooks_filter,
            "independent_filter": independent_filter,
            "n_jobs": workers,
        },
        design_columns=design_cols,
        artifacts=artifacts,
    )


def run_condition_contrast(
    dds: "DeseqDataSet",
    *,
    treatment: str,
    control: str,
    condition_column: str = "condition",
    alpha: float = DEFAULT_ALPHA,
    shrink_lfc: bool = True,
    cooks_filter: bool = True,
    independent_filter: bool = True,
    gene_annotations: Optional[pd.DataFrame] = None,
    plot_dir: Optional[Union[str, Path]] = None,
    save_dir: Optional[Union[str, Path]] = None,
    save_objects: bool = False,
) -> DEAnalysisResult:
    """
    Wald test of ``treatment`` against ``control`` on a fitted dataset.

    Cook's outlier filtering and independent filtering follow PyDESeq2: genes
    they remove keep their row with an undefined ``padj``. When
    ``shrink_lfc`` is set, the reported ``log2FoldChange``/``lfcSE`` are the
    apeGLM-shrunken estimates while ``stat``/``pvalue``/``padj`` stay those of
    the unshrunken Wald test.
    """
    return _run_contrasts(
        dds,
        [(treatment, control)],
        condition_column=condition_column,
        alpha=alpha,
        shrink_lfc=shrink_lfc,
        cooks_filter=cooks_filter,
        independent_filter=independent_filter,
        gene_annotations=gene_annotations,
        plot_dir=plot_dir,
        save_dir=save_dir,
        save_objects=save_objects,
        n_jobs=1,
        mode="contrast",
    )


def run_pairwise_conditions(
    dds: "DeseqDataSet",
    condition_pairs: Iterable[Tuple[str, str]],
    *,
    condition_column: str = "condition",
    alpha: float = DEFAULT_ALPHA,
    shrink_lfc: bool = False,
    cooks_filter: bool = True,
    independent_filter: bool = True,
    gene_annotations: Optional[pd.DataFrame] = None,
    plot_dir: Optional[Union[str, Path]] = None,
    save_dir: Optional[Union[str, Path]] = None,
    save_objects: bool = False,
    n_jobs: int = 1,
) -> DEAnalysisResult:
    """
    Run several ``(treatment, control)`` contrasts on one fitted dataset.

    Shrinkage is only available for contrasts against the reference level.
    """
    return _run_contrasts(
        dds,
        list(condition_pairs),
        condition_column=condition_column,
        alpha=alpha,
        shrink_lfc=shrink_lfc,
        cooks_filter=cooks_filter,
        independent_filter=independent_filter,
        gene_annotations=gene_annotations,
        plot_dir=plot_dir,
        save_dir=save_dir,
        save_objects=save_objects,
        n_jobs=n_jobs,
        mode="pairwise",
    )


def run_all_pairwise_conditions(
    dds: "DeseqDataSet",
    *,
    condition_column: str = "condition",
    alpha: float = DEFAULT_ALPHA,
    shrink_lfc: bool = False,
    cooks_filter: bool = True,
    independent_filter: bool = True,
    gene_annotations: Optional[pd.DataFrame] = None,
    plot_dir: Optional[Union[str, Path]] = None,
    save_dir: Optional[Union[str, Path]] = None,
    save_objects: bool = False,
    n_jobs: int = 1,
) -> DEAnalysisResult:
    """Convenience wrapper that evaluates every pair of condition levels."""
    levels = _condition_levels(dds, condition_column)
    if len(levels) < 2:
        raise ValueError("Need at least two condition levels to run pairwise comparisons.")
    # Later levels are contrasted against earlier ones, so the reference is always the control.
    pairs = [(later, earlier) for earlier, later in combinations(levels, 2)]
    return run_pairwise_conditions(
        dds,
        pairs,
        condition_column=condition_column,
        alpha=alpha,
        shrink_lfc=shrink_lfc,
        cooks_filter=cooks_filter,
        independent_filter=independent_filter,
        gene_annotations=gene_annotations,
        plot_dir=plot_dir,
        save_dir=save_dir,
        save_objects=save_objects,
        n_jobs=n_jobs,
    )


def sort_by_fold_change(
    df: pd.DataFrame,
    column: str = "log2FoldChange",
    *,
    ascending: bool = False,
) -> pd.DataFrame:
    """Stable sort on a fold-change column; undefined values go last."""
    if column not in df.columns:
        raise KeyError(f"Column '{column}' not found in results table.")
    return df.sort_values(column, ascending=ascending, kind="mergesort", na_position="last")


def filter_significant(
    df: pd.DataFrame,
    *,
    alpha: float = DEFAULT_ALPHA,
    lfc_threshold: float = 0.0,
    p_col: str = "padj",
    lfc_col: str = "log2FoldChange",
) -> pd.DataFrame:
    """
    Rows with a defined adjusted p-value below ``alpha``, ordered by ``p_col``.

    ``lfc_threshold`` additionally requires ``|log2FoldChange| > lfc_threshold``
    when positive.
    """
    missing = [col for col in (p_col, lfc_col) if col not in df.columns]
    if missing:
        raise KeyError(f"Results table missing required columns: {missing}")
    mask = df[p_col].notna() & (df[p_col] < alpha)
    if lfc_threshold > 0:
        mask &= df[lfc_col].abs() > lfc_threshold
    return df.loc[mask].sort_values(p_col, kind="mergesort")


def summarize_de_results(df: pd.DataFrame, *, alpha: float = DEFAULT_ALPHA) -> Dict[str, int]:
    """
    Count genes by outcome, in the spirit of DESeq2's ``summary``.

    ``outliers`` have a defined mean but no p-value (Cook's filter);
    ``low_counts`` have a p-value but no adjusted p-value (independent filter).
    """
    sig = df["padj"].notna() & (df["padj"] < alpha)
    lfc = df["log2FoldChange"]
    return {
        "tested": int(df.shape[0]),
        "up": int((sig & (lfc > 0)).sum()),
        "down": int((sig & (lfc < 0)).sum()),
        "outliers": int(((df["baseMean"] > 0) & df["pvalue"].isna()).sum()),
        "low_counts": int((df["pvalue"].notna() & df["padj"].isna()).sum()),
        "zero_mean": int((df["baseMean"] == 0).sum()),
    }
