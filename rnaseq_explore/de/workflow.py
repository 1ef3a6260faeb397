"""High-level orchestration for counts -> normalization -> DE -> enrichment."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Union

import pandas as pd
from matplotlib import pyplot as plt

from ..explore import DEFAULT_TOP_GENES, explore_samples
from ..io import CountDataset, count_dataset_from_frame, load_count_matrix
from ..normalization import estimate_size_factors, log2_transform, normalize_counts
from ..qc import (
    filter_zero_count_genes,
    plot_count_distributions,
    plot_library_sizes,
    summarize_library_sizes,
)
from ..transform import rlog_transform
from ..utils import ensure_directory, sanitize_fragment
from .base import _save_figure
from .differential_expression import (
    DEFAULT_ALPHA,
    filter_significant,
    fit_deseq_dataset,
    prepare_deseq_dataset,
    run_condition_contrast,
    sort_by_fold_change,
)
from .pathways import (
    DEFAULT_MAX_GENE_SET_SIZE,
    DEFAULT_MIN_GENE_SET_SIZE,
    resolve_enrichment_libraries,
    run_gene_set_enrichment,
)

logger = logging.getLogger(__name__)

__all__ = ["perform_rnaseq_workflow"]


def _as_dataset(source: Union[str, Path, pd.DataFrame, CountDataset]) -> CountDataset:
    if isinstance(source, CountDataset):
        return count_dataset_from_frame(source.counts, source=source.parameters.get("source"))
    if isinstance(source, pd.DataFrame):
        return count_dataset_from_frame(source)
    return load_count_matrix(source)


def perform_rnaseq_workflow(
    source: Union[str, Path, pd.DataFrame, CountDataset],
    *,
    treatment: str,
    control: str,
    alpha: float = DEFAULT_ALPHA,
    n_top_genes: int = DEFAULT_TOP_GENES,
    shrink_lfc: bool = True,
    enrichment_libraries: Optional[Union[Sequence[str], Mapping[str, Mapping[str, Sequence[str]]]]] = None,
    enrichment_scope: Optional[Union[str, Sequence[str]]] = None,
    organism: str = "human",
    pathway_base_dir: Optional[Union[str, Path]] = None,
    min_gene_set_size: int = DEFAULT_MIN_GENE_SET_SIZE,
    max_gene_set_size: int = DEFAULT_MAX_GENE_SET_SIZE,
    permutation_num: int = 1000,
    run_ora: bool = False,
    seed: int = 123456,
    n_cpus: int = 1,
    output_dir: Optional[Union[str, Path]] = None,
) -> Mapping[str, Any]:
    """
    Run the exploratory bulk RNA-seq analysis end to end.

    Stages, in order: load and validate counts, drop all-zero genes,
    median-of-ratios normalization, log2 and rlog views, sample correlation
    and PCA, a ``~condition`` negative-binomial GLM contrasting ``treatment``
    with ``control``, then optional GSEA (and over-representation) against the
    requested gene-set libraries.

    ``enrichment_libraries`` takes GMT paths/prefixes, Enrichr library names or
    an in-memory ``{library: {pathway: genes}}`` mapping; ``enrichment_scope``
    (``BP``, ``MF``, ``CC``, ``GO``, ``KEGG``, ``ALL``) adds Enrichr libraries
    for ``organism``. Enrichment is skipped when neither is given.

    When ``output_dir`` is set, CSV tables and PNG figures are written under it.

    Returns
    -------
    dict
        Every intermediate artifact, keyed by stage.
    """
    dataset = _as_dataset(source)
    conditions = dataset.conditions
    if len(conditions) < 2:
        raise ValueError(
            f"At least two condition levels are required; sample names yield {conditions}."
        )

    filtered_counts = filter_zero_count_genes(dataset.counts)
    if filtered_counts.shape[0] == 0:
        raise ValueError("No genes with a non-zero total count remain after filtering.")
    filtered = dataset.with_counts(filtered_counts, filtered=True)

    size_factors = estimate_size_factors(filtered_counts)
    normalized = normalize_counts(filtered_counts, size_factors)
    log2_counts = log2_transform(filtered_counts)
    log2_normalized = log2_transform(normalized)
    library_summary = summarize_library_sizes(
        filtered_counts, normalized, size_factors, metadata=dataset.metadata
    )

    rlog = rlog_transform(filtered_counts, size_factors=size_factors)
    exploration = explore_samples(rlog, dataset.metadata, n_top_genes=n_top_genes)

    dds = prepare_deseq_dataset(
        filtered,
        treatment=treatment,
        control=control,
        inference_kwargs={"n_cpus": n_cpus},
    )
    dds = fit_deseq_dataset(dds)
    de_result = run_condition_contrast(
        dds,
        treatment=treatment,
        control=control,
        alpha=alpha,
        shrink_lfc=shrink_lfc,
    )
    key = de_result.available_contrasts[0]
    results_table = de_result.get_contrast_df(key)
    significant = filter_significant(results_table, alpha=alpha)
    sorted_results = sort_by_fold_change(results_table)

    libraries: Union[Sequence[str], Mapping[str, Mapping[str, Sequence[str]]], None] = None
    if isinstance(enrichment_libraries, Mapping):
        libraries = dict(enrichment_libraries)
    else:
        names = list(enrichment_libraries or [])
        if enrichment_scope is not None:
            for name in resolve_enrichment_libraries(enrichment_scope, organism=organism):
                if name not in names:
                    names.append(name)
        libraries = names or None

    gsea_result = None
    ora_result = None
    if libraries:
        enrichment_kwargs = dict(
            libraries=libraries,
            base_dir=pathway_base_dir,
            organism=organism,
            alpha=alpha,
            min_size=min_gene_set_size,
            max_size=max_gene_set_size,
            seed=seed,
        )
        gsea_result = run_gene_set_enrichment(
            de_result,
            method="gsea",
            permutation_num=permutation_num,
            threads=n_cpus,
            **enrichment_kwargs,
        )
        if run_ora:
            ora_result = run_gene_set_enrichment(de_result, method="ora", **enrichment_kwargs)
    else:
        logger.info("No gene-set libraries requested; skipping enrichment.")

    base_output = ensure_directory(output_dir)
    if base_output is not None:
        _write_outputs(
            base_output,
            key=key,
            filtered_counts=filtered_counts,
            normalized=normalized,
            log2_normalized=log2_normalized,
            rlog=rlog,
            size_factors=size_factors,
            library_summary=library_summary,
            metadata=dataset.metadata,
            exploration=exploration,
            de_result=de_result,
            sorted_results=sorted_results,
            alpha=alpha,
            gsea_result=gsea_result,
            ora_result=ora_result,
        )

    return {
        "dataset": dataset,
        "filtered_counts": filtered_counts,
        "size_factors": size_factors,
        "normalized_counts": normalized,
        "log2_counts": log2_counts,
        "log2_normalized": log2_normalized,
        "library_summary": library_summary,
        "rlog": rlog,
        "exploration": exploration,
        "dds": dds,
        "de": de_result,
        "contrast": key,
        "significant": significant,
        "sorted_results": sorted_results,
        "gsea": gsea_result,
        "ora": ora_result,
    }


def _write_outputs(
    base_output: Path,
    *,
    key: str,
    filtered_counts: pd.DataFrame,
    normalized: pd.DataFrame,
    log2_normalized: pd.DataFrame,
    rlog: pd.DataFrame,
    size_factors: pd.Series,
    library_summary: pd.DataFrame,
    metadata: pd.DataFrame,
    exploration,
    de_result,
    sorted_results: pd.DataFrame,
    alpha: float,
    gsea_result,
    ora_result,
) -> Dict[str, Path]:
    tables = ensure_directory(base_output / "tables")
    figures = ensure_directory(base_output / "figures")
    log = logger.info

    normalized.to_csv(tables / "normalized_counts.csv")
    rlog.to_csv(tables / "rlog.csv")
    size_factors.to_csv(tables / "size_factors.csv")
    library_summary.to_csv(tables / "library_summary.csv")
    sorted_results.to_csv(tables / f"de_{sanitize_fragment(key)}_by_fold_change.csv")
    de_result.save_tables(tables, logger=log)

    fig, _ = plot_library_sizes(filtered_counts, normalized)
    _save_figure(fig, figures / "library_sizes.png", dpi=300, logger=log)
    fig, _ = plot_count_distributions(log2_normalized, metadata=metadata)
    _save_figure(fig, figures / "normalized_count_distributions.png", dpi=300, logger=log)
    exploration.save_plots(figures, file_prefix="rlog", logger=log)
    de_result.save_volcano_plots(output_dir=figures, alpha=alpha, logger=log)
    de_result.save_ma_plots(output_dir=figures, alpha=alpha, logger=log)

    for result in (gsea_result, ora_result):
        if result is None:
            continue
        result.save_tables(tables, logger=log)
        if any(not df.empty for df in result.per_contrast.values()):
            result.save_dot_plots(output_dir=figures, logger=log)
            result.save_network_plots(output_dir=figures, logger=log)
    plt.close("all")
    return {"tables": tables, "figures": figures}
