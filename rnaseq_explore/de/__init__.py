"""Differential expression and gene-set enrichment utilities."""

from .base import (
    DEAnalysisResult,
    GeneSetEnrichmentResult,
)
from .pathways import (
    ENRICHMENT_SCOPES,
    load_pathway_library,
    rank_genes,
    resolve_enrichment_libraries,
    resolve_pathway_filename,
    run_gene_set_enrichment,
    run_gsea,
    run_overrepresentation,
    running_enrichment_score,
)
from .plots import (
    enrichment_dot_plot,
    plot_de_volcano,
    plot_enrichment_network,
    plot_ma,
    plot_running_sum,
)
from .workflow import perform_rnaseq_workflow
from .differential_expression import (
    prepare_deseq_dataset,
    fit_deseq_dataset,
    run_condition_contrast,
    run_pairwise_conditions,
    run_all_pairwise_conditions,
    sort_by_fold_change,
    filter_significant,
    summarize_de_results,
)

__all__ = [
    "DEAnalysisResult",
    "GeneSetEnrichmentResult",
    "ENRICHMENT_SCOPES",
    "load_pathway_library",
    "rank_genes",
    "resolve_enrichment_libraries",
    "resolve_pathway_filename",
    "run_gene_set_enrichment",
    "run_gsea",
    "run_overrepresentation",
    "running_enrichment_score",
    "enrichment_dot_plot",
    "plot_de_volcano",
    "plot_enrichment_network",
    "plot_ma",
    "plot_running_sum",
    "perform_rnaseq_workflow",
    "prepare_deseq_dataset",
    "fit_deseq_dataset",
    "run_condition_contrast",
    "run_pairwise_conditions",
    "run_all_pairwise_conditions",
    "sort_by_fold_change",
    "filter_significant",
    "summarize_de_results",
]
