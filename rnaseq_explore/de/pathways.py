"""Gene-set libraries and enrichment analysis (GSEA and over-representation)."""

from __future__ import annotations

import csv
import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .base import DEAnalysisResult, GeneSetEnrichmentResult
from .differential_expression import DEFAULT_ALPHA, filter_significant

logger = logging.getLogger(__name__)

__all__ = [
    "GSEA_COLUMNS",
    "ORA_COLUMNS",
    "ENRICHMENT_SCOPES",
    "rank_genes",
    "running_enrichment_score",
    "run_gsea",
    "run_overrepresentation",
    "resolve_pathway_filename",
    "load_pathway_library",
    "load_multiple_pathway_libraries",
    "resolve_enrichment_libraries",
    "run_gene_set_enrichment",
]

DEFAULT_MIN_GENE_SET_SIZE = 10
DEFAULT_MAX_GENE_SET_SIZE = 500
PATHWAY_FILE_SUFFIX = ".gmt"

GSEA_COLUMNS = [
    "library",
    "pathway",
    "es",
    "nes",
    "pvalue",
    "fdr",
    "fwer",
    "set_size",
    "matched_size",
    "leading_edge",
]
ORA_COLUMNS = [
    "library",
    "pathway",
    "overlap",
    "overlap_size",
    "set_size",
    "pvalue",
    "padj",
    "odds_ratio",
    "combined_score",
    "genes",
]

# Enrichr library names per organism and ontology scope.
ENRICHMENT_SCOPES: Dict[str, Dict[str, List[str]]] = {
    "human": {
        "BP": ["GO_Biological_Process_2023"],
        "MF": ["GO_Molecular_Function_2023"],
        "CC": ["GO_Cellular_Component_2023"],
        "KEGG": ["KEGG_2021_Human"],
    },
    "mouse": {
        "BP": ["GO_Biological_Process_2023"],
        "MF": ["GO_Molecular_Function_2023"],
        "CC": ["GO_Cellular_Component_2023"],
        "KEGG": ["KEGG_2019_Mouse"],
    },
}
_SCOPE_ALIASES = {
    "GO": ("BP", "MF", "CC"),
    "ALL": ("BP", "MF", "CC", "KEGG"),
}

GeneSets = Mapping[str, Sequence[str]]


def _import_gseapy():
    try:
        import gseapy as gp  # type: ignore
    except ImportError as exc:
        raise ImportError(
            "Optional dependency 'gseapy' is required for gene-set enrichment. "
            "Install it via pip or conda before using `rnaseq_explore.de.pathways`."
        ) from exc
    return gp


def rank_genes(
    de_df: pd.DataFrame,
    *,
    score_col: str = "log2FoldChange",
    gene_col: Optional[str] = None,
) -> pd.Series:
    """
    Build a descending gene ranking from a DE results table.

    Genes with an undefined score are dropped. When a gene name occurs more
    than once, the entry with the largest absolute score is kept.
    """
    if score_col not in de_df.columns:
        raise KeyError(f"Column '{score_col}' not found in results table.")
    if gene_col is not None and gene_col not in de_df.columns:
        raise KeyError(f"Column '{gene_col}' not found in results table.")

    names = de_df[gene_col].astype(str).to_numpy() if gene_col else de_df.index.astype(str).to_numpy()
    frame = pd.DataFrame({"gene": names, "score": pd.to_numeric(de_df[score_col], errors="coerce").to_numpy()})
    frame = frame[np.isfinite(frame["score"])]
    frame["abs_score"] = frame["score"].abs()
    frame = frame.sort_values("abs_score", ascending=False, kind="mergesort")
    frame = frame.drop_duplicates(subset="gene", keep="first")
    ranking = frame.set_index("gene")["score"].sort_values(ascending=False, kind="mergesort")
    ranking.index.name = "gene"
    return ranking.rename(score_col)


def running_enrichment_score(
    ranking: pd.Series,
    gene_set: Iterable[str],
    *,
    weight: float = 1.0,
) -> Tuple[float, np.ndarray, np.ndarray]:
    """
    Weighted Kolmogorov-Smirnov running sum of a gene set along a ranking.

    Parameters
    ----------
    ranking:
        Scores indexed by gene, already sorted in the desired order.
    gene_set:
        Member genes; members absent from the ranking are ignored.
    weight:
        Exponent applied to ``|score|`` of hits (0 gives the classic KS walk).

    Returns
    -------
    (float, ndarray, ndarray)
        Enrichment score (signed maximum deviation), the running-sum curve and
        the positions of the hits in ``ranking``.
    """
    members = set(map(str, gene_set))
    genes = ranking.index.astype(str)
    hits = np.asarray([gene in members for gene in genes], dtype=bool)
    n_total = hits.shape[0]
    n_hits = int(hits.sum())
    if n_hits == 0:
        raise ValueError("None of the gene-set members are present in the ranking.")
    if n_hits == n_total:
        raise ValueError("Every ranked gene belongs to the gene set; the running sum is undefined.")

    hit_weights = np.abs(ranking.to_numpy(dtype=float)) ** weight
    hit_weights = np.where(hits, hit_weights, 0.0)
    norm_hit = hit_weights.sum()
    if norm_hit == 0:
        hit_weights = hits.astype(float)
        norm_hit = float(n_hits)
    step = np.where(hits, hit_weights / norm_hit, -1.0 / (n_total - n_hits))
    curve = np.cumsum(step)

    peak = int(np.argmax(np.abs(curve)))
    return float(curve[peak]), curve, np.flatnonzero(hits)


def _filter_gene_sets(
    gene_sets: GeneSets,
    universe: Iterable[str],
    min_size: int,
    max_size: int,
) -> Dict[str, Tuple[List[str], int]]:
    universe_set = set(map(str, universe))
    kept: Dict[str, Tuple[List[str], int]] = {}
    for name, members in gene_sets.items():
        unique = list(dict.fromkeys(map(str, members)))
        matched = [gene for gene in unique if gene in universe_set]
        if min_size <= len(matched) <= max_size:
            kept[str(name)] = (unique, len(matched))
    return kept


def run_gsea(
    ranking: pd.Series,
    gene_sets: GeneSets,
    *,
    library: str = "custom",
    min_size: int = DEFAULT_MIN_GENE_SET_SIZE,
    max_size: int = DEFAULT_MAX_GENE_SET_SIZE,
    permutation_num: int = 1000,
    seed: int = 123456,
    threads: int = 1,
) -> pd.DataFrame:
    """
    Preranked GSEA with gene-set permutations (GSEApy ``prerank``).

    Gene sets whose overlap with the ranking falls outside
    ``[min_size, max_size]`` are removed first; when none remain an empty table
    with the standard columns is returned.
    """
    if ranking.empty:
        raise ValueError("Cannot run GSEA on an empty ranking.")
    kept = _filter_gene_sets(gene_sets, ranking.index, min_size, max_size)
    if not kept:
        logger.warning(
            "No gene sets in '%s' have between %d and %d genes in the ranking.",
            library,
            min_size,
            max_size,
        )
        return pd.DataFrame(columns=GSEA_COLUMNS)

    gp = _import_gseapy()
    pre = gp.prerank(
        rnk=ranking,
        gene_sets={name: members for name, (members, _) in kept.items()},
        min_size=min_size,
        max_size=max_size,
        permutation_num=permutation_num,
        outdir=None,
        seed=seed,
        threads=threads,
        no_plot=True,
        verbose=False,
    )
    res = pre.res2d.copy()
    table = pd.DataFrame(
        {
            "library": library,
            "pathway": res["Term"].astype(str),
            "es": pd.to_numeric(res["ES"], errors="coerce"),
            "nes": pd.to_numeric(res["NES"], errors="coerce"),
            "pvalue": pd.to_numeric(res["NOM p-val"], errors="coerce"),
            "fdr": pd.to_numeric(res["FDR q-val"], errors="coerce"),
            "fwer": pd.to_numeric(res["FWER p-val"], errors="coerce"),
            "leading_edge": res["Lead_genes"].astype(str),
        }
    )
    table["set_size"] = [len(kept[name][0]) for name in table["pathway"]]
    table["matched_size"] = [kept[name][1] for name in table["pathway"]]
    table = _sort_enrichment(table, p_cols=("fdr", "pvalue"), effect_col="nes")
    return table.loc[:, GSEA_COLUMNS]


def run_overrepresentation(
    genes: Iterable[str],
    gene_sets: GeneSets,
    *,
    background: Iterable[str],
    library: str = "custom",
    min_size: int = DEFAULT_MIN_GENE_SET_SIZE,
    max_size: int = DEFAULT_MAX_GENE_SET_SIZE,
) -> pd.DataFrame:
    """
    Hypergeometric over-representation of ``genes`` within ``background``.

    Delegates to GSEApy ``enrich``; adjusted p-values are Benjamini-Hochberg
    within the library.
    """
    background = list(dict.fromkeys(map(str, background)))
    background_set = set(background)
    query = [gene for gene in dict.fromkeys(map(str, genes)) if gene in background_set]
    kept = _filter_gene_sets(gene_sets, background, min_size, max_size)
    query_set = set(query)
    if not query or not any(query_set.intersection(members) for members, _ in kept.values()):
        logger.warning("No query genes overlap the gene sets of '%s'.", library)
        return pd.DataFrame(columns=ORA_COLUMNS)

    gp = _import_gseapy()
    enr = gp.enrich(
        gene_list=query,
        gene_sets={name: [g for g in members if g in background_set] for name, (members, _) in kept.items()},
        background=background,
        outdir=None,
        no_plot=True,
        verbose=False,
    )
    res = enr.results.copy() if enr.results is not None else pd.DataFrame()
    if res.empty:
        return pd.DataFrame(columns=ORA_COLUMNS)

    overlap = res["Overlap"].astype(str)
    parts = overlap.str.split("/", n=1, expand=True)
    table = pd.DataFrame(
        {
            "library": library,
            "pathway": res["Term"].astype(str),
            "overlap": overlap,
            "overlap_size": pd.to_numeric(parts[0], errors="coerce").astype("Int64"),
            "set_size": pd.to_numeric(parts[1], errors="coerce").astype("Int64"),
            "pvalue": pd.to_numeric(res["P-value"], errors="coerce"),
            "padj": pd.to_numeric(res["Adjusted P-value"], errors="coerce"),
            "odds_ratio": pd.to_numeric(res["Odds Ratio"], errors="coerce"),
            "combined_score": pd.to_numeric(res["Combined Score"], errors="coerce"),
            "genes": res["Genes"].astype(str),
        }
    )
    table = _sort_enrichment(table, p_cols=("padj", "pvalue"), effect_col="combined_score")
    return table.loc[:, ORA_COLUMNS]


def _sort_enrichment(
    table: pd.DataFrame,
    *,
    p_cols: Sequence[str],
    effect_col: str,
) -> pd.DataFrame:
    ordered = table.assign(_effect=-table[effect_col].abs())
    ordered = ordered.sort_values(list(p_cols) + ["_effect"], kind="mergesort", na_position="last")
    return ordered.drop(columns="_effect").reset_index(drop=True)


def resolve_pathway_filename(library: str, base_dir: Optional[Path] = None) -> Path:
    """
    Resolve a gene-set library identifier to a GMT file on disk.

    ``library`` may be a path, a file name under ``base_dir`` or a file-name
    prefix under ``base_dir`` (``"h.all"`` matches ``h.all.v2023.Hs.symbols.gmt``).
    """
    candidate = Path(library)
    if candidate.is_file():
        return candidate

    if base_dir is not None:
        base_dir = Path(base_dir)
        direct = base_dir / library
        if direct.is_file():
            return direct
        if not library.endswith(PATHWAY_FILE_SUFFIX):
            matches = sorted(base_dir.glob(f"{library}*{PATHWAY_FILE_SUFFIX}"))
            if matches:
                return matches[0]

    raise FileNotFoundError(
        f"Could not resolve pathway library '{library}' on disk. "
        "Either provide a full path or ensure the file exists under the supplied base_dir."
    )


def _read_gmt(path: Path) -> Dict[str, List[str]]:
    """Parse a GMT pathway file into a mapping of pathway -> gene list."""
    pathways: Dict[str, List[str]] = {}
    with path.open("r", encoding="utf-8") as handle:
        reader = csv.reader(handle, delimiter="\t")
        for row in reader:
            if not row or not row[0].strip():
                continue
            name = row[0].strip()
            genes = [gene.strip() for gene in row[2:] if gene.strip()]
            pathways[name] = genes
    return pathways


@lru_cache(maxsize=None)
def load_pathway_library(
    library: str,
    *,
    base_dir: Optional[Path] = None,
    organism: str = "human",
) -> Dict[str, List[str]]:
    """
    Load a gene-set library into memory.

    Local GMT files (see :func:`resolve_pathway_filename`) take precedence;
    otherwise ``library`` is treated as an Enrichr library name and downloaded
    with :func:`gseapy.get_library`. Results are cached per argument set, so
    callers must not mutate the returned mapping.

    Returns
    -------
    dict
        Mapping from pathway name to list of member genes.
    """
    try:
        resolved = resolve_pathway_filename(library, base_dir=base_dir)
    except FileNotFoundError:
        resolved = None

    if resolved is not None:
        logger.info("Reading gene sets from %s", resolved)
        return _read_gmt(resolved)

    gp = _import_gseapy()
    try:
        library_sets = gp.get_library(name=library, organism=organism.capitalize())
    except Exception as exc:
        raise FileNotFoundError(
            f"Could not locate pathway library '{library}' on disk or in Enrichr ({organism})."
        ) from exc
    logger.info("Fetched %d gene sets for %s (%s)", len(library_sets), library, organism)
    return {str(name): list(members) for name, members in library_sets.items()}


def load_multiple_pathway_libraries(
    libraries: Iterable[str],
    *,
    base_dir: Optional[Path] = None,
    organism: str = "human",
) -> Dict[str, Dict[str, List[str]]]:
    """
    Load multiple pathway libraries at once.

    Returns a nested mapping ``{library_id: {pathway_name: genes}}``.
    """
    out: Dict[str, Dict[str, List[str]]] = {}
    for library in libraries:
        out[library] = load_pathway_library(library, base_dir=base_dir, organism=organism)
    return out


def resolve_enrichment_libraries(
    scope: Union[str, Sequence[str]],
    organism: str = "human",
) -> List[str]:
    """
    Map ontology scopes to Enrichr library names.

    Accepted scopes are ``BP``, ``MF``, ``CC``, ``KEGG``, ``GO`` (all three GO
    branches) and ``ALL``; matching is case-insensitive.
    """
    organism_key = organism.lower()
    if organism_key not in ENRICHMENT_SCOPES:
        raise ValueError(
            f"Unsupported organism '{organism}'; choose one of {sorted(ENRICHMENT_SCOPES)}."
        )
    table = ENRICHMENT_SCOPES[organism_key]

    scopes = [scope] if isinstance(scope, str) else list(scope)
    libraries: List[str] = []
    for item in scopes:
        key = str(item).upper()
        expanded = _SCOPE_ALIASES.get(key, (key,))
        for sub in expanded:
            if sub not in table:
                valid = sorted(set(table) | set(_SCOPE_ALIASES))
                raise ValueError(f"Unknown enrichment scope '{item}'; choose from {valid}.")
            for name in table[sub]:
                if name not in libraries:
                    libraries.append(name)
    return libraries


def _collect_gene_sets(
    libraries: Union[Sequence[str], Mapping[str, GeneSets]],
    *,
    base_dir: Optional[Path],
    organism: str,
) -> Dict[str, GeneSets]:
    if isinstance(libraries, Mapping):
        return {str(name): sets for name, sets in libraries.items()}
    return load_multiple_pathway_libraries(
        list(libraries),
        base_dir=Path(base_dir) if base_dir is not None else None,
        organism=organism,
    )


def run_gene_set_enrichment(
    contrast_results: Union[DEAnalysisResult, Mapping[str, pd.DataFrame]],
    *,
    libraries: Union[Sequence[str], Mapping[str, GeneSets]],
    method: str = "gsea",
    base_dir: Optional[Union[str, Path]] = None,
    organism: str = "human",
    score_col: str = "log2FoldChange",
    gene_col: Optional[str] = "gene_name",
    alpha: float = DEFAULT_ALPHA,
    min_size: int = DEFAULT_MIN_GENE_SET_SIZE,
    max_size: int = DEFAULT_MAX_GENE_SET_SIZE,
    permutation_num: int = 1000,
    seed: int = 123456,
    threads: int = 1,
) -> GeneSetEnrichmentResult:
    """
    Run GSEA or over-representation analysis for every contrast and library.

    Parameters
    ----------
    contrast_results:
        DE result container or ``{contrast: results table}``.
    libraries:
        Library identifiers (GMT paths/prefixes or Enrichr names), or an
        in-memory ``{library: {pathway: genes}}`` mapping.
    method:
        ``"gsea"`` ranks all genes by ``score_col`` and runs preranked GSEA;
        ``"ora"`` tests genes with ``padj < alpha`` against all tested genes.
    gene_col:
        Column with gene names matching the library; the index is used when
        the column is absent.
    """
    method = method.lower()
    if method not in {"gsea", "ora"}:
        raise ValueError("method must be one of: gsea, ora")
    tables = (
        contrast_results.contrast_results
        if isinstance(contrast_results, DEAnalysisResult)
        else contrast_results
    )
    library_sets = _collect_gene_sets(libraries, base_dir=base_dir, organism=organism)
    if not library_sets:
        raise ValueError("No gene-set libraries supplied.")

    per_contrast: Dict[str, pd.DataFrame] = {}
    rankings: Dict[str, pd.Series] = {}
    for contrast, de_df in tables.items():
        effective_gene_col = gene_col if gene_col is not None and gene_col in de_df.columns else None
        ranking = rank_genes(de_df, score_col=score_col, gene_col=effective_gene_col)
        rankings[contrast] = ranking
        frames = []
        if method == "gsea":
            for library, sets in library_sets.items():
                frames.append(
                    run_gsea(
                        ranking,
                        sets,
                        library=library,
                        min_size=min_size,
                        max_size=max_size,
                        permutation_num=permutation_num,
                        seed=seed,
                        threads=threads,
                    )
                )
            columns, p_cols, effect_col = GSEA_COLUMNS, ("fdr", "pvalue"), "nes"
        else:
            significant = filter_significant(de_df, alpha=alpha)
            query = (
                significant[effective_gene_col].astype(str)
                if effective_gene_col
                else significant.index.astype(str)
            )
            tested = de_df[de_df["padj"].notna()] if "padj" in de_df.columns else de_df
            background = (
                tested[effective_gene_col].astype(str) if effective_gene_col else tested.index.astype(str)
            )
            for library, sets in library_sets.items():
                frames.append(
                    run_overrepresentation(
                        list(query),
                        sets,
                        background=list(background),
                        library=library,
                        min_size=min_size,
                        max_size=max_size,
                    )
                )
            columns, p_cols, effect_col = ORA_COLUMNS, ("padj", "pvalue"), "combined_score"

        non_empty = [frame for frame in frames if not frame.empty]
        if non_empty:
            combined = _sort_enrichment(
                pd.concat(non_empty, ignore_index=True), p_cols=p_cols, effect_col=effect_col
            )
        else:
            combined = pd.DataFrame(columns=columns)
        per_contrast[contrast] = combined
        logger.info("%s enrichment for %s: %d gene sets tested", method.upper(), contrast, combined.shape[0])

    return GeneSetEnrichmentResult(
        per_contrast=per_contrast,
        libraries=list(library_sets),
        parameters={
            "method": method,
            "score_col": score_col,
            "alpha": alpha,
            "min_size": min_size,
            "max_size": max_size,
            "permutation_num": permutation_num,
            "seed": seed,
            "organism": organism,
        },
        rankings=rankings,
        gene_sets=library_sets,
    )
