#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import List, Optional

from rnaseq_explore.de import perform_rnaseq_workflow, summarize_de_results
from rnaseq_explore.de.pathways import ENRICHMENT_SCOPES
from rnaseq_explore.io import load_count_matrix


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Normalize a bulk RNA-seq count matrix, test treatment vs control and run gene-set enrichment."
    )
    p.add_argument("counts", type=Path, help="CSV with gene ids in the first column and '<condition>_<rep>' sample columns.")
    p.add_argument("--treatment", required=True, help="Condition level tested against the control.")
    p.add_argument("--control", required=True, help="Reference condition level.")
    p.add_argument("--sep", default=",", help="Field separator of the count file (default ',').")
    p.add_argument("--alpha", type=float, default=0.05, help="Adjusted p-value cutoff.")
    p.add_argument("--n-top-genes", type=int, default=500, help="Most variable genes used for PCA.")
    p.add_argument("--no-shrink", action="store_true", help="Report unshrunken log2 fold changes.")
    p.add_argument("--library", action="append", default=[], help="GMT path/prefix or Enrichr library name (repeatable).")
    p.add_argument(
        "--scope",
        action="append",
        default=[],
        help="Ontology scope: BP, MF, CC, GO, KEGG or ALL (repeatable).",
    )
    p.add_argument("--organism", default="human", choices=sorted(ENRICHMENT_SCOPES), help="Organism for --scope libraries.")
    p.add_argument("--pathway-dir", type=Path, default=None, help="Directory searched for GMT files.")
    p.add_argument("--min-set-size", type=int, default=10)
    p.add_argument("--max-set-size", type=int, default=500)
    p.add_argument("--permutations", type=int, default=1000)
    p.add_argument("--ora", action="store_true", help="Also run over-representation analysis of significant genes.")
    p.add_argument("--seed", type=int, default=123456)
    p.add_argument("--n-cpus", type=int, default=1)
    p.add_argument("--out-dir", type=Path, default=None, help="Write tables and figures under this directory.")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    if not args.counts.is_file():
        raise SystemExit(f"Not a file: {args.counts}")

    dataset = load_count_matrix(args.counts, sep=args.sep)
    results = perform_rnaseq_workflow(
        dataset,
        treatment=args.treatment,
        control=args.control,
        alpha=args.alpha,
        n_top_genes=args.n_top_genes,
        shrink_lfc=not args.no_shrink,
        enrichment_libraries=args.library or None,
        enrichment_scope=args.scope or None,
        organism=args.organism,
        pathway_base_dir=args.pathway_dir,
        min_gene_set_size=args.min_set_size,
        max_gene_set_size=args.max_set_size,
        permutation_num=args.permutations,
        run_ora=args.ora,
        seed=args.seed,
        n_cpus=args.n_cpus,
        output_dir=args.out_dir,
    )

    table = results["de"].get_contrast_df(results["contrast"])
    summary = {"contrast": results["contrast"], **summarize_de_results(table, alpha=args.alpha)}
    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
