"""Shared data structures for differential expression workflows."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, MutableMapping, Optional, Sequence, Tuple, Union

import pandas as pd
from matplotlib import pyplot as plt

from ..utils import sanitize_fragment
from .plots import (
    enrichment_dot_plot,
    plot_de_volcano,
    plot_enrichment_network,
    plot_ma,
    plot_running_sum,
)


def _save_figure(
    fig: plt.Figure,
    destination: Path,
    *,
    dpi: int,
    logger: Optional[Callable[[str], None]] = None,
    message: Optional[str] = None,
) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(destination, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    if logger:
        logger(message or f"Saved plot to {destination}")


def _ensure_output_dir(output_dir: Union[str, Path]) -> Path:
    path = Path(output_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


@dataclass
class DEAnalysisResult:
    """Structured output for differential expression runs."""

    dds: Any
    contrast_results: Mapping[str, pd.DataFrame]
    parameters: Mapping[str, Any] = field(default_factory=dict)
    design_columns: Optional[Sequence[str]] = None
    artifacts: Optional[MutableMapping[str, Any]] = None

    @property
    def available_contrasts(self) -> List[str]:
        """List of valid contrast identifiers."""
        return list(self.contrast_results.keys())

    def get_contrast_df(self, key: str, *, copy: bool = False) -> pd.DataFrame:
        """
        Retrieve the differential expression dataframe for a contrast.

        Parameters
        ----------
        key:
            Contrast identifier (``"<treatment>_vs_<control>"``).
        copy:
            When True, return a copy so callers can modify it freely.
        """
        try:
            df = self.contrast_results[key]
        except KeyError as exc:
            available = ", ".join(sorted(self.contrast_results))
            raise KeyError(
                f"Contrast '{key}' not found. Available contrasts: {available or 'none'}."
            ) from exc
        return df.copy() if copy else df

    def significant(
        self,
        key: str,
        *,
        alpha: Optional[float] = None,
        lfc_threshold: float = 0.0,
    ) -> pd.DataFrame:
        """Explicitly filtered table for one contrast (see :func:`filter_significant`)."""
        from .differential_expression import filter_significant

        effective_alpha = alpha if alpha is not None else float(self.parameters.get("alpha", 0.05))
        return filter_significant(
            self.get_contrast_df(key),
            alpha=effective_alpha,
            lfc_threshold=lfc_threshold,
        )

    def save_tables(
        self,
        output_dir: Union[str, Path],
        *,
        file_prefix: str = "de",
        include_significant: bool = True,
        logger: Optional[Callable[[str], None]] = None,
    ) -> List[Path]:
        """Write every contrast table (and its significant subset) as CSV."""
        out_dir = _ensure_output_dir(output_dir)
        saved: List[Path] = []
        for contrast in self.available_contrasts:
            stem = f"{file_prefix}_{sanitize_fragment(contrast, default='contrast')}"
            destination = out_dir / f"{stem}.csv"
            self.get_contrast_df(contrast).to_csv(destination)
            saved.append(destination)
            if include_significant:
                sig_destination = out_dir / f"{stem}_significant.csv"
                self.significant(contrast).to_csv(sig_destination)
                saved.append(sig_destination)
            if logger:
                logger(f"Saved DE table for {contrast} to {destination}")
        return saved

    def save_volcano_plots(
        self,
        *,
        contrasts: Optional[Sequence[str]] = None,
        output_dir: Union[str, Path],
        file_prefix: Optional[str] = None,
        genes_of_interest: Optional[Sequence[str]] = None,
        alpha: float = 0.05,
        dpi: int = 300,
        fig_size: Tuple[float, float] = (8, 6),
        logger: Optional[Callable[[str], None]] = None,
    ) -> List[Path]:
        """
        Save volcano plots for one or more contrasts using :func:`plot_de_volcano`.
        """
        selected = list(contrasts) if contrasts is not None else self.available_contrasts
        out_dir = _ensure_output_dir(output_dir)
        prefix = file_prefix or "de_volcano"

        saved: List[Path] = []
        for contrast in selected:
            df = self.get_contrast_df(contrast, copy=True)
            fig, _ = plot_de_volcano(
                df,
                genes_of_interest=genes_of_interest,
                alpha=alpha,
                title=f"{contrast} volcano",
                figsize=fig_size,
            )
            destination = out_dir / f"{prefix}_{sanitize_fragment(contrast, default='contrast')}.png"
            _save_figure(fig, destination, dpi=dpi, logger=logger)
            saved.append(destination)
        return saved

    def save_ma_plots(
        self,
        *,
        contrasts: Optional[Sequence[str]] = None,
        output_dir: Union[str, Path],
        file_prefix: Optional[str] = None,
        alpha: float = 0.05,
        dpi: int = 300,
        fig_size: Tuple[float, float] = (8, 6),
        logger: Optional[Callable[[str], None]] = None,
    ) -> List[Path]:
        selected = list(contrasts) if contrasts is not None else self.available_contrasts
        out_dir = _ensure_output_dir(output_dir)
        prefix = file_prefix or "MA_plot"

        saved: List[Path] = []
        for contrast in selected:
            fig, _ = plot_ma(
                self.get_contrast_df(contrast),
                alpha=alpha,
                title=f"{contrast} MA plot",
                figsize=fig_size,
            )
            destination = out_dir / f"{prefix}_{sanitize_fragment(contrast, default='contrast')}.png"
            _save_figure(fig, destination, dpi=dpi, logger=logger)
            saved.append(destination)
        return saved


@dataclass
class GeneSetEnrichmentResult:
    """Container for gene-set enrichment outputs, one table per contrast."""

    per_contrast: Mapping[str, pd.DataFrame]
    libraries: Sequence[str]
    parameters: Mapping[str, Any] = field(default_factory=dict)
    rankings: Mapping[str, pd.Series] = field(default_factory=dict)
    gene_sets: Mapping[str, Mapping[str, Sequence[str]]] = field(default_factory=dict)
    concatenated: Optional[pd.DataFrame] = None

    @property
    def method(self) -> str:
        return str(self.parameters.get("method", "gsea"))

    def tidy(self) -> pd.DataFrame:
        """Return a concatenated long-form DataFrame (compute if needed)."""
        if self.concatenated is not None:
            return self.concatenated
        frames = []
        for contrast, df in self.per_contrast.items():
            temp = df.copy()
            temp.insert(0, "contrast", contrast)
            frames.append(temp)
        if frames:
            self.concatenated = pd.concat(frames, ignore_index=True)
        else:
            self.concatenated = pd.DataFrame()
        return self.concatenated

    @property
    def available_contrasts(self) -> List[str]:
        """List of contrasts with enrichment tables."""
        return list(self.per_contrast.keys())

    def get_contrast_df(self, key: str, *, copy: bool = False) -> pd.DataFrame:
        try:
            df = self.per_contrast[key]
        except KeyError as exc:
            available = ", ".join(sorted(self.per_contrast))
            raise KeyError(
                f"Contrast '{key}' not found. Available contrasts: {available or 'none'}."
            ) from exc
        return df.copy() if copy else df

    def _plot_columns(self) -> Dict[str, str]:
        if self.method == "ora":
            return {"size_col": "overlap_size", "total_col": "set_size", "fdr_col": "padj", "genes_col": "genes"}
        return {"size_col": "matched_size", "total_col": "set_size", "fdr_col": "fdr", "genes_col": "leading_edge"}

    def save_tables(
        self,
        output_dir: Union[str, Path],
        *,
        file_prefix: Optional[str] = None,
        logger: Optional[Callable[[str], None]] = None,
    ) -> List[Path]:
        out_dir = _ensure_output_dir(output_dir)
        prefix = file_prefix or self.method
        saved: List[Path] = []
        for contrast in self.available_contrasts:
            destination = out_dir / f"{prefix}_{sanitize_fragment(contrast, default='contrast')}.csv"
            self.get_contrast_df(contrast).to_csv(destination, index=False)
            saved.append(destination)
            if logger:
                logger(f"Saved enrichment table for {contrast} to {destination}")
        return saved

    def save_dot_plots(
        self,
        *,
        output_dir: Union[str, Path],
        contrasts: Optional[Sequence[str]] = None,
        file_prefix: Optional[str] = None,
        top_n: int = 20,
        dpi: int = 300,
        fig_size: Tuple[float, float] = (8, 7),
        logger: Optional[Callable[[str], None]] = None,
    ) -> List[Path]:
        """Save one dot plot per contrast and library; empty tables are skipped."""
        selected = list(contrasts) if contrasts is not None else self.available_contrasts
        out_dir = _ensure_output_dir(output_dir)
        prefix = file_prefix or f"{self.method}_dotplot"
        cols = self._plot_columns()

        saved: List[Path] = []
        for contrast in selected:
            df = self.get_contrast_df(contrast)
            for library, sub in df.groupby("library", sort=False):
                if sub.empty:
                    continue
                fig, _ = enrichment_dot_plot(
                    sub,
                    top_n=top_n,
                    size_col=cols["size_col"],
                    total_col=cols["total_col"],
                    fdr_col=cols["fdr_col"],
                    title=f"{contrast}: {library}",
                    figsize=fig_size,
                )
                destination = out_dir / (
                    f"{prefix}_{sanitize_fragment(contrast, default='contrast')}_"
                    f"{sanitize_fragment(library, default='library')}.png"
                )
                _save_figure(fig, destination, dpi=dpi, logger=logger)
                saved.append(destination)
        return saved

    def save_network_plots(
        self,
        *,
        output_dir: Union[str, Path],
        contrasts: Optional[Sequence[str]] = None,
        file_prefix: Optional[str] = None,
        top_n: int = 30,
        jaccard_cutoff: float = 0.25,
        seed: int = 123456,
        dpi: int = 300,
        fig_size: Tuple[float, float] = (9, 8),
        logger: Optional[Callable[[str], None]] = None,
    ) -> List[Path]:
        selected = list(contrasts) if contrasts is not None else self.available_contrasts
        out_dir = _ensure_output_dir(output_dir)
        prefix = file_prefix or f"{self.method}_network"
        cols = self._plot_columns()

        saved: List[Path] = []
        for contrast in selected:
            df = self.get_contrast_df(contrast)
            if df.empty:
                if logger:
                    logger(f"No enriched terms for {contrast}; skipping network plot.")
                continue
            fig, _ = plot_enrichment_network(
                df,
                genes_col=cols["genes_col"],
                score_col=cols["fdr_col"],
                top_n=top_n,
                jaccard_cutoff=jaccard_cutoff,
                seed=seed,
                title=f"{contrast} enrichment network",
                figsize=fig_size,
            )
            destination = out_dir / f"{prefix}_{sanitize_fragment(contrast, default='contrast')}.png"
            _save_figure(fig, destination, dpi=dpi, logger=logger)
            saved.append(destination)
        return saved

    def save_running_sum_plots(
        self,
        contrast: str,
        pathways: Sequence[str],
        *,
        output_dir: Union[str, Path],
        file_prefix: Optional[str] = None,
        dpi: int = 300,
        fig_size: Tuple[float, float] = (8, 5),
        logger: Optional[Callable[[str], None]] = None,
    ) -> List[Path]:
        """
        Save running-sum panels for selected gene sets of one contrast.

        Requires the ranking and gene-set members recorded during the GSEA run.
        """
        from .pathways import running_enrichment_score

        if contrast not in self.rankings:
            raise KeyError(f"No gene ranking stored for contrast '{contrast}'.")
        ranking = self.rankings[contrast]
        table = self.get_contrast_df(contrast)
        out_dir = _ensure_output_dir(output_dir)
        prefix = file_prefix or f"{sanitize_fragment(contrast, default='contrast')}_running_sum"

        saved: List[Path] = []
        for pathway in pathways:
            rows = table[table["pathway"].astype(str) == pathway]
            if rows.empty:
                if logger:
                    logger(f"Gene set '{pathway}' not found in enrichment results; skipping.")
                continue
            library = str(rows.iloc[0]["library"])
            members = self.gene_sets.get(library, {}).get(pathway)
            if members is None:
                if logger:
                    logger(f"Members of '{pathway}' were not recorded; skipping.")
                continue
            es, curve, hits = running_enrichment_score(ranking, members)
            fig, _ = plot_running_sum(
                curve,
                hits,
                ranking,
                title=f"{pathway} (ES={es:.2f})",
                figsize=fig_size,
            )
            destination = out_dir / f"{prefix}_{sanitize_fragment(pathway, default='pathway')}.png"
            _save_figure(
                fig,
                destination,
                dpi=dpi,
                logger=logger,
                message=f"Saved running-sum plot to {destination}",
            )
            saved.append(destination)
        return saved
