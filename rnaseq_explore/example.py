import logging

import matplotlib.pyplot as plt
import numpy as np

from rnaseq_explore.de import perform_rnaseq_workflow
from rnaseq_explore.utils import simulate_count_matrix

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s: %(message)s")

# Toy experiment: 3 control vs 3 treatment replicates, a handful of
# up-regulated genes that share a pathway and one gene never detected.
up_genes = {f"UP{i}": 4.0 for i in range(1, 16)}
counts = simulate_count_matrix(
    2000,
    conditions=("control", "treatment"),
    n_replicates=3,
    fold_changes=up_genes,
    depth_factors=[0.8, 1.0, 1.2, 0.9, 1.1, 1.3],
    seed=123456,
)
counts.loc["NEVER_SEEN"] = 0

rng = np.random.default_rng(123456)
background = [g for g in counts.index if g.startswith("GENE")]
gene_sets = {
    "toy": {
        "UP_PATHWAY": list(up_genes) + list(rng.choice(background, 5, replace=False)),
        "RANDOM_A": list(rng.choice(background, 40, replace=False)),
        "RANDOM_B": list(rng.choice(background, 60, replace=False)),
    }
}

results = perform_rnaseq_workflow(
    counts,
    treatment="treatment",
    control="control",
    enrichment_libraries=gene_sets,
    permutation_num=200,
    run_ora=True,
    output_dir="rnaseq_explore_example_output",
)

print(results["de"].get_contrast_df(results["contrast"]).loc[list(up_genes)].head())
print(results["significant"].shape[0], "genes significant at padj < 0.05")
print(results["gsea"].get_contrast_df(results["contrast"]).head())

# Sample-level views
results["exploration"].plot_correlation_heatmap()
results["exploration"].plot_pca()
plt.show()
