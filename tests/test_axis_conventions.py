import numpy as np
import pandas as pd
import pytest

from rnaseq_explore.io import CountDataset, build_sample_metadata, count_dataset_from_frame


def test_count_dataset_rejects_transposed_counts():
    # Wrong orientation: samples x genes instead of genes x samples
    counts = pd.DataFrame(
        np.ones((4, 3), dtype=int),
        index=["WT_1", "WT_2", "KO_1", "KO_2"],
        columns=["GENE1", "GENE2", "GENE3"],
    )
    with pytest.raises(ValueError) as excinfo:
        count_dataset_from_frame(counts)
    assert "suffix" in str(excinfo.value)


def test_prepare_deseq_dataset_errors_on_transposed_counts():
    pytest.importorskip("pydeseq2")
    from rnaseq_explore.de.differential_expression import prepare_deseq_dataset

    samples = ["WT_1", "WT_2", "KO_1", "KO_2"]
    genes = ["GENE1", "GENE2", "GENE3"]
    metadata = build_sample_metadata(samples)
    counts = pd.DataFrame(np.ones((4, 3), dtype=int), index=samples, columns=genes)
    dataset = CountDataset(counts=counts, metadata=metadata)

    with pytest.raises(ValueError) as excinfo:
        prepare_deseq_dataset(dataset, treatment="KO", control="WT")

    msg = str(excinfo.value)
    assert "genes" in msg
    assert "samples" in msg
    assert "transpose" in msg.lower()
