import numpy as np
import pandas as pd
import pytest

from rnaseq_explore.io import (
    build_sample_metadata,
    count_dataset_from_frame,
    derive_condition_label,
    load_count_matrix,
    validate_count_matrix,
)


def _toy_counts() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "WT_1": [10, 0, 5],
            "WT_2": [12, 0, 7],
            "KO_liver_1": [30, 1, 4],
            "KO_liver_2": [28, 0, 6],
        },
        index=pd.Index(["GENE1", "GENE2", "GENE3"], name="gene_id"),
    )


@pytest.mark.parametrize(
    "name, expected",
    [("WT_1", "WT"), ("treatment_3", "treatment"), ("KO_liver_12", "KO_liver"), ("a_b_c_007", "a_b_c")],
)
def test_derive_condition_label_strips_replicate_suffix(name, expected):
    assert derive_condition_label(name) == expected


@pytest.mark.parametrize("name", ["WT", "WT_", "WT_a", "_1", "WT1"])
def test_derive_condition_label_rejects_names_without_suffix(name):
    with pytest.raises(ValueError):
        derive_condition_label(name)


def test_build_sample_metadata_columns_and_duplicates():
    meta = build_sample_metadata(["WT_1", "WT_2", "KO_1"])
    assert meta.index.name == "sample"
    assert list(meta["condition"]) == ["WT", "WT", "KO"]
    assert list(meta["replicate"]) == [1, 2, 1]

    with pytest.raises(ValueError):
        build_sample_metadata(["WT_1", "WT_1"])


def test_validate_count_matrix_returns_int64_copy():
    counts = _toy_counts().astype(float)
    clean = validate_count_matrix(counts)
    assert all(dtype == np.int64 for dtype in clean.dtypes)
    assert clean.shape == counts.shape
    # Input is untouched
    assert all(dtype == np.float64 for dtype in counts.dtypes)


@pytest.mark.parametrize(
    "mutate",
    [
        lambda df: df.iloc[0:0],
        lambda df: df.assign(WT_1=[-1, 0, 5]),
        lambda df: df.assign(WT_1=[1.5, 0.0, 5.0]),
        lambda df: df.assign(WT_1=[np.nan, 0.0, 5.0]),
        lambda df: df.assign(WT_1=["a", "b", "c"]),
        lambda df: df.set_axis(["GENE1", "GENE1", "GENE3"], axis=0),
        lambda df: df.set_axis(["WT_1", "WT_1", "KO_liver_1", "KO_liver_2"], axis=1),
    ],
    ids=["empty", "negative", "fractional", "missing", "non-numeric", "dup-genes", "dup-samples"],
)
def test_validate_count_matrix_rejects_invalid_input(mutate):
    with pytest.raises(ValueError):
        validate_count_matrix(mutate(_toy_counts()))


def test_count_dataset_from_frame_derives_conditions():
    dataset = count_dataset_from_frame(_toy_counts())
    assert dataset.n_genes == 3
    assert dataset.n_samples == 4
    assert dataset.conditions == ["WT", "KO_liver"]
    assert list(dataset.metadata.index) == list(dataset.counts.columns)


def test_with_counts_keeps_metadata_and_records_parameters():
    dataset = count_dataset_from_frame(_toy_counts())
    subset = dataset.with_counts(dataset.counts.iloc[:2], filtered=True)
    assert subset.n_genes == 2
    assert subset.parameters["filtered"] is True
    pd.testing.assert_frame_equal(subset.metadata, dataset.metadata)

    with pytest.raises(ValueError):
        dataset.with_counts(dataset.counts.iloc[:, :2])


def test_load_count_matrix_round_trip(tmp_path):
    path = tmp_path / "counts.csv"
    _toy_counts().to_csv(path)

    dataset = load_count_matrix(path)
    pd.testing.assert_frame_equal(dataset.counts, _toy_counts().astype(np.int64))
    assert dataset.parameters["source"] == str(path)

    tsv = tmp_path / "counts.tsv"
    _toy_counts().to_csv(tsv, sep="\t")
    assert load_count_matrix(tsv, sep="\t").n_samples == 4


def test_load_count_matrix_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_count_matrix(tmp_path / "absent.csv")


def test_load_count_matrix_malformed_file_chains_parser_error(tmp_path):
    path = tmp_path / "bad.csv"
    path.write_text("gene,WT_1,KO_1\nGENE1,1,2\nGENE2,1,2,3,4\n", encoding="utf-8")
    with pytest.raises(ValueError) as excinfo:
        load_count_matrix(path)
    assert isinstance(excinfo.value.__cause__, pd.errors.ParserError)


def test_load_count_matrix_rejects_non_numeric_cells(tmp_path):
    path = tmp_path / "text.csv"
    path.write_text("gene,WT_1,KO_1\nGENE1,1,abc\nGENE2,3,4\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_count_matrix(path)
