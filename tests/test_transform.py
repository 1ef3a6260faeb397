import numpy as np
import pandas as pd
import pytest

from rnaseq_explore.normalization import estimate_size_factors, log2_transform, normalize_counts
from rnaseq_explore.transform import (
    estimate_dispersion_trend,
    estimate_rlog_prior_variance,
    rlog_transform,
)
from rnaseq_explore.utils import simulate_count_matrix


@pytest.fixture(scope="module")
def counts():
    depth = [0.7, 1.0, 1.3, 0.9, 1.1, 1.2]
    counts = simulate_count_matrix(400, mean_range=(2.0, 3000.0), depth_factors=depth, seed=11)
    # Well-measured gene with an 8-fold increase in treatment
    counts.loc["DE1"] = [int(200 * d) for d in depth[:3]] + [int(1600 * d) for d in depth[3:]]
    counts.loc["ZERO"] = 0
    return counts


@pytest.fixture(scope="module")
def rlog(counts):
    return rlog_transform(counts)


def test_dispersion_trend_recovers_simulated_level():
    counts = simulate_count_matrix(1500, dispersion=0.05, mean_range=(50.0, 5000.0), seed=5)
    normalized = normalize_counts(counts)
    trend, (asymptotic, extra) = estimate_dispersion_trend(normalized)
    assert list(trend.index) == list(counts.index)
    assert (trend > 0).all()
    assert 0.01 < asymptotic < 0.2
    assert extra >= 0


def test_dispersion_trend_needs_two_samples():
    df = pd.DataFrame({"A_1": [1.0, 2.0, 3.0]})
    with pytest.raises(ValueError):
        estimate_dispersion_trend(df)


def test_prior_variance_is_positive(counts):
    normalized = normalize_counts(counts)
    trend, _ = estimate_dispersion_trend(normalized)
    prior = estimate_rlog_prior_variance(normalized, trend)
    assert np.isfinite(prior)
    assert prior > 0


def test_rlog_keeps_labels_and_zero_rows(counts, rlog):
    assert rlog.shape == counts.shape
    assert list(rlog.index) == list(counts.index)
    assert list(rlog.columns) == list(counts.columns)
    assert (rlog.loc["ZERO"] == 0).all()
    assert np.isfinite(rlog.to_numpy()).all()


def test_rlog_does_not_mutate_input(counts):
    before = counts.copy()
    rlog_transform(counts.iloc[:50])
    pd.testing.assert_frame_equal(counts, before)


def test_rlog_tracks_log2_normalized_for_high_counts(counts, rlog):
    normalized = normalize_counts(counts)
    high = (normalized.mean(axis=1) > 300) & (normalized.index != "DE1")
    assert high.sum() > 20
    diff = rlog.loc[high].mean(axis=1) - np.log2(normalized.loc[high]).mean(axis=1)
    assert diff.abs().max() < 0.3


def test_rlog_shrinks_low_count_noise(counts, rlog):
    normalized = normalize_counts(counts)
    low = (normalized.mean(axis=1) > 0) & (normalized.mean(axis=1) < 10)
    assert low.sum() > 10
    naive = log2_transform(normalized.loc[low]).var(axis=1).mean()
    shrunk = rlog.loc[low].var(axis=1).mean()
    assert shrunk < naive


def test_rlog_preserves_condition_signal(rlog):
    treated = rlog.loc["DE1", [c for c in rlog.columns if c.startswith("treatment")]].mean()
    control = rlog.loc["DE1", [c for c in rlog.columns if c.startswith("control")]].mean()
    assert treated - control > 0.5


def test_rlog_with_flat_prior_matches_log2_normalized(counts):
    subset = counts[(counts > 20).all(axis=1)].iloc[:40]
    sf = estimate_size_factors(counts)
    out = rlog_transform(subset, size_factors=sf, beta_prior_var=1e6)
    expected = np.log2(normalize_counts(subset, sf))
    np.testing.assert_allclose(out.to_numpy(), expected.to_numpy(), atol=0.01)


def test_rlog_chunking_is_invisible(counts):
    subset = counts.iloc[:60]
    sf = estimate_size_factors(counts)
    full = rlog_transform(subset, size_factors=sf, beta_prior_var=0.5)
    chunked = rlog_transform(subset, size_factors=sf, beta_prior_var=0.5, chunk_size=7)
    np.testing.assert_allclose(full.to_numpy(), chunked.to_numpy(), atol=1e-6)


def test_rlog_requires_two_samples():
    with pytest.raises(ValueError):
        rlog_transform(pd.DataFrame({"A_1": [1, 2, 3]}))
