#!/usr/bin/env python3

import pathlib
import sys

import jax.numpy as jnp
import jax.random as jrand
import numpy as np
import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.append(str(PROJECT_ROOT))

from sirjax.utils import (  # noqa: E402
    NumericalRankError,
    bucket_distinct_values,
    center,
    expand_slice_bounds,
    locate_distinct_boundaries,
    slice_means,
    slice_weights,
    slicer,
    ssqrti,
    whiten,
)


def _check_bounds(bd, y):
    """Shared slicer invariants."""
    y = np.asarray(y)
    assert bd[0] == 0
    assert bd[-1] == len(y)
    assert all(a < b for a, b in zip(bd[:-1], bd[1:]))
    # no run of ties crosses a boundary
    for b in bd[1:-1]:
        assert y[b - 1] < y[b]


# ----------------------------------------------------------------------
# Slicer
# ----------------------------------------------------------------------
def test_basic_split_even():
    """Continuous data: 100 elements → 10 slices of size 10 each."""

    key = jrand.key(0)
    data = jnp.sort(jrand.normal(key, 100))
    bd = slicer(data, num_slices=10)

    assert len(bd) == 11
    assert np.all(np.diff(bd) == 10)
    _check_bounds(bd, data)


def test_split_with_remainder():
    """103 elements → 10 slices; the walk stops early and the last slice absorbs the rest."""

    key = jrand.key(1)
    data = jnp.sort(jrand.normal(key, 103))
    bd = slicer(data, num_slices=10)

    sizes = np.diff(bd)
    assert len(sizes) == 10
    assert list(sizes[:-1]) == [10] * 9
    assert sizes[-1] == 13
    _check_bounds(bd, data)


def test_each_distinct_value_gets_a_slice():
    y = [1, 1, 2, 2, 3, 3, 4, 4]
    assert slicer(y, num_slices=4) == [0, 2, 4, 6, 8]
    # asking for more slices than distinct values cannot split ties
    assert slicer(y, num_slices=6) == [0, 2, 4, 6, 8]


def test_locate_distinct_boundaries():
    y = jnp.asarray([0.0, 0.0, 0.0, 1.0, 2.0, 2.0])
    assert locate_distinct_boundaries(y, jnp.unique(y)) == [0, 3, 4, 6]


def test_ties_are_never_split():
    rng = np.random.default_rng(7)
    y = np.sort(rng.integers(0, 25, size=200)).astype(float)
    for h in (3, 5, 8, 12, 20):
        bd = slicer(y, num_slices=h)
        _check_bounds(bd, y)
        assert len(bd) - 1 <= h


def test_bucket_snaps_to_end_of_tie_run():
    # nominal bucket size 2, but the run of 2.0 forces a bucket of 4 and the
    # two observations left at the end join the last bucket
    y = jnp.asarray([1.0, 1.0, 2.0, 2.0, 2.0, 2.0, 3.0, 4.0, 5.0, 6.0])
    bd = bucket_distinct_values(y, jnp.unique(y), 5)
    assert bd == [0, 2, 6, 10]
    _check_bounds(bd, y)


def test_small_samples_close_with_sentinel():
    y = jnp.asarray([1.0, 2.0, 3.0])
    assert bucket_distinct_values(y, jnp.unique(y), 2) == [0, 3]


def test_invalid_num_slices_zero_or_negative():
    """num_slices must be >= 1."""

    data = jnp.arange(10.0)

    with pytest.raises(ValueError, match="Input should be greater than or equal to 1"):
        slicer(data, num_slices=0)

    with pytest.raises(ValueError, match="Input should be greater than or equal to 1"):
        slicer(data, num_slices=-5)


def test_unsorted_response_rejected():
    with pytest.raises(ValueError, match="sorted"):
        slicer([3.0, 1.0, 2.0], num_slices=2)


def test_consistency_across_multiple_calls():
    """Repeated calls on the same data are deterministic."""
    key = jrand.key(6)
    data = jnp.sort(jrand.normal(key, 42))

    assert slicer(data, num_slices=6) == slicer(data, num_slices=6)


# ----------------------------------------------------------------------
# Slice statistics
# ----------------------------------------------------------------------
def test_expand_slice_bounds():
    labels = expand_slice_bounds([0, 2, 5, 6], 6)
    np.testing.assert_array_equal(np.asarray(labels), [0, 0, 1, 1, 1, 2])

    with pytest.raises(ValueError):
        expand_slice_bounds([0, 2, 5], 6)


def test_slice_weights_sum_to_one():
    fw = slice_weights([0, 3, 4, 10, 17])
    np.testing.assert_allclose(np.asarray(fw), np.array([3, 1, 6, 7]) / 17)
    assert float(jnp.sum(fw)) == pytest.approx(1.0)


def test_slice_means_columns():
    Z = jnp.arange(12.0).reshape(6, 2)
    sm = slice_means(Z, [0, 2, 6])
    assert sm.shape == (2, 2)
    np.testing.assert_allclose(np.asarray(sm[:, 0]), [1.0, 2.0])
    np.testing.assert_allclose(np.asarray(sm[:, 1]), [7.0, 8.0])


# ----------------------------------------------------------------------
# Linear algebra
# ----------------------------------------------------------------------
@pytest.fixture
def predictors():
    rng = np.random.default_rng(3)
    A = rng.normal(size=(4, 4))
    return rng.normal(size=(150, 4)) @ A + 2.0


def test_center(predictors):
    Xc, mn = center(predictors)
    np.testing.assert_allclose(np.asarray(mn), predictors.mean(axis=0))
    np.testing.assert_allclose(np.asarray(jnp.mean(Xc, axis=0)), 0.0, atol=1e-12)


def test_ssqrti_inverts_square():
    rng = np.random.default_rng(11)
    A = rng.normal(size=(5, 5))
    S = A @ A.T + np.eye(5)
    T = np.asarray(ssqrti(S))

    np.testing.assert_allclose(T, T.T, atol=1e-12)
    np.testing.assert_allclose(T @ T @ S, np.eye(5), atol=1e-9)


def test_ssqrti_rejects_singular():
    S = np.array([[1.0, 1.0], [1.0, 1.0]])
    with pytest.raises(NumericalRankError):
        ssqrti(S)


@pytest.mark.parametrize("symmetric", [True, False])
def test_whiten_identity_covariance(predictors, symmetric):
    Xc, _ = center(predictors)
    n = Xc.shape[0]
    Z, trans = whiten(Xc, symmetric=symmetric)

    np.testing.assert_allclose(np.asarray(Z.T @ Z / n), np.eye(4), atol=1e-10)
    # round trip back to the centered predictors
    np.testing.assert_allclose(np.asarray(Z @ trans), np.asarray(Xc), atol=1e-9)
    np.testing.assert_allclose(
        np.asarray(Xc @ jnp.linalg.inv(trans)), np.asarray(Z), atol=1e-9
    )


def test_symmetric_whitening_is_symmetric(predictors):
    Xc, _ = center(predictors)
    _, trans = whiten(Xc)
    np.testing.assert_allclose(np.asarray(trans), np.asarray(trans.T), atol=1e-10)


@pytest.mark.parametrize("symmetric", [True, False])
def test_whiten_rank_deficient(symmetric):
    rng = np.random.default_rng(5)
    x = rng.normal(size=(50, 1))
    X = np.hstack([x, 2.0 * x])
    Xc, _ = center(X)
    with pytest.raises(NumericalRankError):
        whiten(Xc, symmetric=symmetric)


def test_whiten_too_few_rows():
    with pytest.raises(NumericalRankError):
        whiten(np.ones((2, 3)))


if __name__ == "__main__":
    pytest.main([__file__])
