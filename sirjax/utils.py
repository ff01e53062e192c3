from __future__ import annotations

import jax
jax.config.update("jax_enable_x64", True)

import logging
from typing import Any, List, Optional, Tuple

import jax.numpy as jnp
import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

Array = jnp.ndarray


class NumericalRankError(np.linalg.LinAlgError):
    """Raised when a covariance or kernel matrix is numerically degenerate."""


def _to_array(x: Array | jax.typing.ArrayLike) -> Array:
    """Convert input to a JAX array (float64)."""
    return jnp.asarray(x, dtype=jnp.float64)


def _as_vector(v: Any) -> Array:
    try:
        arr = _to_array(v)
    except Exception as exc:
        raise TypeError(f"Unable to convert {type(v).__name__} to a JAX array: {exc}") from exc
    if arr.ndim == 2 and 1 in arr.shape:
        arr = jnp.ravel(arr)
    if arr.ndim != 1:
        raise ValueError(f"`y` must be one-dimensional, got shape {arr.shape}")
    if not bool(jnp.all(jnp.isfinite(arr))):
        raise ValueError("`y` contains NaN or infinite values")
    return arr


def _as_matrix(v: Any) -> Array:
    try:
        arr = _to_array(v)
    except Exception as exc:
        raise TypeError(f"Unable to convert {type(v).__name__} to a JAX array: {exc}") from exc
    if arr.ndim == 1:
        arr = arr[:, None]
    if arr.ndim != 2:
        raise ValueError(f"`X` must be two-dimensional, got shape {arr.shape}")
    if not bool(jnp.all(jnp.isfinite(arr))):
        raise ValueError("`X` contains NaN or infinite values")
    return arr


def _is_sorted(y: Array) -> bool:
    return bool(jnp.all(jnp.diff(y) >= 0))


class SlicerConfig(BaseModel):
    """
    A class to validate the inputs to the slicer function

    Parameters
    ----------
    y : Any
        The response variable, sorted ascending – anything that ``jnp.asarray``
        can turn into a one-dimensional JAX array.
    num_slices : int
        Requested number of slices (must be at least 1).
    """

    model_config = ConfigDict(strict=True, extra="forbid", arbitrary_types_allowed=True)

    y: Any = Field(..., description="Sorted response variable")
    num_slices: int = Field(
        10,
        ge=1,
        description="Requested number of slices (must be a positive integer)",
    )

    @field_validator("y", mode="before")
    @classmethod
    def _coerce_to_jax_array(cls, v: Any) -> jnp.ndarray:
        """Convert the incoming value to a one-dimensional float64 JAX array."""
        return _as_vector(v)

    @model_validator(mode="after")
    def _check_sorted(self) -> "SlicerConfig":
        if self.y.size == 0:
            raise ValueError("`y` must contain at least one observation")
        if not _is_sorted(self.y):
            raise ValueError("`y` must be sorted in ascending order")
        return self


class SIRConfig(BaseModel):
    """
    Validated inputs for a sliced inverse regression.

    ``X`` is stored with observations in rows; a one-dimensional ``X`` is read
    as a single predictor.  ``nslice`` and ``ndir`` are optional here and are
    resolved to their defaults by the caller once ``p`` is known.
    """

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    y: Any = Field(..., description="Sorted response variable")
    X: Any = Field(..., description="Predictor matrix, observations in rows")
    nslice: Optional[int] = Field(None, ge=1, description="Requested number of slices")
    ndir: Optional[int] = Field(None, ge=1, description="Number of directions to estimate")
    symmetric: bool = Field(True, description="Whiten with the symmetric inverse square root")

    @field_validator("y", mode="before")
    @classmethod
    def _coerce_y(cls, v: Any) -> jnp.ndarray:
        return _as_vector(v)

    @field_validator("X", mode="before")
    @classmethod
    def _coerce_X(cls, v: Any) -> jnp.ndarray:
        return _as_matrix(v)

    @model_validator(mode="after")
    def _check_alignment(self) -> "SIRConfig":
        if self.y.shape[0] != self.X.shape[0]:
            raise ValueError(
                f"`y` has {self.y.shape[0]} observations but `X` has {self.X.shape[0]} rows"
            )
        if not _is_sorted(self.y):
            raise ValueError("y must be sorted")
        return self


# ----------------------------------------------------------------------
# Linear algebra
# ----------------------------------------------------------------------
def center(X: Array) -> Tuple[Array, Array]:
    """Subtract the column means of ``X``; returns the centered matrix and the means."""
    X = _to_array(X)
    mean = jnp.mean(X, axis=0)
    return X - mean, mean


def ssqrti(S: Array) -> Array:
    """
    Inverse symmetric square root of a symmetric positive definite matrix.

    Returns ``T`` with ``T @ T = inv(S)`` and ``T`` symmetric.

    Raises
    ------
    NumericalRankError
        If ``S`` has a non-positive eigenvalue (relative to machine precision),
        i.e. the covariance it came from is rank deficient.
    """
    S = _to_array(S)
    vals, vecs = jnp.linalg.eigh(0.5 * (S + S.T))
    tol = 10 * S.shape[0] * jnp.finfo(S.dtype).eps * jnp.max(jnp.abs(vals))
    if not bool(jnp.all(jnp.isfinite(vals))) or bool(jnp.min(vals) <= tol):
        raise NumericalRankError(
            f"matrix is not positive definite (smallest eigenvalue {float(jnp.min(vals)):.3g})"
        )
    return (vecs / jnp.sqrt(vals)) @ vecs.T


def whiten(X: Array, symmetric: bool = True) -> Tuple[Array, Array]:
    """
    Whiten the centered matrix ``X``.

    Returns ``(Z, trans)`` with ``Z.T @ Z / n`` equal to the identity and
    ``X = Z @ trans``.  With ``symmetric=True`` the whitening map
    ``inv(trans)`` is the inverse symmetric square root of ``R'R / n`` (``R``
    from the QR decomposition of ``X``), so ``trans`` is symmetric; coordinate
    tests rely on this.  With ``symmetric=False`` ``Z`` is the scaled ``Q``
    factor and ``trans`` the scaled ``R`` factor.
    """
    X = _to_array(X)
    n, p = X.shape
    if n < p:
        raise NumericalRankError(f"cannot whiten {n} observations of {p} variables")

    if symmetric:
        R = jnp.linalg.qr(X, mode="r")
        T = ssqrti(R.T @ R / n)
        return X @ T, jnp.linalg.inv(T)

    Q, R = jnp.linalg.qr(X, mode="reduced")
    d = jnp.abs(jnp.diag(R))
    if bool(jnp.min(d) <= n * jnp.finfo(X.dtype).eps * jnp.max(d)):
        raise NumericalRankError("predictor matrix does not have full column rank")
    k = jnp.sqrt(n)
    return Q * k, R / k


# ----------------------------------------------------------------------
# Slicing
# ----------------------------------------------------------------------
def locate_distinct_boundaries(y: Array, distinct_values: Array) -> List[int]:
    """
    Place each distinct value of the sorted ``y`` into its own slice.

    Returns the first position of every distinct value followed by ``len(y)``.
    """
    starts = jnp.searchsorted(y, distinct_values, side="left")
    return [int(i) for i in starts] + [int(y.shape[0])]


def bucket_distinct_values(y: Array, distinct_values: Array, num_slices: int) -> List[int]:
    """
    Merge runs of tied values into buckets of roughly ``len(y) // num_slices``
    observations, never splitting a run.
    """
    n = int(y.shape[0])
    bounds = locate_distinct_boundaries(y, distinct_values)
    cty = np.cumsum(np.diff(bounds))
    m = n // num_slices

    cuts: List[int] = []
    jj = 0
    while jj < n - 2 and len(cuts) < num_slices - 1:
        jj += m
        # first run whose cumulative count reaches the target
        s = int(np.searchsorted(cty, jj, side="left"))
        s = min(s, len(cty) - 1)
        jj = int(cty[s])
        if jj >= n - 2:
            break
        cuts.append(jj)

    # the last bucket runs to the end and absorbs any short remainder
    return [0] + cuts + [n]


def slicer(y: Any, num_slices: int = 10) -> List[int]:
    """
    Slice boundaries for the sorted response ``y``.

    Parameters
    ----------
    y : Any
        Sorted response (list, NumPy array, JAX array, …).
    num_slices : int, default 10
        Requested number of slices, at least 1.

    Returns
    -------
    List[int]
        Strictly increasing boundaries ``bd`` with ``bd[0] == 0`` and
        ``bd[-1] == len(y)``; slice ``i`` holds rows ``bd[i]:bd[i+1]``.  Tied
        values always share a slice, so ``len(bd) - 1`` may be smaller than
        ``num_slices`` but never larger.

    Raises
    ------
    pydantic.ValidationError / ValueError
        If ``y`` is not sorted or ``num_slices`` is out of bounds.
    """
    cfg = SlicerConfig(y=y, num_slices=num_slices)
    distinct = jnp.unique(cfg.y)

    if distinct.shape[0] > cfg.num_slices:
        bd = bucket_distinct_values(cfg.y, distinct, cfg.num_slices)
    else:
        bd = locate_distinct_boundaries(cfg.y, distinct)

    logger.debug("requested %d slices, realized %d", cfg.num_slices, len(bd) - 1)
    return bd


def expand_slice_bounds(bd: List[int], n: int) -> Array:
    """Slice label (0 … h-1) for every observation."""
    counts = np.diff(np.asarray(bd))
    labels = np.repeat(np.arange(len(counts)), counts)
    if labels.shape[0] != n:
        raise ValueError(f"slice boundaries cover {labels.shape[0]} rows, expected {n}")
    return jnp.asarray(labels, dtype=jnp.int32)


def slice_weights(bd: List[int]) -> Array:
    """Fraction of the observations falling in each slice."""
    ns = jnp.diff(jnp.asarray(bd, dtype=jnp.float64))
    return ns / jnp.sum(ns)


def slice_means(Z: Array, bd: List[int]) -> Array:
    """
    Means of the consecutive row blocks of ``Z`` delimited by ``bd``.

    Returns a ``(p, h)`` matrix holding one slice mean per column.
    """
    Z = _to_array(Z)
    n = Z.shape[0]
    h = len(bd) - 1

    one_hot = jax.nn.one_hot(expand_slice_bounds(bd, n), h, dtype=Z.dtype)  # (n, h)
    counts = jnp.sum(one_hot, axis=0)                                      # (h,)
    return (Z.T @ one_hot) / counts                                        # (p, h)
