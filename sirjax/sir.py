"""
JAX implementation of Sliced Inverse Regression (SIR).

The estimator is split in two stages:

* :func:`preprocess` centers and whitens the predictors, slices the sorted
  response and computes the whitened slice means.  The result is an immutable
  :class:`SIRData`.
* :func:`fit` builds the SIR kernel matrix from the slice means,
  eigendecomposes it and maps the leading eigenvectors back to the original
  predictor coordinates, producing an immutable :class:`SIRFit`.

References
----------
- Li, K.-C. (1991). “Sliced Inverse Regression for Dimension Reduction”.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from functools import partial
from typing import Any, List, Optional, Tuple

import jax
import jax.numpy as jnp

from sirjax.utils import (
    Array,
    NumericalRankError,
    SIRConfig,
    _as_matrix,
    center,
    expand_slice_bounds,
    slice_means,
    slice_weights,
    slicer,
    whiten,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class SIRData:
    """
    Preprocessed data for a sliced inverse regression.

    Attributes
    ----------
    y : Array, shape (n,)
        The sorted response.
    X : Array, shape (n, p)
        The centered predictors, rows aligned with ``y``.
    Xmean : Array, shape (p,)
        Column means removed from ``X``.
    Z : Array, shape (n, p)
        Whitened predictors, ``Z.T @ Z / n`` is the identity.
    trans : Array, shape (p, p)
        Maps whitened to centered coordinates, ``X = Z @ trans``.
    bd : tuple of int
        Slice boundaries, slice ``i`` holds rows ``bd[i]:bd[i+1]``.
    slice_assignments : Array, shape (n,)
        Slice label of every observation.
    fw : Array, shape (h,)
        Fraction of the observations in each slice.
    sm : Array, shape (p, h)
        Slice means of ``Z``, one per column.
    symmetric : bool
        Whether ``Z`` came from symmetric whitening; coordinate tests
        require it.
    """

    y: Array
    X: Array
    Xmean: Array
    Z: Array
    trans: Array
    bd: Tuple[int, ...]
    slice_assignments: Array
    fw: Array
    sm: Array
    symmetric: bool = True

    @property
    def nslice(self) -> int:
        """Realized number of slices."""
        return len(self.bd) - 1

    @property
    def nobs(self) -> int:
        return int(self.X.shape[0])

    @property
    def nvar(self) -> int:
        return int(self.X.shape[1])

    def response(self) -> Array:
        return self.y

    def modelmatrix(self) -> Array:
        return self.X


@dataclass(frozen=True, eq=False)
class SIRFit:
    """
    A fitted sliced inverse regression.

    Attributes
    ----------
    data : SIRData
        The preprocessed data the fit was computed from.
    M : Array, shape (p, p)
        Weighted covariance of the whitened slice means (the SIR kernel).
    eigs : Array, shape (p,)
        Eigenvalues of ``M`` in decreasing order.
    eigv : Array, shape (p, p)
        Eigenvectors of ``M``, columns ordered like ``eigs``.
    dirs : Array, shape (p, ndir)
        Unit-length EDR directions in the original predictor coordinates,
        ordered by decreasing eigenvalue.
    """

    data: SIRData
    M: Array
    eigs: Array
    eigv: Array
    dirs: Array

    @property
    def ndir(self) -> int:
        return int(self.dirs.shape[1])

    @property
    def nslice(self) -> int:
        return self.data.nslice

    def coef(self) -> Array:
        return self.dirs

    def with_ndir(self, ndir: int) -> "SIRFit":
        """Re-derive the directions from the cached eigenvectors."""
        ndir = _clamp_ndir(ndir, self.eigs.shape[0])
        dirs = _original_directions(self.eigv, self.data.trans, ndir)
        return SIRFit(data=self.data, M=self.M, eigs=self.eigs, eigv=self.eigv, dirs=dirs)

    def transform(self, X: Any) -> Array:
        """Project predictor rows onto the estimated directions."""
        X = _as_matrix(X)
        if X.shape[1] != self.data.nvar:
            raise ValueError(f"expected {self.data.nvar} columns, got {X.shape[1]}")
        return (X - self.data.Xmean) @ self.dirs


def preprocess(y: Any, X: Any, nslice: Optional[int] = None, symmetric: bool = True) -> SIRData:
    """
    Center, whiten and slice the data for a sliced inverse regression.

    Parameters
    ----------
    y : array-like, shape (n,)
        Response, sorted ascending.
    X : array-like, shape (n, p)
        Predictors, rows aligned with ``y``.
    nslice : int, optional
        Requested number of slices, default ``max(8, p + 3)``; ties may
        reduce the realized count.
    symmetric : bool, default True
        Whitening policy, see :func:`sirjax.utils.whiten`.

    Raises
    ------
    ValueError
        If ``y`` is not sorted, the shapes disagree or the data are not finite.
    NumericalRankError
        If the predictors do not have full column rank.
    """
    cfg = SIRConfig(y=y, X=X, nslice=nslice, symmetric=symmetric)

    Xc, mn = center(cfg.X)
    Z, trans = whiten(Xc, symmetric=cfg.symmetric)

    if cfg.nslice is None:
        bd = slicer(cfg.y, max(8, Xc.shape[1] + 3))
    else:
        bd = slicer(cfg.y, cfg.nslice)
    n = Xc.shape[0]

    logger.debug(
        "preprocessed n=%d p=%d into %d slices (symmetric whitening: %s)",
        n, Xc.shape[1], len(bd) - 1, cfg.symmetric,
    )

    return SIRData(
        y=cfg.y,
        X=Xc,
        Xmean=mn,
        Z=Z,
        trans=trans,
        bd=tuple(bd),
        slice_assignments=expand_slice_bounds(bd, n),
        fw=slice_weights(bd),
        sm=slice_means(Z, bd),
        symmetric=cfg.symmetric,
    )


@jax.jit
def _kernel_eigen(sm: Array, fw: Array) -> Tuple[Array, Array, Array]:
    """
    Kernel matrix ``M`` and its eigenpairs, sorted by decreasing eigenvalue.

    ``M`` is the ``fw``-weighted covariance of the columns of ``sm`` with
    population normalisation.
    """
    mu = sm @ fw
    D = sm - mu[:, None]
    M = (D * fw) @ D.T
    M = 0.5 * (M + M.T)

    eigvals, eigvecs = jnp.linalg.eigh(M)   # ascending
    return M, eigvals[::-1], eigvecs[:, ::-1]


@partial(jax.jit, static_argnames=("ndir",))
def _original_directions(eigv: Array, trans: Array, ndir: int) -> Array:
    dirs = jnp.linalg.solve(trans, eigv[:, :ndir])
    return dirs / jnp.linalg.norm(dirs, axis=0, keepdims=True)


def _clamp_ndir(ndir: int, p: int) -> int:
    if ndir < 1:
        raise ValueError(f"`ndir` must be a positive integer, got {ndir}")
    if ndir > p:
        warnings.warn(f"Can only estimate {p} factors", UserWarning, stacklevel=3)
        return p
    return ndir


def fit(data: SIRData, ndir: Optional[int] = None) -> SIRFit:
    """
    Estimate the EDR directions from preprocessed data.

    Parameters
    ----------
    data : SIRData
        Output of :func:`preprocess`.
    ndir : int, optional
        Number of directions to keep, default ``min(5, p)``.  Values larger
        than ``p`` are clamped to ``p`` with a warning.

    Raises
    ------
    ValueError
        If ``ndir`` is smaller than 1.
    NumericalRankError
        If the kernel matrix has non-finite or materially negative eigenvalues.
    """
    p = data.nvar
    if ndir is None:
        ndir = min(5, p)
    ndir = _clamp_ndir(ndir, p)

    M, eigs, eigv = _kernel_eigen(data.sm, data.fw)

    if not bool(jnp.all(jnp.isfinite(eigs))):
        raise NumericalRankError("SIR kernel matrix has non-finite eigenvalues")
    tol = p * jnp.finfo(eigs.dtype).eps * jnp.maximum(jnp.max(jnp.abs(eigs)), 1.0)
    if bool(jnp.min(eigs) < -tol):
        raise NumericalRankError(
            f"SIR kernel matrix is not positive semi-definite (eigenvalue {float(jnp.min(eigs)):.3g})"
        )
    eigs = jnp.clip(eigs, 0.0, None)

    dirs = _original_directions(eigv, data.trans, ndir)
    return SIRFit(data=data, M=M, eigs=eigs, eigv=eigv, dirs=dirs)


def SIR(
    X,
    y,
    nslice: Optional[int] = None,
    ndir: Optional[int] = None,
    symmetric: bool = True,
) -> SIRFit:
    """
    Public wrapper: preprocess and fit in one call.

    Parameters
    ----------
    X : array‑like, shape (n_samples, n_features)
        Predictor matrix.
    y : array‑like, shape (n_samples,)
        Response variable, which must already be sorted ascending with the
        rows of ``X`` aligned to it.
    nslice : int, optional
        Requested number of slices, default ``max(8, n_features + 3)``.
    ndir : int, optional
        Number of directions, default ``min(5, n_features)``.
    symmetric : bool, default=True
        Use symmetric whitening (required for meaningful coordinate tests).

    Returns
    -------
    SIRFit
        The fitted model; ``coef(result)`` gives the directions.
    """
    cfg = SIRConfig(y=y, X=X, nslice=nslice, ndir=ndir, symmetric=symmetric)
    data = preprocess(cfg.y, cfg.X, cfg.nslice, symmetric=cfg.symmetric)
    return fit(data, ndir=cfg.ndir)


def coef(result: SIRFit) -> Array:
    """The estimated EDR directions, one per column."""
    return result.coef()


__all__: List[str] = [
    "SIRData",
    "SIRFit",
    "preprocess",
    "fit",
    "SIR",
    "coef",
    "NumericalRankError",
]
