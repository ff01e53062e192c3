"""
Asymptotic inference for a fitted sliced inverse regression.

* :func:`dimension_test`: chi-square tests of Li (1991) for the number of
  non-null eigenvalues of the SIR kernel matrix.
* :func:`coordinate_test`: test that a given subspace of the predictors is
  orthogonal to the EDR space.  The null distribution of the statistic is a
  weighted sum of chi-square(1) variables, approximated as described in
  :class:`PValueMethod`.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Tuple

import jax
import jax.numpy as jnp
from jax.scipy.stats import chi2
from pydantic import BaseModel, ConfigDict, Field

from sirjax.sir import SIRFit
from sirjax.utils import Array, _as_matrix, ssqrti

logger = logging.getLogger(__name__)


class TestMethod(str, Enum):
    """Inferential procedure used by the dimension and coordinate tests."""

    CHISQ = "chisq"
    # pseudo-covariate (DIVA) inference lives with its own estimator
    DIVA = "diva"


class PValueMethod(str, Enum):
    """
    Approximation for the upper tail of ``sum_j w_j * chisq_1``.

    BX
        Bentler & Xie (2000): match the first two moments with a scaled
        chi-square, ``dof = (sum w)^2 / sum w^2``.
    HBE
        Hall–Buckley–Eagleson: match the first three cumulants with a shifted,
        scaled chi-square.
    """

    BX = "bx"
    HBE = "hbe"


class TestConfig(BaseModel):
    """Selectors for the test procedures; strings are coerced to the enums."""

    model_config = ConfigDict(extra="forbid")

    method: TestMethod = Field(TestMethod.CHISQ, description="Inferential procedure")
    pmethod: PValueMethod = Field(PValueMethod.BX, description="Mixture tail approximation")
    maxdim: Optional[int] = Field(None, description="Largest dimension tested")


def _resolve(method: Any, pmethod: Any = PValueMethod.BX, maxdim: Optional[int] = None) -> TestConfig:
    try:
        cfg = TestConfig(method=method, pmethod=pmethod, maxdim=maxdim)
    except ValueError as exc:
        raise ValueError(f"Unknown test method '{method}' or p-value method '{pmethod}'") from exc
    if cfg.method is TestMethod.DIVA:
        raise NotImplementedError(
            "DIVA inference requires the pseudo-covariate estimator; use method='chisq'"
        )
    return cfg


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------
@dataclass(frozen=True, eq=False)
class DimensionTestResult:
    """
    Statistics for the nulls "only the largest k eigenvalues are non-null",
    for ``k = 0 … maxdim``.
    """

    statistic: Array
    dof: Array
    method: str = TestMethod.CHISQ.value

    @property
    def maxdim(self) -> int:
        return int(self.dof.shape[0]) - 1

    @property
    def pvalue(self) -> Array:
        return chi2.sf(self.statistic, self.dof)

    def summary(self) -> str:
        lines = [f"Method: {self.method}", "  k   statistic   dof   p-value"]
        for k, (s, d, p) in enumerate(zip(self.statistic, self.dof, self.pvalue)):
            lines.append(f"{k:3d} {float(s):11.4f} {int(d):5d} {float(p):9.4f}")
        return "\n".join(lines)


@dataclass(frozen=True, eq=False)
class CoordinateTestResult:
    """
    Outcome of a coordinate test.

    ``statistic`` is the raw statistic, ``adjusted_statistic`` and ``dof``
    are the values referred to the approximating chi-square distribution, and
    ``weights`` are the eigenvalues of the mixture.
    """

    statistic: float
    adjusted_statistic: float
    dof: float
    pvalue: float
    weights: Array
    pmethod: str = PValueMethod.BX.value

    def summary(self) -> str:
        return "\n".join([
            f"P-value method: {self.pmethod}",
            f"Statistic: {self.statistic:.4f}",
            f"Adjusted statistic: {self.adjusted_statistic:.4f}",
            f"Degrees of freedom: {self.dof:.4f}",
            f"P-value: {self.pvalue:.4f}",
        ])


# ----------------------------------------------------------------------
# Dimension test
# ----------------------------------------------------------------------
def dimension_test(
    result: SIRFit,
    maxdim: Optional[int] = None,
    method: TestMethod | str = TestMethod.CHISQ,
) -> DimensionTestResult:
    """
    Test the null hypotheses that only the largest k eigenvalues are non-null.

    The statistic for ``k`` is ``n`` times the sum of the ``p - k`` smallest
    eigenvalues, asymptotically chi-square with ``(p - k)(h - k - 1)``
    degrees of freedom.  ``maxdim`` defaults to, and is clamped to,
    ``min(p - 1, h - 2)``; a negative value also selects the default.
    """
    cfg = _resolve(method, maxdim=maxdim)

    eigs = result.eigs
    p = eigs.shape[0]
    h = result.nslice
    bound = min(p - 1, h - 2)
    maxdim = bound if cfg.maxdim is None or cfg.maxdim < 0 else min(cfg.maxdim, bound)
    logger.debug("dimension test for k = 0..%d (p=%d, h=%d)", maxdim, p, h)

    stat = result.data.nobs * jnp.cumsum(eigs[::-1])[::-1]
    k = jnp.arange(maxdim + 1)
    dof = (p - k) * (h - k - 1)

    return DimensionTestResult(statistic=stat[: maxdim + 1], dof=dof, method=cfg.method.value)


# ----------------------------------------------------------------------
# Coordinate test
# ----------------------------------------------------------------------
def mixture_pvalue(
    weights: Array,
    stat: float,
    pmethod: PValueMethod | str = PValueMethod.BX,
) -> Tuple[float, float, float]:
    """
    Approximate ``P(sum_j weights[j] * chisq_1 > stat)``.

    Returns ``(adjusted_statistic, dof, pvalue)`` for the approximating
    chi-square distribution.
    """
    pmethod = PValueMethod(pmethod)
    w = jnp.clip(jnp.asarray(weights, dtype=jnp.float64), 0.0, None)
    s1 = jnp.sum(w)
    s2 = jnp.sum(w ** 2)
    if not bool(s2 > 0):
        raise ValueError("chi-square mixture has no positive weights")

    if pmethod is PValueMethod.BX:
        dof = s1 ** 2 / s2
        adjusted = stat * dof / s1
    else:
        k1 = s1
        k2 = 2.0 * s2
        k3 = 8.0 * jnp.sum(w ** 3)
        dof = 8.0 * k2 ** 3 / k3 ** 2
        adjusted = dof + (stat - k1) * jnp.sqrt(2.0 * dof / k2)

    pval = chi2.sf(adjusted, dof)
    logger.debug("%s mixture approximation: dof=%.4f adjusted=%.4f", pmethod.value, float(dof), float(adjusted))
    return float(adjusted), float(dof), float(pval)


@jax.jit
def _coordinate_core(
    X: Array,
    Z: Array,
    sm: Array,
    one_hot: Array,
    alpha: Array,
) -> Tuple[Array, Array]:
    """
    Test statistic and the covariance ``Omega`` of its limiting Gaussian
    vector.  ``X`` is centered, ``one_hot`` holds the slice indicators and
    ``alpha`` is an orthonormal basis of the hypothesis in whitened
    coordinates.
    """
    n = X.shape[0]
    fw = jnp.mean(one_hot, axis=0)

    u = (alpha.T @ sm) * jnp.sqrt(fw)
    tstat = n * jnp.sum(u ** 2)

    # Slice indicators with their linear-in-X part removed
    Q, _ = jnp.linalg.qr(X, mode="reduced")
    eps = one_hot - fw - Q @ (Q.T @ one_hot)             # (n, h)

    B = eps / jnp.sqrt(fw)                               # (n, h)
    C = Z @ alpha                                        # (n, r)
    W = (B[:, :, None] * C[:, None, :]).reshape(n, -1)   # rows are kron(b_i, c_i)
    Omega = W.T @ W / n
    return tstat, 0.5 * (Omega + Omega.T)


def coordinate_test(
    result: SIRFit,
    Hyp: Any,
    pmethod: PValueMethod | str = PValueMethod.BX,
    method: TestMethod | str = TestMethod.CHISQ,
) -> CoordinateTestResult:
    """
    Test that the span of the columns of ``Hyp`` is orthogonal to the EDR space.

    Parameters
    ----------
    result : SIRFit
        A model fitted with symmetric whitening.
    Hyp : array-like, shape (p, r)
        Hypothesised directions in original predictor coordinates.
    pmethod : {"bx", "hbe"}
        Approximation of the weighted chi-square null distribution.
    method : {"chisq", "diva"}
        Inferential procedure.

    Raises
    ------
    ValueError
        For unknown selectors or a ``Hyp`` with the wrong number of rows.
    NumericalRankError
        If the predictor covariance or ``Hyp'Sigma^{-1}Hyp`` is singular.
    """
    cfg = _resolve(method, pmethod=pmethod)
    data = result.data

    Hyp = _as_matrix(Hyp)
    if Hyp.shape[0] != data.nvar:
        raise ValueError(f"`Hyp` must have {data.nvar} rows, got {Hyp.shape[0]}")

    if not data.symmetric:
        warnings.warn(
            "coordinate tests assume symmetric whitening; refit with symmetric=True",
            UserWarning,
            stacklevel=2,
        )

    # Orthonormal basis of the hypothesis in whitened coordinates
    Sri = ssqrti(data.X.T @ data.X / (data.nobs - 1))
    A = Sri @ Hyp
    alpha = A @ ssqrti(A.T @ A)

    one_hot = jax.nn.one_hot(data.slice_assignments, data.nslice, dtype=data.X.dtype)
    tstat, Omega = _coordinate_core(data.X, data.Z, data.sm, one_hot, alpha)

    weights = jnp.linalg.eigvalsh(Omega)[::-1]
    adjusted, dof, pval = mixture_pvalue(weights, float(tstat), cfg.pmethod)

    return CoordinateTestResult(
        statistic=float(tstat),
        adjusted_statistic=adjusted,
        dof=dof,
        pvalue=pval,
        weights=weights,
        pmethod=cfg.pmethod.value,
    )
