"""Variance-covariance estimators for the fixed-effects engines.

Supported specifications follow the pyfixest / fixest conventions:

``"iid"``
    Classical covariance, ``dispersion * (X'WX)^{-1}``.
``"hetero"`` (alias ``"HC1"``)
    Eicker-Huber-White sandwich with the ``n / (n - K)`` correction.
``{"CRV1": ids}``
    One-way cluster-robust sandwich with the ``G / (G - 1) * (n - 1) / (n - K)``
    correction. ``ids`` is a column name (resolved by the estimator) or an
    array of cluster identifiers.

``K`` counts the estimated coefficients plus the degrees of freedom absorbed by
the fixed effects; see :func:`etwfe.core.fe.compute_fe_dof`.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = ["VcovSpec", "parse_vcov", "sandwich"]

_HETERO_ALIASES = {"hetero", "hc1", "robust", "heteroskedastic"}


@dataclass(frozen=True, slots=True)
class VcovSpec:
    """Normalized covariance request."""

    kind: str  # "iid" | "hetero" | "CRV1"
    cluster: Any = None

    @property
    def label(self) -> str:
        if self.kind != "CRV1":
            return self.kind
        if isinstance(self.cluster, str):
            return f"CRV1 ({self.cluster})"
        return "CRV1"


def parse_vcov(vcov: Any, *, default_cluster: str | None = None) -> VcovSpec:
    """Normalize a user ``vcov`` argument.

    ``None`` selects fixest's default: clustering on the first fixed effect
    when one is present (``default_cluster``), else ``"iid"``.
    """
    if vcov is None:
        if default_cluster is not None:
            return VcovSpec("CRV1", default_cluster)
        return VcovSpec("iid")
    if isinstance(vcov, VcovSpec):
        return vcov
    if isinstance(vcov, str):
        key = vcov.strip().lower()
        if key == "iid":
            return VcovSpec("iid")
        if key in _HETERO_ALIASES:
            return VcovSpec("hetero")
        msg = f"Unknown vcov specification {vcov!r}; use 'iid', 'hetero' or {{'CRV1': cluster}}."
        raise ValueError(msg)
    if isinstance(vcov, Mapping):
        if len(vcov) != 1:
            msg = "vcov mapping must have exactly one entry, e.g. {'CRV1': 'id'}."
            raise ValueError(msg)
        ((key, value),) = vcov.items()
        if str(key).upper() != "CRV1":
            msg = f"Unsupported vcov type {key!r}; only 'CRV1' clustering is available."
            raise ValueError(msg)
        return VcovSpec("CRV1", value)
    msg = f"vcov must be a string, a {{'CRV1': cluster}} mapping or None, not {type(vcov).__name__}."
    raise TypeError(msg)


def sandwich(  # noqa: PLR0913
    spec: VcovSpec,
    *,
    bread: NDArray[np.float64],
    X: NDArray[np.float64],
    resid: NDArray[np.float64],
    weights: NDArray[np.float64] | None,
    n_params: int,
    dispersion: float,
    clusters: Any = None,
) -> NDArray[np.float64]:
    """Compute the covariance matrix for ``spec``.

    Parameters
    ----------
    bread : (k, k) array
        ``(X'WX)^{-1}`` on the absorbed design.
    X, resid :
        Absorbed design and (working) residuals of the estimation sample.
    weights :
        IRLS weights (``None`` for OLS).
    n_params : int
        ``K`` used in the small-sample corrections.
    dispersion : float
        Scale for the iid covariance (``sigma^2`` for OLS, 1 for Poisson/binomial).
    clusters :
        Cluster ids aligned with the rows of ``X`` (CRV1 only).
    """
    n = X.shape[0]
    df_resid = n - int(n_params)
    if df_resid <= 0:
        msg = f"Not enough observations ({n}) for {n_params} parameters."
        raise ValueError(msg)
    if spec.kind == "iid":
        return dispersion * bread

    u = np.asarray(resid, dtype=np.float64).reshape(-1)
    if weights is not None:
        u = u * np.asarray(weights, dtype=np.float64).reshape(-1)
    scores = X * u.reshape(-1, 1)

    if spec.kind == "hetero":
        meat = scores.T @ scores
        adj = n / df_resid
        return adj * (bread @ meat @ bread)

    codes, _ = pd.factorize(pd.Series(np.asarray(clusters).reshape(-1)))
    if codes.shape[0] != n:
        msg = f"Cluster ids have length {codes.shape[0]}; expected {n}."
        raise ValueError(msg)
    if np.any(codes < 0):
        msg = "Cluster variable contains missing values; clean identifiers before estimation."
        raise ValueError(msg)
    G = int(codes.max()) + 1
    if G < 2:
        msg = "Cluster-robust covariance requires at least two clusters."
        raise ValueError(msg)
    S = np.zeros((G, scores.shape[1]), dtype=np.float64)
    np.add.at(S, codes, scores)
    meat = S.T @ S
    adj = (G / (G - 1)) * ((n - 1) / df_resid)
    return adj * (bread @ meat @ bread)
