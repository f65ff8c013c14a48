"""Fixed-effects absorption and within-cell demeaning.

This module provides multi-way fixed effects absorption using alternating
projections (Frisch-Waugh-Lovell). Each fixed effect may carry varying slopes,
in which case the projection removes, level by level, the span of
``{1, slope_1, ..., slope_k}`` (fixest ``fe[x1, x2]`` semantics). Observation
weights are supported for the IRLS path of the GLM engine.

The one-way, NaN-aware :func:`demean_by_codes` is used by the ETWFE builder to
centre control variables within (group, time) cells.
"""

# etwfe/core/fe.py
from __future__ import annotations

import logging
import warnings
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from .linalg import group_sum, validate_weights

if TYPE_CHECKING:
    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

LOGGER = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_FIXEF_MAXITER",
    "DEFAULT_FIXEF_TOL",
    "FixedEffectSpec",
    "compute_fe_dof",
    "demean",
    "demean_by_codes",
    "is_nested",
]

# reghdfe-style defaults: tol=1e-8; fixest-style iteration cap
DEFAULT_FIXEF_TOL: float = 1e-8
DEFAULT_FIXEF_MAXITER: int = 10000


def _to_codes(z: Any) -> NDArray[np.int64]:
    """Map labels to consecutive 0..G-1 integer codes (sorted); missing -> -1."""
    codes, _ = pd.factorize(pd.Series(np.asarray(z).reshape(-1)), sort=True)
    return np.asarray(codes, dtype=np.int64)


@dataclass(slots=True)
class FixedEffectSpec:
    """One absorbed fixed-effect dimension.

    Attributes
    ----------
    name : str
        Column name of the fixed effect.
    codes : np.ndarray
        Integer level codes (``-1`` marks a missing id).
    slopes : np.ndarray | None
        ``(n, k)`` matrix of varying-slope variables, or ``None``.
    slope_names : tuple[str, ...]
        Names of the slope variables, aligned with ``slopes`` columns.
    """

    name: str
    codes: NDArray[np.int64]
    slopes: NDArray[np.float64] | None = None
    slope_names: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        self.codes = np.asarray(self.codes, dtype=np.int64).reshape(-1)
        if self.slopes is not None:
            sl = np.asarray(self.slopes, dtype=np.float64)
            sl = sl.reshape(-1, 1) if sl.ndim == 1 else sl
            if sl.shape[0] != self.codes.shape[0]:
                msg = f"Slopes for fixed effect '{self.name}' must have one row per observation."
                raise ValueError(msg)
            self.slopes = sl if sl.shape[1] > 0 else None
        if self.slopes is None:
            self.slope_names = ()
        elif len(self.slope_names) != self.slopes.shape[1]:
            self.slope_names = tuple(f"slope{j}" for j in range(self.slopes.shape[1]))

    @classmethod
    def from_values(
        cls,
        name: str,
        values: Any,
        *,
        slopes: NDArray[np.float64] | None = None,
        slope_names: Sequence[str] = (),
    ) -> FixedEffectSpec:
        """Build a spec from raw (possibly missing) level labels."""
        return cls(name=name, codes=_to_codes(values), slopes=slopes, slope_names=tuple(slope_names))

    @property
    def n_levels(self) -> int:
        return int(self.codes.max()) + 1 if self.codes.size else 0

    @property
    def n_slopes(self) -> int:
        return 0 if self.slopes is None else int(self.slopes.shape[1])

    @property
    def label(self) -> str:
        if not self.slope_names:
            return self.name
        return f"{self.name}[{', '.join(self.slope_names)}]"

    def valid_rows(self) -> NDArray[np.bool_]:
        """Rows with an observed id and finite slope values."""
        ok = self.codes >= 0
        if self.slopes is not None:
            ok &= np.all(np.isfinite(self.slopes), axis=1)
        return ok

    def subset(self, mask: NDArray[np.bool_]) -> FixedEffectSpec:
        """Restrict to ``mask`` rows and re-code levels contiguously."""
        mask = np.asarray(mask, dtype=bool)
        _, inv = np.unique(self.codes[mask], return_inverse=True)
        return FixedEffectSpec(
            name=self.name,
            codes=inv.astype(np.int64).reshape(-1),
            slopes=None if self.slopes is None else self.slopes[mask],
            slope_names=self.slope_names,
        )


# Helpers
# ---------------------------------------------------------------------


def _group_means(
    X: NDArray[np.float64],
    codes: NDArray[np.int64],
    *,
    weights: NDArray[np.float64] | None = None,
    skipna: bool = False,
) -> NDArray[np.float64]:
    """Compute group means for rows of X grouped by nonnegative integer ``codes``.

    With ``skipna`` non-finite entries are excluded column by column. Groups
    with zero total weight result in NaN.
    """
    n, p = X.shape
    if codes.shape[0] != n:
        msg = "codes must have same length as rows of X"
        raise ValueError(msg)
    w = np.ones(n, dtype=np.float64) if weights is None else weights
    G = int(codes.max()) + 1 if codes.size else 0
    if skipna:
        finite = np.isfinite(X)
        Xz = np.where(finite, X, 0.0) * w.reshape(-1, 1)
        counts = group_sum(finite * w.reshape(-1, 1), codes, G)
    else:
        Xz = X * w.reshape(-1, 1)
        counts = np.repeat(group_sum(w, codes, G), p, axis=1)
    sums = group_sum(Xz, codes, G)
    means = np.full((G, p), np.nan, dtype=np.float64)
    pos = counts > 0
    means[pos] = sums[pos] / counts[pos]
    return means


def demean_by_codes(X: Any, codes: Any) -> NDArray[np.float64]:
    """Subtract within-group means from each column of ``X``.

    Missing values are skipped when computing the means and stay missing in the
    output; rows whose code is negative (missing group) become NaN.
    """
    Xd = np.asarray(X, dtype=np.float64)
    Xd = Xd.reshape(-1, 1) if Xd.ndim == 1 else Xd
    codes_arr = np.asarray(codes, dtype=np.int64).reshape(-1)
    out = np.full(Xd.shape, np.nan, dtype=np.float64)
    ok = codes_arr >= 0
    if not np.any(ok):
        return out
    sub_codes = codes_arr[ok]
    means = _group_means(Xd[ok], sub_codes, skipna=True)
    out[ok] = Xd[ok] - means[sub_codes]
    return out


def _project_out(
    A: NDArray[np.float64],
    fe: FixedEffectSpec,
    w: NDArray[np.float64] | None,
) -> NDArray[np.float64]:
    """Residualize ``A`` on the level-wise span of ``{1, slopes}`` of one FE."""
    codes = fe.codes
    G = fe.n_levels
    n = A.shape[0]
    wv = np.ones(n, dtype=np.float64) if w is None else w
    if fe.slopes is None:
        sw = group_sum(wv, codes, G).reshape(-1)
        sums = group_sum(A * wv.reshape(-1, 1), codes, G)
        means = np.zeros_like(sums)
        pos = sw > 0
        means[pos] = sums[pos] / sw[pos].reshape(-1, 1)
        return A - means[codes]

    Z = np.column_stack([np.ones(n, dtype=np.float64), fe.slopes])
    m = Z.shape[1]
    ZtZ = np.empty((G, m, m), dtype=np.float64)
    ZtA = np.empty((G, m, A.shape[1]), dtype=np.float64)
    for a in range(m):
        wz = wv * Z[:, a]
        for b in range(a, m):
            ZtZ[:, a, b] = np.bincount(codes, weights=wz * Z[:, b], minlength=G)
            ZtZ[:, b, a] = ZtZ[:, a, b]
        ZtA[:, a, :] = group_sum(A * wz.reshape(-1, 1), codes, G)
    coef = np.linalg.pinv(ZtZ, hermitian=True) @ ZtA  # (G, m, p)
    fitted = np.einsum("nm,nmp->np", Z, coef[codes])
    return A - fitted


def is_nested(target: NDArray[np.int64], others: list[NDArray[np.int64]]) -> bool:
    """Check if ``target`` is perfectly determined by the concatenation of ``others``."""
    if len(others) == 0:
        return False
    keys = np.column_stack([np.asarray(z).reshape(-1) for z in others])
    _, key_inv = np.unique(keys, axis=0, return_inverse=True)
    key_inv = key_inv.reshape(-1)
    kt = np.column_stack([key_inv, np.asarray(target).reshape(-1)])
    _, inv = np.unique(kt, axis=0, return_inverse=True)
    return int(inv.max()) + 1 == int(key_inv.max()) + 1


def compute_fe_dof(
    fes: Sequence[FixedEffectSpec], *, clusters: NDArray[np.int64] | None = None,
) -> int:
    """Degrees of freedom consumed by the absorbed fixed effects.

    Intercept levels of every dimension count once, minus one redundancy per
    additional dimension (connected design assumed). Varying slopes add one
    parameter per level and slope. With ``clusters``, intercepts of dimensions
    nested in the clusters are not counted (fixest ``fixef.K = "nested"``).
    """
    dof = 0
    counted = 0
    for fe in fes:
        dof += fe.n_levels * fe.n_slopes
        if clusters is not None and is_nested(clusters, [fe.codes]):
            continue
        dof += fe.n_levels
        counted += 1
    if counted > 1:
        dof -= counted - 1
    return int(dof)


# ---------------------------------------------------------------------
# Public APIs
# ---------------------------------------------------------------------


def demean(
    A: Any,
    fes: Sequence[FixedEffectSpec],
    *,
    weights: Sequence[float] | None = None,
    tol: float | None = None,
    max_iter: int | None = None,
    return_diagnostics: bool = False,
) -> NDArray[np.float64] | tuple[NDArray[np.float64], dict[str, Any]]:
    """Absorb the fixed effects ``fes`` from every column of ``A``.

    Runs cyclic alternating projections (one projection per FE dimension per
    sweep) until the largest change between sweeps falls below
    ``tol * max(1, max|A|)``. A single dimension is absorbed exactly in one
    sweep. Non-convergence emits a :class:`RuntimeWarning` and returns the
    last iterate.

    Parameters
    ----------
    A : array-like, shape (n,) or (n, p)
        Columns to demean. Must be finite.
    fes : sequence of FixedEffectSpec
        Fixed effects with contiguous, nonnegative codes on the same rows.
    weights : array-like, optional
        Observation weights (weighted projections).
    tol, max_iter :
        Convergence tolerance and sweep cap (defaults ``DEFAULT_FIXEF_TOL`` and
        ``DEFAULT_FIXEF_MAXITER``).
    return_diagnostics : bool
        Also return ``{"iterations", "converged", "max_change"}``.
    """
    Ad = np.asarray(A, dtype=np.float64)
    Ad = Ad.reshape(-1, 1) if Ad.ndim == 1 else Ad.copy()
    n = Ad.shape[0]
    tol = DEFAULT_FIXEF_TOL if tol is None else float(tol)
    max_iter = DEFAULT_FIXEF_MAXITER if max_iter is None else int(max_iter)
    w = None if weights is None else validate_weights(weights, n)
    for fe in fes:
        if fe.codes.shape[0] != n:
            msg = f"Fixed effect '{fe.name}' has {fe.codes.shape[0]} rows; expected {n}."
            raise ValueError(msg)
        if n and int(fe.codes.min()) < 0:
            msg = f"Fixed effect '{fe.name}' contains missing ids; drop them before absorption."
            raise ValueError(msg)

    diag: dict[str, Any] = {"iterations": 0, "converged": True, "max_change": 0.0}
    if not fes or Ad.size == 0:
        return (Ad, diag) if return_diagnostics else Ad

    scale = max(1.0, float(np.max(np.abs(Ad))))
    single = len(fes) == 1
    for it in range(1, max_iter + 1):
        prev = Ad
        for fe in fes:
            Ad = _project_out(Ad, fe, w)
        change = float(np.max(np.abs(Ad - prev)))
        diag.update(iterations=it, max_change=change)
        if single or change <= tol * scale:
            break
    else:
        diag["converged"] = False
        warnings.warn(
            f"Fixed-effects demeaning did not converge in {max_iter} iterations "
            f"(max change {diag['max_change']:.3g}).",
            RuntimeWarning,
            stacklevel=2,
        )
    LOGGER.debug("FE demeaning finished after %d sweep(s)", diag["iterations"])
    return (Ad, diag) if return_diagnostics else Ad
