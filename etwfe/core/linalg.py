"""Linear algebra routines for regression analysis.

This module provides the pivoted-QR least squares solver used by the
fixed-effects engines, together with the ordered collinearity screen that
decides which columns survive and a QR route to $(X'WX)^{-1}$. Explicit
inversion of the Gram matrix is avoided.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import scipy.linalg as sla

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

__all__ = [
    "group_sum",
    "keep_columns",
    "qr",
    "rank_from_diag",
    "solve",
    "validate_weights",
    "xtwx_inv",
]

# R lm.fit / fixest documented default: tol = 1e-7 * max(|diag(R)|)
_R_TOL_SCALE = 1e-7


def _as_2d(A: NDArray[np.float64]) -> NDArray[np.float64]:
    arr = np.asarray(A, dtype=np.float64)
    return arr.reshape(-1, 1) if arr.ndim == 1 else arr


def validate_weights(weights: Sequence[float], n: int) -> NDArray[np.float64]:
    """Validate nonnegative weights and return a dense float64 array of shape (n,)."""
    w = np.asarray(weights, dtype=np.float64).reshape(-1)
    if w.shape[0] != n:
        msg = "weights length must match n."
        raise ValueError(msg)
    if np.any(~np.isfinite(w)):
        msg = "weights must be finite."
        raise ValueError(msg)
    if np.any(w < 0):
        msg = "weights must be nonnegative."
        raise ValueError(msg)
    return w


def qr(A: NDArray[np.float64], *, pivoting: bool = False):
    """Economic QR decomposition via SciPy, optionally column pivoted."""
    Ad = _as_2d(A)
    rcols = min(Ad.shape[0], Ad.shape[1])
    if pivoting:
        Q, R, P = sla.qr(Ad, mode="economic", pivoting=True)
        return Q[:, :rcols], R[:rcols, :], P
    Q, R = sla.qr(Ad, mode="economic", pivoting=False)
    return Q[:, :rcols], R[:rcols, :]


def rank_from_diag(diagR: NDArray[np.float64]) -> int:
    """Numerical rank from the diagonal of a pivoted R factor (R lm.fit rule)."""
    d = np.abs(np.asarray(diagR, dtype=np.float64).reshape(-1))
    if d.size == 0:
        return 0
    tol = _R_TOL_SCALE * float(np.max(d))
    return int(np.sum(d > tol))


def keep_columns(A: NDArray[np.float64]) -> NDArray[np.bool_]:
    """Boolean mask of the columns of ``A`` kept by the collinearity screen.

    Columns are screened left to right, as R's ``lm.fit`` does: column ``j``
    is dropped when its residual on the columns already kept is at most
    ``1e-7 * max|diag R|``, the maximum taken over the kept columns and the
    norm of column ``j``. Of two collinear columns the later one is dropped
    whatever their norms. Columns with norm at most ``1e-7`` times the largest
    column norm (for instance a regressor fully absorbed by the fixed effects)
    are always dropped.
    """
    Ad = _as_2d(A)
    n, p = Ad.shape
    keep = np.zeros(p, dtype=bool)
    if p == 0 or n == 0:
        return keep
    norms = np.linalg.norm(Ad, axis=0)
    floor = _R_TOL_SCALE * float(np.max(norms))
    basis = np.empty((n, min(n, p)), dtype=np.float64)
    r = 0
    scale = 0.0
    for j in range(p):
        col = Ad[:, j]
        norm = float(norms[j])
        # numerically zero, e.g. absorbed up to the demeaning tolerance
        if norm <= floor or r == n:
            continue
        resid = col.copy()
        # second pass restores orthogonality lost to cancellation
        for _ in range(2):
            resid -= basis[:, :r] @ (basis[:, :r].T @ resid)
        rdiag = float(np.linalg.norm(resid))
        if rdiag <= _R_TOL_SCALE * max(scale, norm):
            continue
        basis[:, r] = resid / rdiag
        keep[j] = True
        scale = max(scale, rdiag)
        r += 1
    return keep


def solve(
    A: NDArray[np.float64],
    B: NDArray[np.float64],
    *,
    weights: Sequence[float] | None = None,
) -> NDArray[np.float64]:
    """Least squares solution of ``A X = B`` by pivoted QR.

    With ``weights`` the problem is solved on $\\sqrt{W}A$ and $\\sqrt{W}B$.
    Unidentified directions are returned as NaN (R convention); callers are
    expected to screen collinear columns beforehand with :func:`keep_columns`.
    """
    Ad = _as_2d(A)
    Bd = _as_2d(B)
    if weights is not None:
        sw = np.sqrt(validate_weights(weights, Ad.shape[0])).reshape(-1, 1)
        Ad = Ad * sw
        Bd = Bd * sw
    Q, R, P = qr(Ad, pivoting=True)
    r = rank_from_diag(np.diag(R))
    out = np.full((Ad.shape[1], Bd.shape[1]), np.nan, dtype=np.float64)
    if r > 0:
        QtB = Q.T @ Bd
        out[P[:r], :] = sla.solve_triangular(
            R[:r, :r], QtB[:r, :], lower=False, check_finite=False,
        )
    return out


def xtwx_inv(
    X: NDArray[np.float64], weights: Sequence[float] | None = None,
) -> NDArray[np.float64]:
    """Compute $(X'WX)^{-1}$ via pivoted QR on $X_w=\\sqrt{W}X$.

    ``X`` must have full column rank; a rank-deficient input raises
    :class:`numpy.linalg.LinAlgError`.
    """
    Xd = _as_2d(X)
    p = Xd.shape[1]
    if weights is not None:
        Xd = Xd * np.sqrt(validate_weights(weights, Xd.shape[0])).reshape(-1, 1)
    _Q, R, P = qr(Xd, pivoting=True)
    if rank_from_diag(np.diag(R)) < p:
        msg = "X'WX is singular; screen collinear columns before inference."
        raise np.linalg.LinAlgError(msg)
    Rinv = sla.solve_triangular(R, np.eye(p), lower=False, check_finite=False)
    A = Rinv @ Rinv.T
    invp = np.argsort(P[:p])
    return A[invp][:, invp]


def group_sum(
    X: NDArray[np.float64], codes: NDArray[np.int64], n_groups: int | None = None,
) -> NDArray[np.float64]:
    """Sum rows of ``X`` within groups given by contiguous integer ``codes``.

    Returns a dense ``(G, p)`` array where ``G`` is ``n_groups`` or
    ``codes.max() + 1``. Codes must be nonnegative.
    """
    Xd = _as_2d(X)
    codes_arr = np.asarray(codes, dtype=np.int64).reshape(-1)
    if codes_arr.shape[0] != Xd.shape[0]:
        msg = "codes length must match number of rows in X"
        raise ValueError(msg)
    G = int(n_groups) if n_groups is not None else (int(codes_arr.max()) + 1 if codes_arr.size else 0)
    out = np.empty((G, Xd.shape[1]), dtype=np.float64)
    for j in range(Xd.shape[1]):
        out[:, j] = np.bincount(codes_arr, weights=Xd[:, j], minlength=G)
    return out
