"""Fixed-effects ordinary least squares (FEOLS) estimator.

This module implements OLS with high-dimensional fixed effects (optionally
with varying slopes) absorbed by alternating projections, an ordered (R lm.fit style)
collinearity screen, and iid / heteroskedasticity-robust / cluster-robust
covariance matrices.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import numpy as np

from etwfe.core import fe as fe_core
from etwfe.core import linalg as la
from etwfe.core import vcov as vc
from etwfe.utils.formula import FormulaParser

from .base import BaseEstimator, EstimationResult, screen_collinear

if TYPE_CHECKING:
    import pandas as pd

    from etwfe.utils.terms import ModelFormula

LOGGER = logging.getLogger(__name__)

__all__ = ["FEOLS"]


class FEOLS(BaseEstimator):
    """Linear regression with absorbed fixed effects.

    Estimates ``y = X beta + FE + u`` where each fixed effect may carry varying
    slopes (``g[x]``: one intercept and one slope on ``x`` per level of ``g``).

    Parameters
    ----------
    y : array-like, shape (n,) or (n, 1)
        Dependent variable.
    X : array-like, shape (n, p)
        Regressors. No constant is added; include one explicitly when the
        model has no fixed effects.
    fe : sequence of FixedEffectSpec, optional
        Fixed effects to absorb, aligned with the rows of ``y``.
    var_names : sequence of str, optional
        Regressor names. Defaults to ``X.columns`` or ``x0, x1, ...``.

    Examples
    --------
    >>> model = FEOLS.from_formula(fml, data)  # doctest: +SKIP
    >>> res = model.fit(vcov={"CRV1": "id"})  # doctest: +SKIP
    >>> res.params  # doctest: +SKIP
    """

    @classmethod
    def from_formula(cls, fml: ModelFormula, data: pd.DataFrame) -> FEOLS:
        """Build the model from a typed formula and a DataFrame."""
        parsed = FormulaParser(data).parse(fml)
        model = cls(parsed["y"], parsed["X"], fe=parsed["fe"], var_names=parsed["var_names"])
        model._attach_parsed(parsed)
        return model

    # ------------------------------------------------------------------
    def fit(
        self,
        *,
        vcov: Any = None,
        fixef_tol: float = fe_core.DEFAULT_FIXEF_TOL,
        fixef_maxiter: int = fe_core.DEFAULT_FIXEF_MAXITER,
    ) -> EstimationResult:
        """Fit the model.

        Parameters
        ----------
        vcov : str, mapping or None
            ``"iid"``, ``"hetero"`` or ``{"CRV1": cluster}``. ``None`` clusters
            by the first fixed effect when there is one, else ``"iid"``.
        fixef_tol, fixef_maxiter :
            Convergence settings of the fixed-effects demeaning.
        """
        spec = self._vcov_spec(vcov)
        clusters = self._cluster_ids(spec)

        n = self.y_orig.shape[0]
        diag: dict[str, Any] = {"fixef_iterations": 0, "fixef_converged": True}
        if self._fes:
            Z, fe_diag = fe_core.demean(
                np.hstack([self.y_orig, self.X_orig]),
                self._fes,
                tol=fixef_tol,
                max_iter=fixef_maxiter,
                return_diagnostics=True,
            )
            diag.update(
                fixef_iterations=fe_diag["iterations"], fixef_converged=fe_diag["converged"],
            )
            y_t, X_t = Z[:, :1], Z[:, 1:]
        else:
            y_t, X_t = self.y_orig, self.X_orig

        keep, dropped = screen_collinear(X_t, self._var_names)
        diag["dropped_collinear"] = dropped
        X_k = X_t[:, keep]
        names = [nm for nm, k in zip(self._var_names, keep) if k]

        beta = la.solve(X_k, y_t)
        resid = (y_t - X_k @ beta).reshape(-1)
        n_params = self._n_params(X_k.shape[1], self._fes, clusters)
        df_resid = n - n_params
        if df_resid <= 0:
            msg = f"Not enough observations ({n}) for {n_params} parameters."
            raise ValueError(msg)
        rss = float(resid @ resid)
        sigma2 = rss / df_resid

        bread = la.xtwx_inv(X_k)
        V = vc.sandwich(
            spec,
            bread=bread,
            X=X_k,
            resid=resid,
            weights=None,
            n_params=n_params,
            dispersion=sigma2,
            clusters=clusters,
        )

        y_flat = self.y_orig.reshape(-1)
        tss = float(np.sum((y_flat - y_flat.mean()) ** 2))
        y_t_flat = y_t.reshape(-1)
        tss_within = float(y_t_flat @ y_t_flat)
        extra = {
            "diagnostics": diag,
            "resid": resid,
            "fitted": y_flat - resid,
            "rss": rss,
            "sigma2": sigma2,
            "r2": 1.0 - rss / tss if tss > 0 else np.nan,
            "r2_within": (1.0 - rss / tss_within) if (self._fes and tss_within > 0) else np.nan,
        }
        LOGGER.debug("FEOLS fitted: n=%d, k=%d, vcov=%s", n, X_k.shape[1], spec.label)
        return self._package(
            estimator="FEOLS",
            beta=beta,
            names=names,
            V=V,
            spec=spec,
            n_obs=n,
            n_params=n_params,
            dropped_stats=self._dropped_stats,
            extra=extra,
        )
