"""Fixed-effects generalized linear models (FEGLM).

IRLS on top of the weighted fixed-effects absorption of :mod:`etwfe.core.fe`:
every iteration demeans the working response and the regressors with the
current IRLS weights and solves a weighted least squares problem. Families and
links come from :mod:`statsmodels.genmod.families`.

Before fitting, fixed-effect groups whose outcome sits at the boundary of the
family's support (all zeros for Poisson, all zeros or all ones for binomial)
are removed, since their fixed effect diverges; fixest does the same.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import numpy as np
import statsmodels.api as sm

from etwfe.core import fe as fe_core
from etwfe.core import linalg as la
from etwfe.core import vcov as vc
from etwfe.utils.formula import FormulaParser

from .base import BaseEstimator, EstimationResult, screen_collinear

if TYPE_CHECKING:
    from collections.abc import Sequence

    import pandas as pd
    from numpy.typing import NDArray

    from etwfe.utils.terms import ModelFormula

LOGGER = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_GLM_MAXITER",
    "DEFAULT_GLM_TOL",
    "FEGLM",
    "ConvergenceError",
    "resolve_family",
]

# fixest::feglm defaults
DEFAULT_GLM_TOL: float = 1e-8
DEFAULT_GLM_MAXITER: int = 25

_MAX_HALVINGS = 30


class ConvergenceError(RuntimeError):
    """IRLS did not converge within the iteration budget."""


def _family_table() -> dict[str, Any]:
    return {
        "poisson": sm.families.Poisson,
        "logit": sm.families.Binomial,
        "binomial": sm.families.Binomial,
        "probit": lambda: sm.families.Binomial(link=sm.families.links.Probit()),
        "gaussian": sm.families.Gaussian,
    }


def resolve_family(family: Any) -> sm.families.Family:
    """Map a family name (``"poisson"``, ``"logit"``, ``"probit"``, ``"gaussian"``)
    or a statsmodels family instance to a family instance.
    """
    if isinstance(family, sm.families.Family):
        return family
    if isinstance(family, str):
        table = _family_table()
        key = family.strip().lower()
        if key not in table:
            msg = f"Unknown family {family!r}; expected one of {sorted(table)} or a statsmodels family."
            raise ValueError(msg)
        return table[key]()
    msg = f"family must be a name or a statsmodels family instance, not {type(family).__name__}."
    raise TypeError(msg)


def _family_name(family: sm.families.Family) -> str:
    return f"{type(family).__name__}({type(family.link).__name__.lower()})"


def _has_fixed_dispersion(family: sm.families.Family) -> bool:
    return isinstance(family, (sm.families.Poisson, sm.families.Binomial))


def _check_support(y: NDArray[np.float64], family: sm.families.Family) -> None:
    if isinstance(family, sm.families.Poisson) and np.any(y < 0):
        msg = "Poisson outcome must be nonnegative."
        raise ValueError(msg)
    if isinstance(family, sm.families.Binomial) and np.any((y < 0) | (y > 1)):
        msg = "Binomial outcome must lie in [0, 1]."
        raise ValueError(msg)


def _perfect_fit_rows(
    y: NDArray[np.float64],
    fes: Sequence[fe_core.FixedEffectSpec],
    family: sm.families.Family,
) -> NDArray[np.bool_]:
    """Rows to keep after iteratively removing boundary-outcome FE groups."""
    keep = np.ones(y.shape[0], dtype=bool)
    check_ones = isinstance(family, sm.families.Binomial)
    if not isinstance(family, (sm.families.Poisson, sm.families.Binomial)):
        return keep
    changed = True
    while changed:
        changed = False
        for spec in fes:
            codes = spec.codes[keep]
            yk = y[keep]
            G = int(spec.codes.max()) + 1
            cnt = np.bincount(codes, minlength=G)
            tot = np.bincount(codes, weights=yk, minlength=G)
            bad = (cnt > 0) & (tot == 0)
            if check_ones:
                bad |= (cnt > 0) & (tot == cnt)
            if np.any(bad):
                drop = np.zeros_like(keep)
                drop[keep] = bad[codes]
                keep &= ~drop
                changed = True
    return keep


class FEGLM(BaseEstimator):
    """Generalized linear model with absorbed fixed effects.

    Parameters
    ----------
    y, X, fe, var_names :
        As in :class:`~etwfe.estimators.feols.FEOLS`.
    family : str or statsmodels family
        ``"poisson"``, ``"logit"``, ``"probit"``, ``"gaussian"`` or any
        :class:`statsmodels.genmod.families.Family` instance.
    """

    def __init__(  # noqa: PLR0913
        self,
        y: Any,
        X: Any,
        *,
        family: Any,
        fe: Sequence[fe_core.FixedEffectSpec] | None = None,
        var_names: Sequence[str] | None = None,
    ) -> None:
        super().__init__(y, X, fe=fe, var_names=var_names)
        self.family = resolve_family(family)
        _check_support(self.y_orig.reshape(-1), self.family)

    @classmethod
    def from_formula(cls, fml: ModelFormula, data: pd.DataFrame, *, family: Any) -> FEGLM:
        """Build the model from a typed formula and a DataFrame."""
        family_obj = resolve_family(family)
        parsed = FormulaParser(data).parse(fml)
        model = cls(
            parsed["y"], parsed["X"], family=family_obj, fe=parsed["fe"], var_names=parsed["var_names"],
        )
        model._attach_parsed(parsed)
        return model

    # ------------------------------------------------------------------
    def fit(  # noqa: PLR0913
        self,
        *,
        vcov: Any = None,
        glm_tol: float = DEFAULT_GLM_TOL,
        glm_maxiter: int = DEFAULT_GLM_MAXITER,
        fixef_tol: float = fe_core.DEFAULT_FIXEF_TOL,
        fixef_maxiter: int = fe_core.DEFAULT_FIXEF_MAXITER,
    ) -> EstimationResult:
        """Fit the model by IRLS.

        Parameters
        ----------
        vcov : str, mapping or None
            As in :meth:`FEOLS.fit`.
        glm_tol, glm_maxiter :
            IRLS stops when the relative deviance change
            ``|dev - dev_old| / (0.1 + |dev|)`` falls below ``glm_tol``;
            :class:`ConvergenceError` is raised after ``glm_maxiter`` iterations.
        fixef_tol, fixef_maxiter :
            Convergence settings of the weighted fixed-effects demeaning.
        """
        spec = self._vcov_spec(vcov)
        family = self.family
        link = family.link

        y_all = self.y_orig.reshape(-1)
        keep_rows = _perfect_fit_rows(y_all, self._fes, family)
        n_pf = int(keep_rows.size - keep_rows.sum())
        dropped_stats = dict(self._dropped_stats)
        dropped_stats["perfect_fit"] = n_pf
        if n_pf:
            LOGGER.info("NOTE: %d observation(s) removed because of only 0 (or only 1) outcomes.", n_pf)
        if not np.any(keep_rows):
            msg = "No observations remain after removing fixed-effect groups with only 0 (or only 1) outcomes."
            raise ValueError(msg)
        y = y_all[keep_rows]
        X = self.X_orig[keep_rows]
        fes = [f.subset(keep_rows) for f in self._fes]
        clusters = self._cluster_ids(spec, keep_rows=keep_rows if n_pf else None)
        n = y.shape[0]

        def _absorb(A: NDArray[np.float64], w: NDArray[np.float64]) -> NDArray[np.float64]:
            if not fes:
                return A
            return fe_core.demean(A, fes, weights=w, tol=fixef_tol, max_iter=fixef_maxiter)

        mu = family.starting_mu(y)
        eta = link(mu)
        dev_old = np.inf
        keep_cols: NDArray[np.bool_] | None = None
        dropped: list[str] = []
        converged = False
        it = 0
        for it in range(1, int(glm_maxiter) + 1):
            dmu = link.deriv(mu)
            z = eta + (y - mu) * dmu
            w = 1.0 / (dmu**2 * family.variance(mu))
            Z = _absorb(np.column_stack([z, X]), w)
            z_t, X_t = Z[:, 0], Z[:, 1:]
            if keep_cols is None:
                keep_cols, dropped = screen_collinear(X_t, self._var_names, weights=w)
            X_k = X_t[:, keep_cols]
            beta = la.solve(X_k, z_t, weights=w).reshape(-1)
            eta_new = z - (z_t - X_k @ beta)
            mu_new = family.fitted(eta_new)
            dev = float(family.deviance(y, mu_new))
            halvings = 0
            while not np.isfinite(dev) and halvings < _MAX_HALVINGS:
                eta_new = 0.5 * (eta_new + eta)
                mu_new = family.fitted(eta_new)
                dev = float(family.deviance(y, mu_new))
                halvings += 1
            if not np.isfinite(dev):
                msg = f"IRLS diverged at iteration {it}: deviance is not finite after step halving."
                raise ConvergenceError(msg)
            eta, mu = eta_new, mu_new
            if abs(dev - dev_old) / (0.1 + abs(dev)) < glm_tol:
                converged = True
                break
            dev_old = dev
        if not converged:
            msg = f"IRLS did not converge in {glm_maxiter} iterations (deviance {dev:.6g})."
            raise ConvergenceError(msg)
        LOGGER.debug("FEGLM converged after %d iteration(s), deviance %.6g", it, dev)

        # Score and bread at the converged fit
        dmu = link.deriv(mu)
        w = 1.0 / (dmu**2 * family.variance(mu))
        X_k = _absorb(X, w)[:, keep_cols]
        names = [nm for nm, k in zip(self._var_names, keep_cols) if k]
        working_resid = (y - mu) * dmu
        n_params = self._n_params(X_k.shape[1], fes, clusters)
        df_resid = n - n_params
        if df_resid <= 0:
            msg = f"Not enough observations ({n}) for {n_params} parameters."
            raise ValueError(msg)
        if _has_fixed_dispersion(family):
            dispersion = 1.0
        else:
            dispersion = float(np.sum(w * working_resid**2) / df_resid)
        bread = la.xtwx_inv(X_k, weights=w)
        V = vc.sandwich(
            spec,
            bread=bread,
            X=X_k,
            resid=working_resid,
            weights=w,
            n_params=n_params,
            dispersion=dispersion,
            clusters=clusters,
        )

        extra = {
            "diagnostics": {"dropped_collinear": dropped, "iterations": it, "converged": True},
            "deviance": dev,
            "dispersion": dispersion,
            "resid": y - mu,
            "fitted": mu,
            "linear_predictor": eta,
            "row_keep_mask": keep_rows,
        }
        return self._package(
            estimator="FEGLM",
            beta=beta,
            names=names,
            V=V,
            spec=spec,
            n_obs=n,
            n_params=n_params,
            dropped_stats=dropped_stats,
            model_info={"family": _family_name(family)},
            extra=extra,
        )
