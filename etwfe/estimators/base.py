"""Base classes and fit configuration.

This module defines the abstract base estimator, the fit-option container the
ETWFE builder forwards to the engines, and the standardized estimation results
container shared by :class:`~etwfe.estimators.feols.FEOLS` and
:class:`~etwfe.estimators.feglm.FEGLM`.
"""

# etwfe/estimators/base.py
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from etwfe.core import fe as fe_core
from etwfe.core import linalg as la
from etwfe.core import vcov as vc

if TYPE_CHECKING:  # import-only typing
    from collections.abc import Sequence

    from numpy.typing import NDArray

LOGGER = logging.getLogger(__name__)

__all__ = [
    "BaseEstimator",
    "EstimationResult",
    "FitOptions",
]


# ---------------------------------------------------------------------
# Fit options forwarded verbatim to the engine
# ---------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class FitOptions:
    """Engine keyword arguments passed through the ETWFE builder untouched.

    The builder interprets none of these; they reach ``FEOLS.fit`` /
    ``FEGLM.fit`` as keyword arguments (for example ``vcov={"CRV1": "id"}`` or
    ``fixef_tol=1e-10``). Unknown names are rejected by the engine, not here.
    """

    engine: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.engine, Mapping):
            msg = f"FitOptions.engine must be a mapping, not {type(self.engine).__name__}."
            raise TypeError(msg)
        object.__setattr__(self, "engine", MappingProxyType(dict(self.engine)))

    def merged(self, extra: Mapping[str, Any]) -> FitOptions:
        """Return options with ``extra`` added; a name given twice is an error."""
        clash = sorted(set(self.engine) & set(extra))
        if clash:
            msg = f"Fit option(s) {clash} given both in FitOptions and as keyword arguments."
            raise TypeError(msg)
        return FitOptions({**self.engine, **extra})

    def as_kwargs(self) -> dict[str, Any]:
        return dict(self.engine)


# ---------------------------------------------------------------------
# Results container (fixest-like), extensible and estimator-agnostic
# ---------------------------------------------------------------------
@dataclass
class EstimationResult:
    """Container for estimation results.

    Stores parameter estimates, standard errors, the covariance matrix and
    diagnostics. Does not compute p-values.
    """

    params: pd.Series
    se: pd.Series | None = None
    vcov: pd.DataFrame | None = None
    n_obs: int | None = None
    model_info: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
    """Dictionary for estimator-specific diagnostics and intermediate results."""

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        head = ", ".join(
            f"{k}={v}" for k, v in self.model_info.items() if k in {"Estimator", "vcov", "fixef"}
        )
        return f"EstimationResult(k={len(self.params)}, n={self.n_obs}, {head})"

    @property
    def tstat(self) -> pd.Series | None:
        if self.se is None:
            return None
        return self.params / self.se

    @property
    def resid(self) -> NDArray[np.float64] | None:
        return self.extra.get("resid")

    @property
    def fitted(self) -> NDArray[np.float64] | None:
        return self.extra.get("fitted")


# ---------------------------------------------------------------------
# Helpers shared by the engines
# ---------------------------------------------------------------------


def _to_numpy_1d(values: Sequence | None) -> np.ndarray | None:
    """Convert 1-D like input to a numpy array without copying when possible."""
    if values is None:
        return None
    arr = values.to_numpy() if hasattr(values, "to_numpy") else np.asarray(values)
    if arr.ndim == 0:
        arr = arr.reshape(1)
    elif arr.ndim > 1:
        arr = arr.reshape(-1)
    return arr


def _align_with_mask(
    arr: np.ndarray, mask: np.ndarray | None, n_original: int,
) -> np.ndarray:
    """Align identifier arrays with the estimation sample defined by ``mask``.

    Accepts identifiers defined either on the original sample (length ==
    n_original) or already restricted to the estimation sample.
    """
    if mask is None:
        if arr.shape[0] != n_original:
            msg = f"Identifier length {arr.shape[0]} incompatible with n={n_original}."
            raise ValueError(msg)
        return arr
    mask = np.asarray(mask, dtype=bool).reshape(-1)
    n_final = int(mask.sum())
    if arr.shape[0] == n_final:
        return arr
    if arr.shape[0] == mask.shape[0]:
        return arr[mask]
    msg = (
        f"Identifier length {arr.shape[0]} incompatible with data length {mask.shape[0]} "
        f"and estimation sample n={n_final}."
    )
    raise ValueError(msg)


def screen_collinear(
    X: NDArray[np.float64],
    var_names: Sequence[str],
    *,
    weights: NDArray[np.float64] | None = None,
) -> tuple[NDArray[np.bool_], list[str]]:
    """Keep mask and names of regressors dropped for collinearity.

    Applied after fixed-effect absorption, so regressors fully explained by the
    fixed effects (all-zero columns) are removed here as well.
    """
    A = X if weights is None else X * np.sqrt(weights).reshape(-1, 1)
    keep = la.keep_columns(A)
    if not np.any(keep):
        msg = "All regressors dropped by collinearity screen (rank=0). Check FE specification and multicollinearity."
        raise RuntimeError(msg)
    dropped = [nm for nm, k in zip(var_names, keep) if not k]
    if dropped:
        LOGGER.info(
            "The variable(s) %s removed because of collinearity.", ", ".join(map(repr, dropped)),
        )
    return keep, dropped


# ---------------------------------------------------------------------
# Base interface
# ---------------------------------------------------------------------
class BaseEstimator(ABC):
    """Abstract base class for the fixed-effects engines.

    Principles
    ----------
    1) All linear algebra goes through `core.linalg`.
    2) FE absorption goes through `core.fe`.
    3) Covariance matrices go through `core.vcov`.
    """

    def __init__(
        self,
        y: Any,
        X: Any,
        *,
        fe: Sequence[fe_core.FixedEffectSpec] | None = None,
        var_names: Sequence[str] | None = None,
    ) -> None:
        self._results: EstimationResult | None = None
        y_arr = np.asarray(y, dtype=np.float64).reshape(-1, 1)
        if var_names is None and isinstance(X, pd.DataFrame):
            var_names = list(X.columns)
        X_arr = np.asarray(X, dtype=np.float64, order="C")
        X_arr = X_arr.reshape(-1, 1) if X_arr.ndim == 1 else X_arr
        if X_arr.shape[0] != y_arr.shape[0]:
            msg = f"y has {y_arr.shape[0]} rows but X has {X_arr.shape[0]}."
            raise ValueError(msg)
        if var_names is None:
            var_names = [f"x{i}" for i in range(X_arr.shape[1])]
        if len(var_names) != X_arr.shape[1]:
            msg = "var_names length must match the number of columns of X."
            raise ValueError(msg)
        self.y_orig: NDArray[np.float64] = y_arr
        self.X_orig: NDArray[np.float64] = X_arr
        self._var_names: list[str] = list(var_names)
        self._fes: list[fe_core.FixedEffectSpec] = list(fe or [])
        for spec in self._fes:
            if spec.codes.shape[0] != y_arr.shape[0]:
                msg = f"Fixed effect '{spec.name}' must have one id per observation."
                raise ValueError(msg)
        # populated by from_formula
        self._formula: str | None = None
        self._data_used: pd.DataFrame | None = None
        self._row_mask_valid: NDArray[np.bool_] | None = None
        self._dropped_stats: dict[str, int] = {"na": 0}

    def _attach_parsed(self, parsed: dict[str, Any]) -> None:
        self._formula = parsed["formula"]
        self._data_used = parsed["data_used"]
        self._row_mask_valid = parsed["row_mask_valid"]
        self._dropped_stats = dict(parsed["dropped_stats"])

    @property
    def var_names(self) -> list[str]:
        return list(self._var_names)

    @property
    def fixef_label(self) -> str:
        return " + ".join(spec.label for spec in self._fes) if self._fes else "none"

    @abstractmethod
    def fit(
        self, *args: Any, **kwargs: Any,
    ) -> EstimationResult:  # pragma: no cover - abstract
        """Fit the estimator and return EstimationResult (abstract)."""
        ...

    # -- convenience accessors ----------------------------------------
    @property
    def results(self) -> EstimationResult:
        if self._results is None:
            msg = "Model has not been fitted yet. Call .fit() first."
            raise RuntimeError(msg)
        return self._results

    @property
    def params(self) -> pd.Series:
        return self.results.params

    @property
    def se(self) -> pd.Series | None:
        return self.results.se

    @property
    def vcov(self) -> pd.DataFrame | None:
        return self.results.vcov

    @property
    def n_obs(self) -> int | None:
        return self.results.n_obs

    # -- protected helpers for subclasses ------------------------------
    def _vcov_spec(self, vcov: Any) -> vc.VcovSpec:
        default = self._fes[0].name if self._fes else None
        return vc.parse_vcov(vcov, default_cluster=default)

    def _cluster_ids(
        self, spec: vc.VcovSpec, keep_rows: NDArray[np.bool_] | None = None,
    ) -> NDArray[np.int64] | None:
        """Materialise cluster codes on the current estimation rows.

        A string cluster is looked up first among the data columns kept by
        ``from_formula``, then among the fixed effects. ``keep_rows`` restricts
        to rows surviving engine-side drops (perfect-fit groups).
        """
        if spec.kind != "CRV1":
            return None
        cl = spec.cluster
        if isinstance(cl, str):
            if self._data_used is not None and cl in self._data_used.columns:
                raw = self._data_used[cl].to_numpy()
            else:
                match = [f for f in self._fes if f.name == cl]
                if not match:
                    msg = f"Cluster variable '{cl}' not found in data or fixed effects."
                    raise KeyError(msg)
                raw = match[0].codes
        else:
            raw = _to_numpy_1d(cl)
            if raw is None:
                msg = "CRV1 requires a cluster column name or an array of cluster ids."
                raise ValueError(msg)
            raw = _align_with_mask(raw, self._row_mask_valid, self.y_orig.shape[0])
        if raw.shape[0] != self.y_orig.shape[0]:
            msg = f"Cluster ids have length {raw.shape[0]}; expected {self.y_orig.shape[0]}."
            raise ValueError(msg)
        if keep_rows is not None:
            raw = raw[keep_rows]
        if bool(np.any(pd.isna(raw))):
            msg = "Cluster variable contains missing values; clean identifiers before estimation."
            raise ValueError(msg)
        codes, _ = pd.factorize(pd.Series(raw))
        return np.asarray(codes, dtype=np.int64)

    @staticmethod
    def _n_params(
        n_coef: int,
        fes: Sequence[fe_core.FixedEffectSpec],
        clusters: NDArray[np.int64] | None,
    ) -> int:
        return int(n_coef) + fe_core.compute_fe_dof(fes, clusters=clusters)

    def _package(  # noqa: PLR0913
        self,
        *,
        estimator: str,
        beta: NDArray[np.float64],
        names: Sequence[str],
        V: NDArray[np.float64],
        spec: vc.VcovSpec,
        n_obs: int,
        n_params: int,
        dropped_stats: dict[str, int],
        model_info: dict[str, Any] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> EstimationResult:
        names = list(names)
        params = pd.Series(np.asarray(beta, dtype=np.float64).reshape(-1), index=names)
        se = pd.Series(np.sqrt(np.clip(np.diag(V), 0.0, None)), index=names)
        info = {
            "Estimator": estimator,
            "formula": self._formula,
            "fixef": self.fixef_label,
            "vcov": spec.label,
            "n_params": int(n_params),
            "dropped_stats": dict(dropped_stats),
        }
        info.update(model_info or {})
        self._results = EstimationResult(
            params=params,
            se=se,
            vcov=pd.DataFrame(V, index=names, columns=names),
            n_obs=int(n_obs),
            model_info=info,
            extra=dict(extra or {}),
        )
        return self._results
