"""Extended two-way fixed effects (ETWFE) specification builder.

Wooldridge's ETWFE estimator for staggered difference-in-differences fits one
saturated regression: the treatment indicator crossed with every (cohort,
period) cell, each cell nested by the cell-demeaned controls, plus cohort and
period effects (with the raw controls as varying slopes). This module

1. resolves the cohort and period reference levels,
2. derives the ``.Dtreat`` indicator and the ``<ctrl>_dm`` columns on a copy of
   the data,
3. assembles the typed :class:`~etwfe.utils.terms.ModelFormula`,
4. fits it with :class:`~etwfe.estimators.feols.FEOLS` or
   :class:`~etwfe.estimators.feglm.FEGLM`, and
5. returns an :class:`ETWFEResult` carrying the engine result together with an
   :class:`ETWFEProvenance` record.

All input validation happens before any derived column is built or the engine
is called. Errors raised by the engine propagate unchanged.
"""

# etwfe/estimators/builder.py
from __future__ import annotations

import logging
import warnings
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from etwfe.core.fe import demean_by_codes
from etwfe.errors import (
    EmptyDataError,
    InvalidFormulaError,
    InvalidOptionError,
    InvalidReferenceError,
    ReferenceNotFoundError,
    UnknownColumnError,
)
from etwfe.utils.formula import factorize_cells, parse_formula
from etwfe.utils.terms import (
    CellInteraction,
    Dummies,
    FixedEffect,
    ModelFormula,
    SlopeDummies,
    Term,
    Var,
)

from .base import FitOptions
from .feglm import FEGLM
from .feols import FEOLS

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .base import BaseEstimator, EstimationResult

LOGGER = logging.getLogger(__name__)

__all__ = [
    "DEMEAN_SUFFIX",
    "TREATMENT_COL",
    "ControlGroup",
    "ETWFEProvenance",
    "ETWFEResult",
    "ETWFESpec",
    "FixedEffectsMode",
    "build_formula",
    "build_spec",
    "demean_controls",
    "etwfe",
    "resolve_group_ref",
    "resolve_time_ref",
    "treatment_indicator",
]

TREATMENT_COL = ".Dtreat"
DEMEAN_SUFFIX = "_dm"


# ---------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------
class ControlGroup(str, Enum):
    """Comparison group for the treatment effects."""

    NOTYET = "notyet"
    NEVER = "never"

    @classmethod
    def parse(cls, value: Any) -> ControlGroup:
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        aliases = {"not_yet_treated": "notyet", "never_treated": "never"}
        try:
            return cls(aliases.get(key, key))
        except ValueError:
            msg = f"Unknown control group {value!r}; use 'notyet' or 'never'."
            raise InvalidOptionError(msg) from None


class FixedEffectsMode(str, Enum):
    """How cohort and period effects (and control slopes) enter the model.

    ``VS``
        Absorbed cohort and period effects with the controls as varying slopes.
    ``FEO``
        Absorbed cohort and period effects; controls and their cohort/period
        interactions are reported coefficients.
    ``NONE``
        As ``FEO`` but the cohort and period effects are explicit dummies with
        an intercept.
    """

    VS = "vs"
    FEO = "feo"
    NONE = "none"

    @classmethod
    def parse(cls, value: Any) -> FixedEffectsMode:
        if isinstance(value, cls):
            return value
        key = "none" if value is None else str(value).strip().lower()
        aliases = {"interacted": "vs", "fixed_effects_only": "feo"}
        try:
            return cls(aliases.get(key, key))
        except ValueError:
            msg = f"Unknown fixed-effects mode {value!r}; use 'vs', 'feo' or 'none'."
            raise InvalidOptionError(msg) from None


# ---------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ETWFEProvenance:
    """What a downstream aggregation step needs to interpret the coefficients."""

    gvar: str
    tvar: str
    gref: Any
    tref: Any
    cgroup: ControlGroup
    fe: FixedEffectsMode
    outcome: str
    controls: tuple[str, ...] = ()
    family: Any = None
    treatment_col: str = TREATMENT_COL
    demean_suffix: str = DEMEAN_SUFFIX
    estimator: str = "etwfe"

    @property
    def demeaned_controls(self) -> tuple[str, ...]:
        return tuple(f"{c}{self.demean_suffix}" for c in self.controls)


@dataclass(frozen=True, eq=False)
class ETWFESpec:
    """Generated model formula and the augmented working copy of the data."""

    formula: ModelFormula
    data: pd.DataFrame
    provenance: ETWFEProvenance

    def equals(self, other: ETWFESpec) -> bool:
        """Structural equality: same formula, provenance and augmented data."""
        return (
            self.formula == other.formula
            and self.provenance == other.provenance
            and self.data.equals(other.data)
        )


@dataclass(eq=False)
class ETWFEResult:
    """Fitted ETWFE model: the engine's result plus provenance.

    Attributes
    ----------
    model : EstimationResult
        Native result of the regression engine.
    provenance : ETWFEProvenance
        Cohort / period variables, references, options.
    formula : ModelFormula
        The estimated saturated formula.
    data : pandas.DataFrame
        Working copy of the data with ``.Dtreat`` and demeaned controls.
    estimator : BaseEstimator
        The fitted engine instance.
    """

    model: EstimationResult
    provenance: ETWFEProvenance
    formula: ModelFormula
    data: pd.DataFrame
    estimator: BaseEstimator | None = field(default=None, repr=False)

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        return f"ETWFEResult({self.formula}, n={self.n_obs}, vcov={self.model.model_info.get('vcov')})"

    @property
    def params(self) -> pd.Series:
        return self.model.params

    @property
    def se(self) -> pd.Series | None:
        return self.model.se

    @property
    def vcov(self) -> pd.DataFrame | None:
        return self.model.vcov

    @property
    def n_obs(self) -> int | None:
        return self.model.n_obs

    @property
    def gvar(self) -> str:
        return self.provenance.gvar

    @property
    def tvar(self) -> str:
        return self.provenance.tvar

    def treatment_effects(self) -> pd.DataFrame:
        """Cell coefficients keyed by cohort, period and nested control.

        One row per estimated treatment-cell coefficient (cells dropped by the
        engine for collinearity are omitted). ``control`` is ``None`` for the
        cell's own effect and the raw control name for its nested slope.
        """
        prov = self.provenance
        cell = self.formula.treatment_term
        cols = ["term", prov.gvar, prov.tvar, "control", "estimate", "std_error"]
        if cell is None:
            return pd.DataFrame(columns=cols)
        suffix_len = len(prov.demean_suffix)
        se = self.se
        rows = []
        for name, g, t, nested in cell.coef_map(self.data):
            if name not in self.params.index:
                continue
            rows.append(
                {
                    "term": name,
                    prov.gvar: g,
                    prov.tvar: t,
                    "control": None if nested is None else nested[:-suffix_len],
                    "estimate": float(self.params[name]),
                    "std_error": float(se[name]) if se is not None else np.nan,
                },
            )
        return pd.DataFrame(rows, columns=cols)


# ---------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------


def _as_scalar(value: Any) -> Any:
    return value.item() if isinstance(value, np.generic) else value


def _is_observed(values: pd.Series, level: Any) -> bool:
    if level is None or (np.isscalar(level) and pd.isna(level)):
        return False
    return bool((values == level).any())


def _check_data(data: Any) -> None:
    if not isinstance(data, pd.DataFrame):
        msg = f"data must be a pandas DataFrame, not {type(data).__name__}."
        raise EmptyDataError(msg)
    if data.shape[0] == 0:
        msg = "data has no rows."
        raise EmptyDataError(msg)


def _check_columns(data: pd.DataFrame, roles: Sequence[tuple[str, str]]) -> None:
    for role, name in roles:
        if not isinstance(name, str) or name not in data.columns:
            msg = f"{role} '{name}' not found in data."
            raise UnknownColumnError(msg)


def _check_comparable(data: pd.DataFrame, gvar: str, tvar: str) -> None:
    rows = data[gvar].notna() & data[tvar].notna()
    try:
        _ = data.loc[rows, tvar] >= data.loc[rows, gvar]
    except TypeError as exc:
        msg = (
            f"The 'notyet' control group compares {tvar} with the cohort variable {gvar}, "
            f"but their values are not comparable. Code {gvar} on the {tvar} scale "
            "or use cgroup='never'."
        )
        raise InvalidOptionError(msg) from exc


def resolve_group_ref(
    data: pd.DataFrame,
    gvar: str,
    tvar: str,
    gref: Any = None,
    cgroup: ControlGroup | str = ControlGroup.NOTYET,
) -> Any:
    """Reference cohort for ``gvar``.

    A supplied ``gref`` must be an observed value of ``gvar``. Otherwise the
    smallest ``gvar`` value strictly greater than ``max(tvar)`` is used
    (missing values skipped); several candidates resolve to the minimum.

    Raises
    ------
    InvalidReferenceError
        ``gref`` is not observed in ``gvar``.
    ReferenceNotFoundError
        No ``gvar`` value exceeds ``max(tvar)``.
    """
    cg = ControlGroup.parse(cgroup)
    g = data[gvar]
    if gref is not None:
        if not _is_observed(g, gref):
            msg = f"Proposed reference level {gref!r} not found in {gvar}."
            raise InvalidReferenceError(msg)
        return gref

    hint = (
        f"The '{cg.value}' control group for {gvar} could not be identified: "
        f"no value of {gvar} exceeds max({tvar})."
    )
    tmax = data[tvar].max(skipna=True)
    if pd.isna(tmax):
        msg = f"{hint} {tvar} has no observed values. Provide a reference level via `gref`."
        raise ReferenceNotFoundError(msg)
    levels = pd.unique(g.dropna())
    try:
        candidates = [lv for lv in levels if lv > tmax]
    except TypeError as exc:
        msg = f"{hint} {gvar} is not comparable with {tvar}. Provide a reference level via `gref`."
        raise ReferenceNotFoundError(msg) from exc
    if not candidates:
        msg = f"{hint} You can provide a bespoke reference level via `gref`."
        raise ReferenceNotFoundError(msg)
    if len(candidates) > 1:
        LOGGER.debug("Several reference candidates for %s %s; using the smallest.", gvar, candidates)
    return _as_scalar(min(candidates))


def resolve_time_ref(data: pd.DataFrame, tvar: str, tref: Any = None) -> Any:
    """Reference period for ``tvar``: the supplied ``tref`` or ``min(tvar)``."""
    t = data[tvar]
    if tref is not None:
        if not _is_observed(t, tref):
            msg = f"Proposed reference level {tref!r} not found in {tvar}."
            raise InvalidReferenceError(msg)
        return tref
    tmin = t.min(skipna=True)
    if pd.isna(tmin):
        msg = f"{tvar} has no observed values; provide a reference level via `tref`."
        raise ReferenceNotFoundError(msg)
    return _as_scalar(tmin)


def treatment_indicator(
    data: pd.DataFrame,
    gvar: str,
    tvar: str,
    gref: Any,
    cgroup: ControlGroup | str = ControlGroup.NOTYET,
) -> pd.Series:
    """The ``.Dtreat`` column.

    Under ``notyet``: ``tvar >= gvar`` and ``gvar != gref``; rows with a missing
    cohort or period are ``False``. Under ``never``: ``True`` everywhere, the
    reference cohort being excluded inside the cell interaction instead.

    Raises
    ------
    InvalidOptionError
        Under ``notyet``, ``gvar`` and ``tvar`` cannot be compared.
    """
    cg = ControlGroup.parse(cgroup)
    if cg is ControlGroup.NEVER:
        return pd.Series(True, index=data.index, name=TREATMENT_COL, dtype=bool)
    _check_comparable(data, gvar, tvar)
    g = data[gvar]
    t = data[tvar]
    d = (t >= g) & (g != gref) & g.notna() & t.notna()
    return d.fillna(False).astype(bool).rename(TREATMENT_COL)


def demean_controls(
    data: pd.DataFrame, controls: Sequence[str], gvar: str, tvar: str,
) -> pd.DataFrame:
    """Controls centred within (gvar, tvar) cells, named ``<ctrl>_dm``.

    Cell means skip missing control values. Rows with a missing cohort, period
    or control value are ``NaN``.
    """
    names = [f"{c}{DEMEAN_SUFFIX}" for c in controls]
    if not controls:
        return pd.DataFrame(index=data.index)
    codes = factorize_cells([data[gvar], data[tvar]])
    values = data[list(controls)].to_numpy(dtype=np.float64, na_value=np.nan)
    out = demean_by_codes(values, codes)
    return pd.DataFrame(out, index=data.index, columns=names)


def build_formula(  # noqa: PLR0913
    outcome: str,
    controls: Sequence[str],
    gvar: str,
    tvar: str,
    gref: Any,
    tref: Any,
    fe: FixedEffectsMode | str = FixedEffectsMode.VS,
) -> ModelFormula:
    """Assemble the saturated ETWFE formula for the chosen fixed-effects mode.

    ``vs``:   ``y ~ .Dtreat:i(g, i.t, ref, ref2) / x_dm | g[x] + t[x]``
    ``feo``:  ``y ~ .Dtreat:i(...) / x_dm + x + i(g, x, ref) + i(t, x, ref2) | g + t``
    ``none``: the ``feo`` terms plus ``i(g, ref) + i(t, ref2)`` and an intercept.
    """
    mode = FixedEffectsMode.parse(fe)
    ctrls = tuple(controls)
    cell = CellInteraction(
        indicator=TREATMENT_COL,
        gvar=gvar,
        tvar=tvar,
        gref=gref,
        tref=tref,
        nest=tuple(f"{c}{DEMEAN_SUFFIX}" for c in ctrls),
    )
    if mode is FixedEffectsMode.VS:
        return ModelFormula(
            outcome=outcome,
            terms=(cell,),
            fixed_effects=(FixedEffect(gvar, ctrls), FixedEffect(tvar, ctrls)),
        )

    terms: list[Term] = [cell]
    terms.extend(Var(c) for c in ctrls)
    terms.extend(SlopeDummies(gvar, c, gref) for c in ctrls)
    terms.extend(SlopeDummies(tvar, c, tref) for c in ctrls)
    if mode is FixedEffectsMode.FEO:
        return ModelFormula(
            outcome=outcome,
            terms=tuple(terms),
            fixed_effects=(FixedEffect(gvar), FixedEffect(tvar)),
        )
    terms.extend([Dummies(gvar, gref), Dummies(tvar, tref)])
    return ModelFormula(outcome=outcome, terms=tuple(terms), intercept=True)


# ---------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------


def build_spec(  # noqa: PLR0913
    fml: str,
    gvar: str,
    tvar: str,
    data: pd.DataFrame,
    *,
    gref: Any = None,
    tref: Any = None,
    cgroup: ControlGroup | str = ControlGroup.NOTYET,
    fe: FixedEffectsMode | str = FixedEffectsMode.VS,
    family: Any = None,
) -> ETWFESpec:
    """Validate inputs and build the ETWFE formula and augmented data.

    Same arguments as :func:`etwfe` minus the fit options; nothing is
    estimated. ``data`` itself is never modified.
    """
    _check_data(data)
    outcome, controls = parse_formula(fml)
    _check_columns(
        data,
        [("gvar", gvar), ("tvar", tvar), ("Outcome", outcome)]
        + [("Control", c) for c in controls],
    )
    cg = ControlGroup.parse(cgroup)
    mode = FixedEffectsMode.parse(fe)
    for c in controls:
        if not pd.api.types.is_numeric_dtype(data[c]):
            msg = f"Control '{c}' must be numeric."
            raise InvalidFormulaError(msg)
    g_ref = resolve_group_ref(data, gvar, tvar, gref, cg)
    t_ref = resolve_time_ref(data, tvar, tref)
    if cg is ControlGroup.NOTYET:
        _check_comparable(data, gvar, tvar)
    LOGGER.debug("ETWFE references: %s=%r, %s=%r (%s)", gvar, g_ref, tvar, t_ref, cg.value)

    derived = [TREATMENT_COL, *(f"{c}{DEMEAN_SUFFIX}" for c in controls)]
    clash = [c for c in derived if c in data.columns]
    if clash:
        warnings.warn(
            f"Column(s) {clash} already exist in data and are replaced in the working copy.",
            UserWarning,
            stacklevel=2,
        )

    work = data.copy()
    work[TREATMENT_COL] = treatment_indicator(work, gvar, tvar, g_ref, cg)
    if controls:
        dm = demean_controls(work, controls, gvar, tvar)
        for col in dm.columns:
            work[col] = dm[col]

    formula = build_formula(outcome, controls, gvar, tvar, g_ref, t_ref, mode)
    LOGGER.debug("ETWFE formula: %s", formula)
    provenance = ETWFEProvenance(
        gvar=gvar,
        tvar=tvar,
        gref=g_ref,
        tref=t_ref,
        cgroup=cg,
        fe=mode,
        outcome=outcome,
        controls=tuple(controls),
        family=family,
    )
    return ETWFESpec(formula=formula, data=work, provenance=provenance)


def etwfe(  # noqa: PLR0913
    fml: str,
    gvar: str,
    tvar: str,
    data: pd.DataFrame,
    *,
    gref: Any = None,
    tref: Any = None,
    cgroup: ControlGroup | str = ControlGroup.NOTYET,
    fe: FixedEffectsMode | str = FixedEffectsMode.VS,
    family: Any = None,
    options: FitOptions | Mapping[str, Any] | None = None,
    **fit_kwargs: Any,
) -> ETWFEResult:
    """Estimate an extended two-way fixed effects regression.

    Parameters
    ----------
    fml : str
        Outcome and controls, e.g. ``"y ~ x1 + x2"``; ``"y ~ 0"`` (or
        ``"y ~ 1"``) for no controls.
    gvar : str
        Cohort variable (first treated period; never-treated units carry a
        value beyond the last period or a sentinel passed as ``gref``).
    tvar : str
        Time variable.
    data : pandas.DataFrame
        Panel data. Not modified.
    gref, tref : optional
        Reference cohort and period. Default to the smallest cohort after the
        last period and the first period.
    cgroup : {"notyet", "never"}
        Not-yet-treated or never-treated comparison group.
    fe : {"vs", "feo", "none"}
        Fixed-effects mode, see :func:`build_formula`.
    family : str or statsmodels family, optional
        ``None`` fits by OLS (:class:`FEOLS`); otherwise a GLM
        (:class:`FEGLM`), e.g. ``"poisson"`` or ``"logit"``.
    options : FitOptions or mapping, optional
        Engine keyword arguments forwarded verbatim to ``fit``.
    **fit_kwargs :
        Further engine keyword arguments (``vcov``, ``fixef_tol``, ...).

    Returns
    -------
    ETWFEResult

    Examples
    --------
    >>> res = etwfe("y ~ x1", gvar="first_treat", tvar="year", data=df,
    ...             vcov={"CRV1": "id"})  # doctest: +SKIP
    >>> res.treatment_effects()  # doctest: +SKIP
    """
    opts = options if isinstance(options, FitOptions) else FitOptions(options or {})
    opts = opts.merged(fit_kwargs)
    spec = build_spec(
        fml, gvar, tvar, data, gref=gref, tref=tref, cgroup=cgroup, fe=fe, family=family,
    )
    if family is None:
        model: BaseEstimator = FEOLS.from_formula(spec.formula, spec.data)
    else:
        model = FEGLM.from_formula(spec.formula, spec.data, family=family)
    result = model.fit(**opts.as_kwargs())
    return ETWFEResult(
        model=result,
        provenance=spec.provenance,
        formula=spec.formula,
        data=spec.data,
        estimator=model,
    )
