"""Formula parsing for etwfe.

Two layers live here:

* :func:`parse_formula` reads the user's ``"y ~ x1 + x2"`` string with Patsy and
  returns the outcome and the list of control variables.
* :class:`FormulaParser` materialises a typed :class:`~etwfe.utils.terms.ModelFormula`
  against a DataFrame: response vector, design matrix, fixed-effect specs, and
  the row bookkeeping needed to map results back to the original data.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
import patsy

from etwfe.core.fe import FixedEffectSpec
from etwfe.errors import InvalidFormulaError

if TYPE_CHECKING:  # pragma: no cover - typing only
    from collections.abc import Iterable

    from etwfe.utils.terms import ModelFormula

LOGGER = logging.getLogger(__name__)

__all__ = ["FormulaParser", "factorize_cells", "parse_formula"]


def parse_formula(formula: str) -> tuple[str, list[str]]:
    """Split ``"y ~ x1 + x2"`` into the outcome and the control names.

    ``"y ~ 0"`` and ``"y ~ 1"`` (and any right-hand side made only of intercept
    tokens) mean "no controls". Controls keep their first-appearance order and
    duplicates collapse, as in Patsy.

    Raises
    ------
    InvalidFormulaError
        If Patsy cannot parse the string, the left-hand side is missing or
        holds more than one variable, or a right-hand-side term is an
        interaction (``a:b``).
    """
    if not isinstance(formula, str) or not formula.strip():
        msg = "Formula must be a non-empty string such as 'y ~ x1 + x2' or 'y ~ 0'."
        raise InvalidFormulaError(msg)
    try:
        desc = patsy.ModelDesc.from_formula(formula)
    except patsy.PatsyError as exc:
        msg = f"Could not parse formula {formula!r}: {exc}"
        raise InvalidFormulaError(msg) from exc

    lhs = [term for term in desc.lhs_termlist if term.factors]
    if not lhs:
        msg = f"Formula {formula!r} has no outcome on the left-hand side (expected 'y ~ ...')."
        raise InvalidFormulaError(msg)
    if len(lhs) > 1 or len(lhs[0].factors) > 1:
        msg = f"Formula {formula!r} must have exactly one outcome variable on the left-hand side."
        raise InvalidFormulaError(msg)
    outcome = lhs[0].factors[0].code.strip()

    controls: list[str] = []
    for term in desc.rhs_termlist:
        if not term.factors:
            continue  # intercept
        if len(term.factors) > 1:
            msg = (
                f"Interaction term '{term.name()}' is not supported as a control; "
                "list controls additively, e.g. 'y ~ x1 + x2'."
            )
            raise InvalidFormulaError(msg)
        name = term.factors[0].code.strip()
        if name == outcome:
            msg = f"Outcome '{outcome}' cannot also appear as a control."
            raise InvalidFormulaError(msg)
        if name not in controls:
            controls.append(name)
    return outcome, controls


def factorize_cells(cols: Iterable[pd.Series]) -> np.ndarray:
    """Integer cell ids for the cross-classification of ``cols``.

    Cells are numbered in sorted order of their level combination. A row with a
    missing value in any input gets code ``-1``.
    """
    arrs = [c.to_numpy() for c in cols]
    n = arrs[0].shape[0] if arrs else 0
    na_mask = np.zeros(n, dtype=bool)
    for a in arrs:
        na_mask |= pd.isna(a)
    codes = np.full(n, -1, dtype=np.int64)
    ok = ~na_mask
    if np.any(ok):
        # Factorize complete rows only so missing combinations never take a code
        mi = pd.MultiIndex.from_arrays([a[ok] for a in arrs], names=None)
        sub, _ = mi.factorize(sort=True)
        codes[ok] = sub
    return codes


class FormulaParser:
    """Materialise a :class:`ModelFormula` against a DataFrame.

    Rows with a missing value in any variable the formula reads (outcome,
    regressors, fixed-effect ids, varying slopes) are dropped before the
    design is built, mirroring fixest's listwise deletion. The original index
    is preserved so results can be mapped back.
    """

    def __init__(self, data: pd.DataFrame) -> None:
        if not isinstance(data, pd.DataFrame):
            msg = f"data must be a pandas DataFrame, not {type(data).__name__}."
            raise TypeError(msg)
        self.data = data

    def parse(self, fml: ModelFormula) -> dict[str, Any]:
        """Build the estimation arrays for ``fml``.

        Returns dict with keys: y, X, var_names, fe, row_mask_valid,
        row_index_used, data_used, dropped_stats, include_intercept, formula.
        """
        # Strict: require unique index to avoid ambiguous remapping back to original data
        if self.data.index.has_duplicates:
            msg = "Input DataFrame index must be unique for deterministic row mapping."
            raise ValueError(msg)
        used = list(fml.variables)
        missing = [v for v in used if v not in self.data.columns]
        if missing:
            msg = f"Variable(s) not found in data: {missing}"
            raise KeyError(msg)

        frame = self.data[used]
        mask = frame.notna().all(axis=1).to_numpy(dtype=bool)
        n_na = int(mask.size - mask.sum())
        if n_na:
            LOGGER.info("NOTE: %d observation(s) removed because of NA values.", n_na)
        if not np.any(mask):
            msg = "No complete observations remain after removing rows with missing values."
            raise ValueError(msg)
        df_used = self.data.loc[mask]

        y_ser = df_used[fml.outcome]
        if not (pd.api.types.is_numeric_dtype(y_ser) or pd.api.types.is_bool_dtype(y_ser)):
            msg = f"Outcome '{fml.outcome}' must be numeric."
            raise TypeError(msg)
        y = y_ser.to_numpy(dtype=np.float64).reshape(-1, 1)

        design = fml.design(df_used)
        X = design.to_numpy(dtype=np.float64)
        var_names = list(design.columns)

        fes: list[FixedEffectSpec] = []
        for fe in fml.fixed_effects:
            slopes = None
            if fe.slopes:
                slopes = df_used[list(fe.slopes)].to_numpy(dtype=np.float64)
            fes.append(
                FixedEffectSpec.from_values(
                    fe.var, df_used[fe.var], slopes=slopes, slope_names=fe.slopes,
                ),
            )

        return {
            "y": y,
            "X": np.asarray(X, dtype=np.float64, order="C"),
            "var_names": var_names,
            "fe": fes,
            "row_mask_valid": mask,
            "row_index_used": df_used.index.to_numpy(),
            "data_used": df_used,
            "dropped_stats": {"na": n_na},
            "include_intercept": fml.has_intercept,
            "formula": str(fml),
        }
