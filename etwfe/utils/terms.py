"""Typed formula expressions for saturated ETWFE regressions.

A :class:`ModelFormula` is a small abstract syntax tree: an outcome, a tuple of
right-hand-side terms and a tuple of absorbed fixed effects. Every term knows

* how to serialise itself to fixest-style text (``str(term)``), and
* how to materialise its design columns from a DataFrame (``term.columns``),

so reference-level exclusion can be checked on the structure without going
through any string formatting. Column names follow fixest's coefficient naming
(``var::level`` for factor levels, ``:`` for interactions).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

import numpy as np
import pandas as pd

__all__ = [
    "INTERCEPT_NAME",
    "CellInteraction",
    "Dummies",
    "FixedEffect",
    "ModelFormula",
    "SlopeDummies",
    "Term",
    "Var",
    "format_level",
]

INTERCEPT_NAME = "(Intercept)"


def format_level(value: Any) -> str:
    """Render a factor level the way fixest prints it (``2004.0`` -> ``2004``)."""
    if isinstance(value, (bool, np.bool_)):
        return str(bool(value))
    if isinstance(value, (int, np.integer)):
        return str(int(value))
    if isinstance(value, (float, np.floating)) and float(value).is_integer():
        return str(int(value))
    return str(value)


def _ref_repr(value: Any) -> str:
    if isinstance(value, str):
        return repr(value)
    return format_level(value)


def _sorted_levels(values: pd.Series) -> list[Any]:
    return sorted(pd.unique(values.dropna()))


def _level_mask(values: pd.Series, level: Any) -> np.ndarray:
    return (values == level).to_numpy(dtype=bool, na_value=False)


@dataclass(frozen=True, slots=True)
class Var:
    """A plain numeric regressor."""

    name: str

    def __str__(self) -> str:
        return self.name

    @property
    def variables(self) -> tuple[str, ...]:
        return (self.name,)

    def columns(self, data: pd.DataFrame) -> pd.DataFrame:
        return pd.DataFrame({self.name: data[self.name].astype(np.float64)}, index=data.index)


@dataclass(frozen=True, slots=True)
class Dummies:
    """Main-effect indicators for every level of ``var`` except ``ref`` (``i(var, ref=...)``)."""

    var: str
    ref: Any

    def __str__(self) -> str:
        return f"i({self.var}, ref = {_ref_repr(self.ref)})"

    @property
    def variables(self) -> tuple[str, ...]:
        return (self.var,)

    def levels(self, data: pd.DataFrame) -> list[Any]:
        return [lv for lv in _sorted_levels(data[self.var]) if lv != self.ref]

    def columns(self, data: pd.DataFrame) -> pd.DataFrame:
        col = data[self.var]
        out = {
            f"{self.var}::{format_level(lv)}": _level_mask(col, lv).astype(np.float64)
            for lv in self.levels(data)
        }
        return pd.DataFrame(out, index=data.index)


@dataclass(frozen=True, slots=True)
class SlopeDummies:
    """Level-specific slopes of ``slope`` for every level of ``var`` except ``ref``.

    Serialises as ``i(var, slope, ref=...)``.
    """

    var: str
    slope: str
    ref: Any

    def __str__(self) -> str:
        return f"i({self.var}, {self.slope}, ref = {_ref_repr(self.ref)})"

    @property
    def variables(self) -> tuple[str, ...]:
        return (self.var, self.slope)

    def levels(self, data: pd.DataFrame) -> list[Any]:
        return [lv for lv in _sorted_levels(data[self.var]) if lv != self.ref]

    def columns(self, data: pd.DataFrame) -> pd.DataFrame:
        col = data[self.var]
        x = data[self.slope].to_numpy(dtype=np.float64, na_value=np.nan)
        out = {
            f"{self.var}::{format_level(lv)}:{self.slope}": _level_mask(col, lv) * x
            for lv in self.levels(data)
        }
        return pd.DataFrame(out, index=data.index)


@dataclass(frozen=True, slots=True)
class CellInteraction:
    """Treatment indicator crossed with every (group, time) cell, optionally nested.

    Equivalent to fixest's ``indicator:i(gvar, i.tvar, ref=gref, ref2=tref) / (c1 + c2)``:
    one column per observed cell in which ``indicator`` is true, excluding the
    group reference ``gref`` and the time reference ``tref``, followed by the
    same cells multiplied by each nested variable (``a / b`` is ``a + a:b``).
    """

    indicator: str
    gvar: str
    tvar: str
    gref: Any
    tref: Any
    nest: tuple[str, ...] = field(default_factory=tuple)

    def __str__(self) -> str:
        base = (
            f"{self.indicator}:i({self.gvar}, i.{self.tvar}, "
            f"ref = {_ref_repr(self.gref)}, ref2 = {_ref_repr(self.tref)})"
        )
        if not self.nest:
            return base
        if len(self.nest) == 1:
            return f"{base} / {self.nest[0]}"
        return f"{base} / ({' + '.join(self.nest)})"

    @property
    def variables(self) -> tuple[str, ...]:
        return (self.indicator, self.gvar, self.tvar, *self.nest)

    def cell_name(self, g: Any, t: Any, control: str | None = None) -> str:
        name = f"{self.indicator}:{self.gvar}::{format_level(g)}:{self.tvar}::{format_level(t)}"
        return name if control is None else f"{name}:{control}"

    def cells(self, data: pd.DataFrame) -> list[tuple[Any, Any]]:
        """Observed (group, time) cells carrying a coefficient, sorted by group then time."""
        active = data[self.indicator].fillna(False).astype(bool)
        sub = data.loc[active, [self.gvar, self.tvar]].dropna()
        sub = sub[(sub[self.gvar] != self.gref) & (sub[self.tvar] != self.tref)]
        pairs = sub.drop_duplicates().itertuples(index=False, name=None)
        return sorted(pairs)

    def coef_map(self, data: pd.DataFrame) -> list[tuple[str, Any, Any, str | None]]:
        """``(column name, group, time, nested variable or None)`` for every column."""
        cells = self.cells(data)
        out: list[tuple[str, Any, Any, str | None]] = [
            (self.cell_name(g, t), g, t, None) for g, t in cells
        ]
        for ctrl in self.nest:
            out.extend((self.cell_name(g, t, ctrl), g, t, ctrl) for g, t in cells)
        return out

    def columns(self, data: pd.DataFrame) -> pd.DataFrame:
        active = data[self.indicator].fillna(False).to_numpy(dtype=bool)
        g = data[self.gvar]
        t = data[self.tvar]
        base: dict[tuple[Any, Any], np.ndarray] = {}
        for gl, tl in self.cells(data):
            base[(gl, tl)] = (active & _level_mask(g, gl) & _level_mask(t, tl)).astype(np.float64)
        out: dict[str, np.ndarray] = {}
        for name, gl, tl, ctrl in self.coef_map(data):
            if ctrl is None:
                out[name] = base[(gl, tl)]
            else:
                out[name] = base[(gl, tl)] * data[ctrl].to_numpy(dtype=np.float64, na_value=np.nan)
        return pd.DataFrame(out, index=data.index)


Term = Union[Var, Dummies, SlopeDummies, CellInteraction]


@dataclass(frozen=True, slots=True)
class FixedEffect:
    """An absorbed fixed effect, optionally with varying slopes (``var[s1, s2]``)."""

    var: str
    slopes: tuple[str, ...] = field(default_factory=tuple)

    def __str__(self) -> str:
        if not self.slopes:
            return self.var
        return f"{self.var}[{', '.join(self.slopes)}]"

    @property
    def variables(self) -> tuple[str, ...]:
        return (self.var, *self.slopes)


@dataclass(frozen=True, slots=True)
class ModelFormula:
    """Outcome, right-hand-side terms and absorbed fixed effects.

    ``intercept`` only matters without fixed effects; with fixed effects the
    constant is absorbed.
    """

    outcome: str
    terms: tuple[Term, ...]
    fixed_effects: tuple[FixedEffect, ...] = field(default_factory=tuple)
    intercept: bool = False

    def __str__(self) -> str:
        rhs = self.rhs_string()
        if self.fixed_effects:
            return f"{self.outcome} ~ {rhs} | {self.fe_string()}"
        return f"{self.outcome} ~ {rhs}"

    def rhs_string(self) -> str:
        parts = [str(term) for term in self.terms]
        if not parts:
            return "1" if self.intercept else "0"
        return " + ".join(parts)

    def fe_string(self) -> str:
        return " + ".join(str(fe) for fe in self.fixed_effects)

    @property
    def has_intercept(self) -> bool:
        return self.intercept and not self.fixed_effects

    @property
    def variables(self) -> tuple[str, ...]:
        """Every data column the formula reads, in first-use order."""
        seen: dict[str, None] = {self.outcome: None}
        for term in self.terms:
            seen.update(dict.fromkeys(term.variables))
        for fe in self.fixed_effects:
            seen.update(dict.fromkeys(fe.variables))
        return tuple(seen)

    @property
    def treatment_term(self) -> CellInteraction | None:
        for term in self.terms:
            if isinstance(term, CellInteraction):
                return term
        return None

    def design(self, data: pd.DataFrame) -> pd.DataFrame:
        """Materialise the right-hand side; the intercept, when present, is the first column."""
        blocks = [term.columns(data) for term in self.terms]
        X = pd.concat(blocks, axis=1) if blocks else pd.DataFrame(index=data.index)
        if self.has_intercept:
            X.insert(0, INTERCEPT_NAME, 1.0)
        return X

    def coefnames(self, data: pd.DataFrame) -> list[str]:
        return list(self.design(data).columns)
