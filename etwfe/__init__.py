"""etwfe: Extended two-way fixed effects for staggered difference-in-differences.

This package builds Wooldridge's saturated ETWFE regression (treatment x cohort
x period cells nested by cell-demeaned controls, with cohort and period fixed
effects) and estimates it with a bundled fixed-effects OLS / GLM engine.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

__all__ = [
    "DEMEAN_SUFFIX",
    "FEGLM",
    "FEOLS",
    "TREATMENT_COL",
    "BaseEstimator",
    "ControlGroup",
    "ConvergenceError",
    "ETWFEError",
    "ETWFEProvenance",
    "ETWFEResult",
    "ETWFESpec",
    "EmptyDataError",
    "EstimationResult",
    "FitOptions",
    "FixedEffectsMode",
    "InvalidFormulaError",
    "InvalidOptionError",
    "InvalidReferenceError",
    "ModelFormula",
    "ReferenceNotFoundError",
    "UnknownColumnError",
    "build_formula",
    "build_spec",
    "demean_controls",
    "etwfe",
    "resolve_group_ref",
    "resolve_time_ref",
    "treatment_indicator",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseEstimator": ("etwfe.estimators.base", "BaseEstimator"),
    "EstimationResult": ("etwfe.estimators.base", "EstimationResult"),
    "FitOptions": ("etwfe.estimators.base", "FitOptions"),
    "FEOLS": ("etwfe.estimators.feols", "FEOLS"),
    "FEGLM": ("etwfe.estimators.feglm", "FEGLM"),
    "ConvergenceError": ("etwfe.estimators.feglm", "ConvergenceError"),
    "DEMEAN_SUFFIX": ("etwfe.estimators.builder", "DEMEAN_SUFFIX"),
    "TREATMENT_COL": ("etwfe.estimators.builder", "TREATMENT_COL"),
    "ControlGroup": ("etwfe.estimators.builder", "ControlGroup"),
    "FixedEffectsMode": ("etwfe.estimators.builder", "FixedEffectsMode"),
    "ETWFEProvenance": ("etwfe.estimators.builder", "ETWFEProvenance"),
    "ETWFEResult": ("etwfe.estimators.builder", "ETWFEResult"),
    "ETWFESpec": ("etwfe.estimators.builder", "ETWFESpec"),
    "build_formula": ("etwfe.estimators.builder", "build_formula"),
    "build_spec": ("etwfe.estimators.builder", "build_spec"),
    "demean_controls": ("etwfe.estimators.builder", "demean_controls"),
    "etwfe": ("etwfe.estimators.builder", "etwfe"),
    "resolve_group_ref": ("etwfe.estimators.builder", "resolve_group_ref"),
    "resolve_time_ref": ("etwfe.estimators.builder", "resolve_time_ref"),
    "treatment_indicator": ("etwfe.estimators.builder", "treatment_indicator"),
    "ModelFormula": ("etwfe.utils.terms", "ModelFormula"),
    "ETWFEError": ("etwfe.errors", "ETWFEError"),
    "EmptyDataError": ("etwfe.errors", "EmptyDataError"),
    "InvalidFormulaError": ("etwfe.errors", "InvalidFormulaError"),
    "InvalidOptionError": ("etwfe.errors", "InvalidOptionError"),
    "InvalidReferenceError": ("etwfe.errors", "InvalidReferenceError"),
    "ReferenceNotFoundError": ("etwfe.errors", "ReferenceNotFoundError"),
    "UnknownColumnError": ("etwfe.errors", "UnknownColumnError"),
}


def __getattr__(name: str) -> Any:
    """Lazily import public estimators and utilities on first access."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'etwfe' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Ensure dir() exposes lazily imported names."""
    return sorted(set(globals()) | set(__all__))
