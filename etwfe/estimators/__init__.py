"""Estimator exports with lazy loading.

Public estimator classes, the ETWFE builder and result containers. Uses lazy
imports to avoid circular dependencies.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "FEGLM",
    "FEOLS",
    "BaseEstimator",
    "ETWFEResult",
    "EstimationResult",
    "FitOptions",
    "build_spec",
    "etwfe",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseEstimator": ("etwfe.estimators.base", "BaseEstimator"),
    "EstimationResult": ("etwfe.estimators.base", "EstimationResult"),
    "FitOptions": ("etwfe.estimators.base", "FitOptions"),
    "FEOLS": ("etwfe.estimators.feols", "FEOLS"),
    "FEGLM": ("etwfe.estimators.feglm", "FEGLM"),
    "ETWFEResult": ("etwfe.estimators.builder", "ETWFEResult"),
    "build_spec": ("etwfe.estimators.builder", "build_spec"),
    "etwfe": ("etwfe.estimators.builder", "etwfe"),
}


def __getattr__(name: str) -> Any:
    """Lazily import estimator classes and shared containers."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'etwfe.estimators' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Expose lazily loaded attributes to ``dir()``."""
    return sorted(set(globals()) | set(__all__))
