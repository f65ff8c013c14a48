# etwfe/utils/__init__.py
"""Formula parsing and the typed formula AST."""
from .formula import FormulaParser, factorize_cells, parse_formula
from .terms import (
    CellInteraction,
    Dummies,
    FixedEffect,
    ModelFormula,
    SlopeDummies,
    Var,
)

__all__ = [
    "CellInteraction",
    "Dummies",
    "FixedEffect",
    "FormulaParser",
    "ModelFormula",
    "SlopeDummies",
    "Var",
    "factorize_cells",
    "parse_formula",
]
