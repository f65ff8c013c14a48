# etwfe/core/__init__.py
"""Core computational modules for etwfe."""
from . import fe, linalg, vcov

__all__ = ["fe", "linalg", "vcov"]
