# robustreg/core/__init__.py
"""Core computational modules for robustreg."""
from . import errors, linalg, losses, scale

__all__ = ["errors", "linalg", "losses", "scale"]
