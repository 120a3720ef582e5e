# robustreg/utils/__init__.py
"""Utility functions module."""
from .auto_constant import add_constant, find_constant_column
from .formula import parse_formula

__all__ = ["add_constant", "find_constant_column", "parse_formula"]
