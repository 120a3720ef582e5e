"""Output module for fitted robust models."""
from .summary import modelsummary, summary

__all__ = ["modelsummary", "summary"]
