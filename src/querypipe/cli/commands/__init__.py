"""CLI command implementations."""

from .analyze import analyze
from .cache import cache_info
from .classify import classify
from .query import query

__all__ = ["analyze", "cache_info", "classify", "query"]
