"""jq-style filter language over session message logs."""

from .engine import QueryEngine, QueryResult, Scope
from .interpreter import compile_filter
from .patterns import CATEGORIES, PATTERNS, list_patterns

__all__ = ["CATEGORIES", "PATTERNS", "QueryEngine", "QueryResult", "Scope", "compile_filter", "list_patterns"]
