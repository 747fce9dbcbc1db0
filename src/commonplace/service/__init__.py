"""Service layer - Business logic orchestration.

This module contains service classes that orchestrate business logic:
- HighlightGraph: The query surface over one entry store
- open_graph: Lifecycle helper yielding a ready HighlightGraph
- initialize_store: Store initialization helper
"""

from commonplace.service.graph import HighlightGraph, LayoutFilter, open_graph
from commonplace.service.stores import initialize_store

__all__ = [
    "HighlightGraph",
    "LayoutFilter",
    "initialize_store",
    "open_graph",
]
