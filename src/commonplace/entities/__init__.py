"""Entities - Domain models for the highlight graph.

This module contains pure domain entities without business logic:
- Entry: A highlight fragment with its embedding
- EntryMetadata: Source reference and joined entry ids
- SearchResult: A retrieved entry with similarity score
- PositionedEntry: An entry placed in 2D for visualization
"""

from commonplace.entities.entry import Entry, EntryMetadata
from commonplace.entities.layout import LayoutStrategy, PositionedEntry
from commonplace.entities.search_result import SearchResult

__all__ = [
    "Entry",
    "EntryMetadata",
    "LayoutStrategy",
    "PositionedEntry",
    "SearchResult",
]
