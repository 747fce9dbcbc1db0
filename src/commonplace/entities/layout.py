"""Layout entities - 2D positions for graph visualization."""

from enum import Enum

from pydantic import BaseModel

from commonplace.entities.entry import Entry


class LayoutStrategy(str, Enum):
    """How a positioned entry got its coordinates."""

    EMPTY = "empty"
    SINGLE = "single"
    PAIR = "pair"
    MANIFOLD = "manifold"
    CIRCLE = "circle"
    UNEMBEDDED = "unembedded"


class PositionedEntry(BaseModel):
    """An entry placed in the layout's internal coordinate space.

    Coordinates are unscaled; mapping them to screen space is up to the
    renderer.
    """

    entry: Entry
    x: float
    y: float
    strategy: LayoutStrategy
