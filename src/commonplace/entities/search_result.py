"""SearchResult entity - an entry ranked against a query vector."""

from pydantic import BaseModel, Field

from commonplace.entities.entry import Entry


class SearchResult(BaseModel):
    """A retrieved entry with its cosine similarity to the query.

    Similarity is 1 - cosine distance, so it ranges over [-1, 1]; embeddings
    from one provider usually land in [0, 1].
    """

    entry: Entry
    similarity: float = Field(..., ge=-1.0, le=1.0, description="Cosine similarity")
