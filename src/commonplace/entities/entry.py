"""Entry entity - a stored highlight fragment."""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntryMetadata(BaseModel):
    """Where a highlight came from, plus the ids it is joined to.

    Unknown keys are kept so that metadata round-trips through storage
    unchanged.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    article: str = Field(..., description="Title of the source document")
    url: str = Field(..., description="URL of the source document")
    section: Optional[str] = None
    image_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("image_url", "img_url"),
    )
    joins: list[UUID] = Field(default_factory=list)

    @field_validator("article", "url")
    @classmethod
    def source_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Source article and url cannot be empty")
        return v

    @field_validator("joins")
    @classmethod
    def joins_unique(cls, v: list[UUID]) -> list[UUID]:
        seen: set[UUID] = set()
        unique = []
        for entry_id in v:
            if entry_id not in seen:
                seen.add(entry_id)
                unique.append(entry_id)
        return unique

    @property
    def source_label(self) -> str:
        """Grouping key in the form "Article > Section"."""
        if self.section:
            return f"{self.article} > {self.section}"
        return self.article


class Entry(BaseModel):
    """A highlight fragment with its embedding.

    Entries are created once with content, metadata and embedding supplied
    together, and afterwards only their joins change.
    """

    id: UUID = Field(default_factory=uuid4)
    content: str = Field(..., description="Text of the highlight")
    metadata: EntryMetadata
    embedding: Optional[list[float]] = Field(
        default=None, description="Embedding vector; omitted from listings unless requested"
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(default=1, ge=1, description="Optimistic concurrency counter")

    @field_validator("content")
    @classmethod
    def content_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Entry content cannot be empty")
        return v

    @property
    def joins(self) -> list[UUID]:
        return self.metadata.joins

    def without_embedding(self) -> "Entry":
        return self.model_copy(update={"embedding": None})

    def summary(self, max_length: int = 100) -> str:
        if len(self.content) <= max_length:
            return self.content
        return self.content[:max_length] + "..."

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
