from typing import Optional

from pydantic import BaseModel, Field


class RetrievedChunk(BaseModel):
    """One ranked context chunk returned by the retrieval service."""

    text: str
    source: str = "unknown"
    score: float = 0.0
    section: Optional[str] = Field(default=None, description="Heading within the source")
