import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx
import logfire

from .models import RetrievedChunk


class Retriever(Protocol):
    async def retrieve(self, query: str) -> List[RetrievedChunk]:
        """Return ranked context chunks for a query."""
        ...


class HttpRetriever:
    """
    Client for an external retrieval service.

    POSTs ``{"query": ..., "top_k": ...}`` and expects
    ``{"chunks": [{"content" | "text", "source", "score", "section"}]}``.
    Twice top_k chunks are requested so score filtering still leaves
    enough results.
    """

    def __init__(
        self,
        url: str,
        top_k: int = 5,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.url = url
        self.top_k = top_k
        self.logger = logger or logging.getLogger("HttpRetriever")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def retrieve(self, query: str) -> List[RetrievedChunk]:
        with logfire.span("http_retriever.retrieve", url=self.url):
            response = await self._client.post(
                self.url, json={"query": query, "top_k": self.top_k * 2}
            )
            response.raise_for_status()
            payload = response.json()

        chunks = [self._parse_chunk(item) for item in payload.get("chunks", [])]
        self.logger.debug(f"Retrieved {len(chunks)} chunks for query")
        return chunks

    @staticmethod
    def _parse_chunk(item: Dict[str, Any]) -> RetrievedChunk:
        return RetrievedChunk(
            text=item.get("content") or item.get("text") or "",
            source=item.get("source") or "unknown",
            score=float(item.get("score", 0.0)),
            section=item.get("section"),
        )

    async def close(self) -> None:
        await self._client.aclose()
