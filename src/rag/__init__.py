from .context import create_rag_system_prompt, filter_chunks, format_context
from .models import RetrievedChunk
from .retriever import HttpRetriever, Retriever

__all__ = [
    "HttpRetriever",
    "RetrievedChunk",
    "Retriever",
    "create_rag_system_prompt",
    "filter_chunks",
    "format_context",
]
