from typing import Iterable, List

from .models import RetrievedChunk

NO_CONTEXT = "No relevant information found in the knowledge base."


def filter_chunks(
    chunks: Iterable[RetrievedChunk], top_k: int, min_score: float
) -> List[RetrievedChunk]:
    """Drop chunks below the relevance threshold and keep the best top_k."""
    ranked = sorted(chunks, key=lambda chunk: chunk.score, reverse=True)
    return [chunk for chunk in ranked if chunk.score >= min_score][:top_k]


def format_context(chunks: List[RetrievedChunk]) -> str:
    if not chunks:
        return NO_CONTEXT

    parts = []
    for chunk in chunks:
        header = f"[Source: {chunk.source}"
        if chunk.section:
            header += f" | Section: {chunk.section}"
        parts.append(f"{header}]\n{chunk.text}")
    return "\n\n---\n\n".join(parts)


def create_rag_system_prompt(base_prompt: str, context: str) -> str:
    return f"""{base_prompt}

## Knowledge Base Context

You have access to the following information from the knowledge base. Use it to give accurate, specific answers:

{context}

## Guidelines

- Prefer information from the knowledge base context when answering
- If information is missing, call the relevant tools
- Cite sources (e.g., "According to the streaming-api documentation...")
- If the knowledge base has nothing relevant, say so"""
