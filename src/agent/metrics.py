import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import tiktoken

from .models import ChatMessage


@dataclass
class TurnMetrics:
    """Metrics for tracking one conversation turn"""

    conversation_id: str
    query: str
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    cycles: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    duration_seconds: Optional[float] = None
    truncated: bool = False
    outcome: str = "running"

    def record_tool_call(
        self, name: str, duration: float, success: bool, error_kind: Optional[str] = None
    ) -> None:
        self.tool_calls.append(
            {
                "name": name,
                "duration": duration,
                "success": success,
                "error_kind": error_kind,
            }
        )

    def finish(self, outcome: str) -> None:
        self.outcome = outcome
        self.end_time = time.time()
        self.duration_seconds = self.end_time - self.start_time
        self.total_tokens = self.input_tokens + self.output_tokens


class TokenCounter:
    """Approximate token counts for prompts and completions."""

    def __init__(self, model: str = "gpt-4", logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("TokenCounter")
        self.encoder = self._load_encoder(model)

    def _load_encoder(self, model: str) -> Optional[tiktoken.Encoding]:
        try:
            return tiktoken.encoding_for_model(model)
        except Exception as e:
            self.logger.warning(f"Failed to load tiktoken encoder, using cl100k_base: {e}")
        try:
            return tiktoken.get_encoding("cl100k_base")
        except Exception as e:
            self.logger.warning(f"No tiktoken encoding available, estimating tokens: {e}")
            return None

    def count(self, text: str) -> int:
        if self.encoder is None:
            return len(text) // 4
        try:
            return len(self.encoder.encode(text))
        except Exception as e:
            self.logger.warning(f"Failed to count tokens: {e}")
            # Fallback: approximate token count (1 token ≈ 4 characters)
            return len(text) // 4

    def count_messages(self, messages: List[ChatMessage]) -> int:
        total = 0
        for message in messages:
            total += self.count(message.content)
            for call in message.tool_calls:
                total += self.count(call.name) + self.count(str(call.arguments))
        return total


def log_metrics(logger: logging.Logger, metrics: TurnMetrics) -> None:
    tool_summary = f"Tool calls: {len(metrics.tool_calls)}"
    durations = [tc["duration"] for tc in metrics.tool_calls]
    if durations:
        tool_summary += f" (avg: {sum(durations) / len(durations):.2f}s)"

    logger.info(
        f"Turn {metrics.conversation_id} {metrics.outcome} - "
        f"Duration: {metrics.duration_seconds or 0:.2f}s, Cycles: {metrics.cycles}, "
        f"Input tokens: {metrics.input_tokens}, Output tokens: {metrics.output_tokens}, "
        f"Total tokens: {metrics.total_tokens}, {tool_summary}"
    )


def summarize_metrics(history: Sequence[TurnMetrics]) -> Dict[str, Any]:
    if not history:
        return {"total_queries": 0}

    total_queries = len(history)
    total_duration = sum(m.duration_seconds or 0 for m in history)
    total_tokens = sum(m.total_tokens for m in history)
    total_tool_calls = sum(len(m.tool_calls) for m in history)
    failed_tool_calls = sum(
        1 for m in history for tc in m.tool_calls if not tc["success"]
    )

    return {
        "total_queries": total_queries,
        "total_duration_seconds": total_duration,
        "average_duration_seconds": total_duration / total_queries,
        "total_tokens": total_tokens,
        "average_tokens_per_query": total_tokens / total_queries,
        "total_tool_calls": total_tool_calls,
        "failed_tool_calls": failed_tool_calls,
        "average_tool_calls_per_query": total_tool_calls / total_queries,
        "truncated_turns": sum(1 for m in history if m.truncated),
        "outcomes": {
            outcome: sum(1 for m in history if m.outcome == outcome)
            for outcome in sorted({m.outcome for m in history})
        },
    }
