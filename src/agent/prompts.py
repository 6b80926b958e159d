"""
Prompt text and message formatting for the ReAct loop.
"""

import json
from typing import Any, Dict, Optional

from mcp_hub.models import ToolExecutionResponse

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Be concise, accurate, and thoughtful "
    "in your responses."
)

REACT_INSTRUCTIONS = """You are a ReAct (Reasoning and Acting) agent. When you use tools, work in this pattern:

1. THOUGHT: Work out what information you need and which tool provides it
2. ACTION: Call that tool with correct parameters
3. OBSERVATION: Read the tool's result
4. REPEAT steps 1-3 ONLY while you still need MORE information
5. FINAL ANSWER: Once you have enough information, answer completely WITHOUT calling more tools

CRITICAL RULES:
- Never call a tool again with the same parameters after it returned a result
- A successful tool call means you already have that information; use it in your answer
- If a tool fails, decide whether a different tool or different parameters can help, otherwise explain the problem to the user
- When you have gathered sufficient information, respond directly without further tool calls"""

FINAL_ANSWER_INSTRUCTION = (
    "You have reached the maximum number of tool calls. You MUST provide your "
    "final answer NOW using only the information already gathered. Do not call "
    "any more tools."
)

SUFFICIENT_INFO_MESSAGE = "\nAgent has sufficient information. Providing final answer."
ANALYZING_MESSAGE = "\nInformation gathered. Analyzing if more actions are needed..."
RETRIEVAL_FAILED_MESSAGE = (
    "\nKnowledge base retrieval failed. Continuing without additional context."
)


def create_react_system_prompt(base_prompt: str) -> str:
    return f"{base_prompt}\n\n{REACT_INSTRUCTIONS}"


def cycle_marker(cycle: int, max_cycles: int) -> str:
    return f"\n=== ReAct Cycle {cycle}/{max_cycles} ==="


def truncation_notice(max_cycles: int) -> str:
    return (
        f"\nReached maximum {max_cycles} ReAct cycles. "
        "Providing answer with available information."
    )


def summarize_arguments(arguments: Dict[str, Any], max_chars: Optional[int] = None) -> str:
    text = json.dumps(arguments, ensure_ascii=False, default=str)
    if max_chars is not None and len(text) > max_chars:
        return text[: max(max_chars - 3, 0)] + "..."
    return text


def format_action(name: str, arguments: Dict[str, Any], max_chars: Optional[int] = None) -> str:
    return f"Action: {name}\n Input: {summarize_arguments(arguments, max_chars)}"


def format_observation(response: ToolExecutionResponse) -> str:
    """Observation text shown to the presentation layer."""
    if response.success:
        return f"Observation from {response.tool_name}:\n{response.content}"
    return f"Observation: Action failed\n{response.error_kind}: {response.error}"


def format_tool_message(response: ToolExecutionResponse) -> str:
    """Content of the tool message the model reads on its next turn."""
    if response.success:
        return response.content or "(no output)"
    return f"Tool execution failed: {response.error_kind}: {response.error}"
