from .anthropic_engine import AnthropicEngine
from .openai_engine import OpenAIEngine


__all__ = ["AnthropicEngine", "OpenAIEngine"]
