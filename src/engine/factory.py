from typing import Any, Dict

from engine.base import BaseEngine


class EngineFactory:
    @staticmethod
    def create_engine(engine_type: str, config: Dict[str, Any]) -> BaseEngine:
        engine_type = engine_type.lower()
        if engine_type == "anthropic":
            from engine.implementations import AnthropicEngine
            return AnthropicEngine(config)
        elif engine_type in ("openai", "ollama"):
            from engine.implementations import OpenAIEngine
            return OpenAIEngine(config)
        else:
            raise ValueError(f"Unknown Engine type: {engine_type}")
