from .base import BaseEngine
from .factory import EngineFactory

__all__ = ["BaseEngine", "EngineFactory"]
