from typing import Any, Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Load environment variables from .env and system environment
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server settings
    host: str = Field(default="0.0.0.0", validation_alias="HOST")
    port: int = Field(default=8000, validation_alias="PORT")

    # Debug mode
    debug: bool = Field(default=False, validation_alias="DEBUG")

    # LLM settings
    engine_type: str = Field(default="anthropic", validation_alias="ENGINE_TYPE")

    # General LLM settings
    max_tokens: int = Field(default=1000, validation_alias="MAX_TOKENS")
    temperature: Optional[float] = Field(default=None, validation_alias="TEMPERATURE")
    system_prompt: Optional[str] = Field(default=None, validation_alias="SYSTEM_PROMPT")

    # Anthropic settings
    anthropic_api_key: Optional[str] = Field(
        default=None, validation_alias="ANTHROPIC_API_KEY"
    )
    anthropic_llm_model: str = Field(
        default="claude-3-7-sonnet-20250219",
        validation_alias="ANTHROPIC_LLM_MODEL",
    )

    # OpenAI settings
    openai_api_key: Optional[str] = Field(
        default=None, validation_alias="OPENAI_API_KEY"
    )
    openai_llm_model: str = Field(
        default="gpt-4",
        validation_alias="OPENAI_LLM_MODEL",
    )
    openai_base_url: Optional[str] = Field(
        default=None, validation_alias="OPENAI_BASE_URL"
    )

    # Ollama settings (OpenAI-compatible endpoint)
    ollama_base_url: str = Field(
        default="http://localhost:11434/v1", validation_alias="OLLAMA_BASE_URL"
    )
    ollama_llm_model: str = Field(default="llama3.1", validation_alias="OLLAMA_LLM_MODEL")

    # Agent loop settings
    max_iterations: int = Field(default=8, ge=1, validation_alias="MAX_ITERATIONS")
    max_parallel_tools: int = Field(default=4, ge=1, validation_alias="MAX_PARALLEL_TOOLS")
    tool_timeout_seconds: float = Field(
        default=30.0, gt=0, validation_alias="TOOL_TIMEOUT_SECONDS"
    )
    connect_timeout_seconds: float = Field(
        default=10.0, gt=0, validation_alias="CONNECT_TIMEOUT_SECONDS"
    )
    args_summary_max_chars: int = Field(
        default=400, ge=10, validation_alias="ARGS_SUMMARY_MAX_CHARS"
    )
    final_answer_on_truncation: bool = Field(
        default=True, validation_alias="FINAL_ANSWER_ON_TRUNCATION"
    )

    # Retrieval settings
    rag_enabled: bool = Field(default=False, validation_alias="RAG_ENABLED")
    retrieval_url: Optional[str] = Field(default=None, validation_alias="RETRIEVAL_URL")
    rag_top_k: int = Field(default=5, ge=1, validation_alias="RAG_TOP_K")
    rag_min_score: float = Field(default=0.3, validation_alias="RAG_MIN_SCORE")
    retrieval_timeout_seconds: float = Field(
        default=10.0, gt=0, validation_alias="RETRIEVAL_TIMEOUT_SECONDS"
    )

    # MCP server list (JSON); defaults to ~/.mcp-hub/mcp.settings.json
    mcp_settings_file: Optional[str] = Field(
        default=None, validation_alias="MCP_SETTINGS_FILE"
    )

    # Logfire settings
    logfire_enabled: bool = Field(default=False, validation_alias="LOGFIRE_ENABLED")
    logfire_token: Optional[str] = Field(default=None, validation_alias="LOGFIRE_TOKEN")
    logfire_service_name: str = Field(
        default="mcp-hub", validation_alias="LOGFIRE_SERVICE_NAME"
    )

    @property
    def llm_model(self) -> str:
        return {
            "anthropic": self.anthropic_llm_model,
            "openai": self.openai_llm_model,
            "ollama": self.ollama_llm_model,
        }.get(self.engine_type.lower(), "")

    def get_llm_config(self) -> Dict[str, Any]:
        """Return the engine-specific configuration dictionary."""
        llm_engine = self.engine_type.lower()
        if llm_engine == "anthropic":
            if not self.anthropic_api_key:
                raise ValueError(
                    "ANTHROPIC_API_KEY is required when ENGINE_TYPE is 'anthropic'"
                )
            return {
                "api_key": self.anthropic_api_key,
                "llm_model": self.anthropic_llm_model,
                "max_tokens": self.max_tokens,
                "temperature": self.temperature,
            }
        elif llm_engine == "openai":
            if not self.openai_api_key:
                raise ValueError(
                    "OPENAI_API_KEY is required when ENGINE_TYPE is 'openai'"
                )
            return {
                "api_key": self.openai_api_key,
                "base_url": self.openai_base_url,
                "llm_model": self.openai_llm_model,
                "max_tokens": self.max_tokens,
                "temperature": self.temperature,
            }
        elif llm_engine == "ollama":
            return {
                "api_key": "ollama",
                "base_url": self.ollama_base_url,
                "llm_model": self.ollama_llm_model,
                "max_tokens": self.max_tokens,
                "temperature": self.temperature,
            }
        else:
            raise ValueError(f"Unsupported ENGINE_TYPE: {self.engine_type}")


def get_settings() -> Settings:
    """Instantiate and return the Settings object."""
    return Settings()
