from typing import Any, Dict
from pydantic import BaseModel, Field
import os


_ENV_PREFIX = "PONDER_"


class AgentSettings(BaseModel):
    """Runtime configuration for the agent core"""
    service_name: str = Field(default="ponder-agent")
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="json or console")

    max_steps: int = Field(default=5, ge=1)
    max_retries: int = Field(default=3, ge=0, description="Reflection retries per failing action")
    token_budget: int = Field(default=100000, ge=1)
    max_context_tokens: int = Field(default=128000, ge=1)
    warning_ratio: float = Field(default=0.8, gt=0.0, le=1.0)
    language: str = Field(default="en")

    run_timeout_seconds: float = Field(default=120.0, gt=0)
    degraded_retries: int = Field(default=2, ge=0)
    degraded_context_ratio: float = Field(default=0.5, gt=0.0, le=1.0)
    tool_timeout_seconds: float = Field(default=30.0, gt=0)

    rag_max_retries: int = Field(default=2, ge=0)
    rag_relevance_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    rag_max_results: int = Field(default=5, ge=1)

    tokenizer_encoding: str = Field(default="cl100k_base")

    @classmethod
    def from_env(cls, **overrides: Any) -> "AgentSettings":
        """Build settings from PONDER_* environment variables"""

        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{_ENV_PREFIX}{name.upper()}")
            if raw is not None:
                values[name] = raw
        values.update(overrides)
        return cls(**values)
