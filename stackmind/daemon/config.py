"""Configuration management for StackMind."""

from pathlib import Path
from typing import Optional

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator


class LLMConfig(BaseModel):
    provider: str = "ollama"
    base_url: str = "http://localhost:11434"
    model: str = "qwen2.5:3b"
    max_tokens: int = 512
    temperature: float = 0.2
    request_timeout_s: float = 45.0
    failure_threshold: int = 3
    recovery_timeout_s: float = 30.0

    @field_validator('request_timeout_s', 'recovery_timeout_s')
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v


class EmbeddingConfig(BaseModel):
    model: str = "all-MiniLM-L6-v2"
    max_chars: int = 1000
    embed_on_capture: bool = True


class PipelineConfig(BaseModel):
    step_timeout_s: float = 60.0
    grace_period_s: float = 30.0
    auto_finalize: bool = True
    resume_on_start: bool = True

    @field_validator('step_timeout_s')
    @classmethod
    def validate_step_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("step_timeout_s must be positive")
        return v

    @field_validator('grace_period_s')
    @classmethod
    def validate_grace_period(cls, v: float) -> float:
        if v < 0:
            raise ValueError("grace_period_s must not be negative")
        return v


class StoreConfig(BaseModel):
    compact_after: int = 500


class SearchConfig(BaseModel):
    default_top_k: int = 10


class APIConfig(BaseModel):
    host: str = "localhost"
    port: int = 8765
    cors_origin: str = "*"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: Optional[Path] = None


class Config(BaseModel):
    """Main configuration for the StackMind daemon."""

    data_path: Path
    llm: LLMConfig = Field(default_factory=LLMConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator('data_path')
    @classmethod
    def validate_data_path(cls, v: Path) -> Path:
        if isinstance(v, str):
            v = Path(v)
        v = v.expanduser().resolve()
        if not v.exists():
            logger.warning(f"Data path does not exist, will create: {v}")
            v.mkdir(parents=True, exist_ok=True)
        return v

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Load configuration from YAML file."""
        if config_path is None:
            candidates = [
                Path("stackmind.yaml"),
                Path.home() / ".config" / "stackmind" / "config.yaml",
                Path("/etc/stackmind/config.yaml"),
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                raise FileNotFoundError(
                    f"No config file found. Searched: {[str(c) for c in candidates]}"
                )

        logger.info(f"Loading config from: {config_path}")
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    def save(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False)
