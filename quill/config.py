"""Configuration models for the Quill retrieval engine."""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

ENV_PREFIX = "QUILL_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class QuillConfig:
    """Configuration for the Quill retrieval and ingestion subsystem."""

    # Feature flag: when disabled, search/ask report "not configured"
    enabled: bool = True

    # Embedding settings
    embedding_provider: str = "openai"  # 'openai', 'jina', 'huggingface'
    embedding_model: str = "text-embedding-3-small"
    embedding_dim: int = 1536  # must match every stored vector
    embedding_batch_size: int = 200
    embedding_max_chars: int = 8000
    embedding_rate_limit: int = 300  # outbound calls per minute, 0 disables
    embedding_max_wait: float = 30.0  # seconds to block on the limiter
    embedding_cache_size: int = 1000

    # Vector index
    vector_backend: str = "flat"  # 'flat' (exact numpy scan) or 'usearch' (HNSW)
    dtype: str = "f32"   # usearch only: 'f32', 'f16', 'bf16', 'i8'
    connectivity: int = 32      # M parameter - higher = better recall, more memory
    expansion_add: int = 128    # efConstruction - higher = better index quality
    expansion_search: int = 64  # ef - higher = better search recall

    # Chunking settings (characters)
    chunk_size: int = 2000
    chunk_overlap: int = 200
    chunk_threshold: int = 2000
    chunk_slack: int = 100

    # Search settings
    default_limit: int = 10
    vector_weight: float = 0.7  # Weight for vector list in RRF (0-1)
    rrf_k: int = 60
    candidate_multiplier: int = 3

    # Ask settings
    answer_model: str = "gpt-4o-mini"
    ask_top_k: int = 8
    ask_context_chars: int = 6000

    # Ingestion jobs
    job_retention_seconds: float = 3600.0
    max_jobs: int = 500

    # Storage paths
    db_path: str = "quill.db"
    index_path: str = "quill.vectors"

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def validate(self) -> "QuillConfig":
        """Check ranges; raises ConfigurationError on the first bad value."""
        if self.embedding_dim <= 0:
            raise ConfigurationError(f"embedding_dim must be positive, got {self.embedding_dim}")
        if self.embedding_batch_size <= 0:
            raise ConfigurationError("embedding_batch_size must be positive")
        if self.embedding_max_chars <= 0:
            raise ConfigurationError("embedding_max_chars must be positive")
        if self.chunk_size <= 0 or self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            raise ConfigurationError(
                f"chunk_overlap ({self.chunk_overlap}) must be >= 0 and smaller than chunk_size ({self.chunk_size})"
            )
        if not 0.0 <= self.vector_weight <= 1.0:
            raise ConfigurationError(f"vector_weight must be within [0, 1], got {self.vector_weight}")
        if self.rrf_k <= 0:
            raise ConfigurationError("rrf_k must be positive")
        if self.default_limit <= 0:
            raise ConfigurationError("default_limit must be positive")
        if self.vector_backend not in ("flat", "usearch"):
            raise ConfigurationError(f"Unknown vector_backend: {self.vector_backend}")
        return self

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[str] = None,
        **overrides: Any,
    ) -> "QuillConfig":
        """
        Build a config from ``QUILL_*`` environment variables.

        Args:
            env: Mapping to read instead of ``os.environ`` (no .env loading then)
            dotenv_path: Explicit .env file; defaults to ./.env when present
            **overrides: Field values that win over the environment

        Returns:
            A validated QuillConfig
        """
        if env is None:
            path = Path(dotenv_path) if dotenv_path else Path.cwd() / ".env"
            if path.exists():
                load_dotenv(dotenv_path=path)
            env = os.environ

        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            values[f.name] = _coerce(f.name, raw, f.default)
        values.update(overrides)
        return cls(**values).validate()


def _coerce(name: str, raw: str, default: Any) -> Any:
    """Convert an environment string to the type of the field default."""
    try:
        if isinstance(default, bool):
            lowered = raw.strip().lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ValueError(raw)
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except ValueError:
        raise ConfigurationError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}") from None
    return raw
