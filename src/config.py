"""Configuration and constants for the memory system."""

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Embeddings
EMBED_DIM = 384
EMBED_MODEL_NAME = "sentence-transformers/all-MiniLM-L6-v2"
TOKENIZER_ENCODING = "cl100k_base"

# Recall from the semantic store
RECALL_TOP_K = 3
RECALL_DISTANCE_THRESHOLD = 1.0

# RAG chunking and retrieval
RAG_CHUNK_SIZE = 512
RAG_CHUNK_OVERLAP = 128
RAG_TOP_K = 3

# Token budgets
DEFAULT_BRAIN_MAX_TOKENS = 1024
DEFAULT_CONTEXT_MAX_TOKENS = 8192
DEFAULT_ASSISTANT_MINIMUM_CONTEXT_TOKENS = 2048

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class MemoryConfig:
    """Resolved filesystem locations for everything the memory engine persists."""
    home: Path = PROJECT_ROOT / "data"
    embed_model_name: str = EMBED_MODEL_NAME
    cache_dir: Optional[Path] = None
    db_path: Optional[Path] = None

    def __post_init__(self):
        self.home = Path(self.home)
        if self.cache_dir is None:
            self.cache_dir = self.home / "rag_cache"
        if self.db_path is None:
            self.db_path = self.home / "sessions.db"

    def store_metadata_path(self, namespace: str) -> Path:
        """Where the metadata file for a namespace lives."""
        from memory.long_term import namespace_identifier
        return self.home / "vector_stores" / f"{namespace_identifier(namespace)}.json"


@dataclass
class AssistantConfig:
    """Settings for talking to the completion endpoint."""
    api_key: str = ""
    api_base: str = "http://localhost:5001/v1"
    model: str = "gpt-4o-mini"
    context_max_tokens: int = DEFAULT_CONTEXT_MAX_TOKENS
    assistant_minimum_context_tokens: int = DEFAULT_ASSISTANT_MINIMUM_CONTEXT_TOKENS
    stop_words: list[str] = field(default_factory=list)
    session_name: Optional[str] = None
    should_stream: bool = False
    temperature: Optional[float] = None
    brain_max_tokens: int = DEFAULT_BRAIN_MAX_TOKENS
    memory: MemoryConfig = field(default_factory=MemoryConfig)

    def session_budget(self) -> int:
        """Token budget for the rolling conversation history."""
        return self.context_max_tokens - self.assistant_minimum_context_tokens


def _load_env():
    """Load .env from project root so it works regardless of cwd."""
    from dotenv import load_dotenv
    load_dotenv(PROJECT_ROOT / ".env")
    load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    v = (os.environ.get(name) or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes")


def _env_int(name: str, default: int) -> int:
    v = (os.environ.get(name) or "").strip()
    return int(v) if v else default


def load_config() -> AssistantConfig:
    """Build an AssistantConfig from the environment (and .env)."""
    _load_env()
    home = os.environ.get("MEMORY_HOME")
    memory = MemoryConfig(
        home=Path(home).expanduser() if home else PROJECT_ROOT / "data",
        embed_model_name=(os.environ.get("MEMORY_EMBED_MODEL") or EMBED_MODEL_NAME).strip(),
    )
    temperature = (os.environ.get("OPENAI_TEMPERATURE") or "").strip()
    stop_words = (os.environ.get("MEMORY_STOP_WORDS") or "").strip()
    return AssistantConfig(
        api_key=(os.environ.get("OPENAI_API_KEY") or "").strip(),
        api_base=(os.environ.get("OPENAI_API_BASE") or AssistantConfig.api_base).strip(),
        model=(os.environ.get("OPENAI_MODEL") or AssistantConfig.model).strip(),
        context_max_tokens=_env_int("MEMORY_CONTEXT_MAX_TOKENS", DEFAULT_CONTEXT_MAX_TOKENS),
        assistant_minimum_context_tokens=_env_int(
            "MEMORY_ASSISTANT_MIN_TOKENS", DEFAULT_ASSISTANT_MINIMUM_CONTEXT_TOKENS
        ),
        stop_words=[w for w in stop_words.split(",") if w] if stop_words else [],
        session_name=(os.environ.get("MEMORY_SESSION") or "").strip() or None,
        should_stream=_env_bool("MEMORY_STREAM"),
        temperature=float(temperature) if temperature else None,
        brain_max_tokens=_env_int("MEMORY_BRAIN_MAX_TOKENS", DEFAULT_BRAIN_MAX_TOKENS),
        memory=memory,
    )


def configure_logging(level: Optional[str] = None) -> None:
    """Send log records to stderr. Level defaults to MEMORY_LOG_LEVEL or WARNING."""
    level = (level or os.environ.get("MEMORY_LOG_LEVEL") or "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format=_LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
    )
