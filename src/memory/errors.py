"""Error kinds raised by the memory engine."""


class MemoryEngineError(Exception):
    """Base class for memory engine failures."""


class EmbeddingError(MemoryEngineError):
    """Tokenizer or embedding model unavailable, or inference failed."""


class IndexBuildError(MemoryEngineError):
    """The approximate index rejected the current vector set."""


class StoreLoadError(MemoryEngineError):
    """Persisted store artifacts are missing or unreadable."""


class DimensionError(MemoryEngineError, ValueError):
    """Vector width does not match the store dimension."""


class UnsupportedFormatError(MemoryEngineError):
    """A document handed to RAG is not plain text."""


class BudgetExhaustedWarning(UserWarning):
    """Working memory holds a single entry that alone exceeds its token budget."""
