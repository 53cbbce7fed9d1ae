"""
Tokenizer and sentence embedder used by the memory engine.

Token counts come from tiktoken's cl100k_base encoding, the same one the
budgets are sized against. Embeddings come from sentence-transformers
(all-MiniLM-L6-v2, 384 dims), L2-normalized so that Euclidean distance
between two memories stays within [0, 2].
"""

import logging
from typing import Optional

import numpy as np

from config import EMBED_DIM, EMBED_MODEL_NAME, TOKENIZER_ENCODING
from memory.errors import EmbeddingError

logger = logging.getLogger(__name__)


class Tokenizer:
    """Lazy wrapper around a tiktoken encoding."""

    def __init__(self, encoding_name: str = TOKENIZER_ENCODING):
        self.encoding_name = encoding_name
        self._encoding = None

    @property
    def encoding(self):
        if self._encoding is None:
            try:
                import tiktoken
                self._encoding = tiktoken.get_encoding(self.encoding_name)
            except Exception as e:
                raise EmbeddingError(f"Could not load tokenizer {self.encoding_name}: {e}") from e
        return self._encoding

    def encode(self, text: str) -> list[int]:
        return self.encoding.encode(text, disallowed_special=())

    def decode(self, tokens: list[int]) -> str:
        return self.encoding.decode(tokens)

    def count_tokens(self, text: str) -> int:
        return len(self.encode(text))


class Embedder:
    """
    Sentence-transformers embedder.
    The model is loaded on first use; load or inference failures raise EmbeddingError.
    """

    def __init__(
        self,
        model_name: str = EMBED_MODEL_NAME,
        tokenizer: Optional[Tokenizer] = None,
        dimension: int = EMBED_DIM,
    ):
        self.model_name = model_name
        self.tokenizer = tokenizer or Tokenizer()
        self.dimension = dimension
        self._model = None

    @property
    def model(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
                logger.info("Loading embedding model %s", self.model_name)
                self._model = SentenceTransformer(self.model_name)
            except Exception as e:
                raise EmbeddingError(f"Could not load embedding model {self.model_name}: {e}") from e
        return self._model

    def embed(self, text: str) -> np.ndarray:
        """Encode text into a normalized float32 vector."""
        model = self.model
        try:
            emb = model.encode([text], convert_to_numpy=True, normalize_embeddings=True)
        except Exception as e:
            raise EmbeddingError(f"Embedding failed: {e}") from e
        vector = np.asarray(emb[0], dtype=np.float32)
        if vector.shape[0] != self.dimension:
            raise EmbeddingError(
                f"Model {self.model_name} produced {vector.shape[0]} dims, expected {self.dimension}"
            )
        return vector

    def count_tokens(self, text: str) -> int:
        return self.tokenizer.count_tokens(text)


def get_backend(embedder: Embedder) -> str:
    """Return current embedding backend name."""
    return f"sentence-transformers ({embedder.model_name})"


def euclidean_distance(a, b) -> float:
    """Euclidean distance between two vectors."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    return float(np.linalg.norm(va - vb))
