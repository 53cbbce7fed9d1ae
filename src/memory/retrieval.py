"""
Document retrieval (RAG) - sliding-window chunking, an ephemeral index, top-k lookup.

Nothing here is persisted except the embedding cache, which is keyed by the
sha256 of the embedding model name and the chunk text. It is only emptied
by an explicit clear().
"""

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

import numpy as np

from config import EMBED_DIM, EMBED_MODEL_NAME, RAG_CHUNK_OVERLAP, RAG_CHUNK_SIZE, RAG_TOP_K
from memory.errors import EmbeddingError, UnsupportedFormatError
from memory.long_term import SemanticStore
from memory.short_term import Memory, Role

logger = logging.getLogger(__name__)

CONTEXT_HEADING = "Use the following excerpts from the provided documents to answer the question."
_SNIFF_BYTES = 8192


@dataclass
class Chunk:
    """A window of a document: tokens [start, end)."""
    start: int
    end: int
    text: str
    source: Optional[str] = None
    vector: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return self.end - self.start


def chunk_spans(n_tokens: int, chunk_size: int = RAG_CHUNK_SIZE, overlap: int = RAG_CHUNK_OVERLAP) -> list[tuple[int, int]]:
    """
    Window i covers [i*(chunk_size-overlap), i*(chunk_size-overlap)+chunk_size),
    clipped to n_tokens. The last window is the first one that reaches the end.
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError(f"overlap must be in [0, chunk_size), got {overlap}")
    stride = chunk_size - overlap
    spans = []
    start = 0
    while start < n_tokens:
        end = min(start + chunk_size, n_tokens)
        spans.append((start, end))
        if end == n_tokens:
            break
        start += stride
    return spans


def chunk(
    document: str,
    tokenizer,
    chunk_size: int = RAG_CHUNK_SIZE,
    overlap: int = RAG_CHUNK_OVERLAP,
    source: Optional[str] = None,
) -> list[Chunk]:
    """Split a document into overlapping token windows."""
    tokens = tokenizer.encode(document)
    return [
        Chunk(start=s, end=e, text=tokenizer.decode(tokens[s:e]), source=source)
        for s, e in chunk_spans(len(tokens), chunk_size, overlap)
    ]


def load_document(path: Path) -> str:
    """Read a plain-text document. Binary files raise UnsupportedFormatError."""
    path = Path(path)
    data = path.read_bytes()
    if b"\x00" in data[:_SNIFF_BYTES]:
        raise UnsupportedFormatError(f"{path} looks like a binary file")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise UnsupportedFormatError(f"{path} is not UTF-8 text: {e}") from e


class EmbeddingCache:
    """
    Content-addressed chunk embeddings, kept in memory and as .npy files.
    Keys cover the embedding model name as well as the text, so vectors from
    different models never mix.
    """

    def __init__(self, cache_dir: Optional[Path] = None, model_name: str = EMBED_MODEL_NAME):
        self.cache_dir = Path(cache_dir) if cache_dir else None
        self.model_name = model_name
        self._vectors: dict[str, np.ndarray] = {}

    def fingerprint(self, text: str) -> str:
        digest = hashlib.sha256(self.model_name.encode("utf-8"))
        digest.update(b"\0")
        digest.update(text.encode("utf-8"))
        return digest.hexdigest()

    def _file(self, key: str) -> Optional[Path]:
        return self.cache_dir / f"{key}.npy" if self.cache_dir else None

    def get(self, text: str) -> Optional[np.ndarray]:
        key = self.fingerprint(text)
        if key in self._vectors:
            return self._vectors[key]
        path = self._file(key)
        if path is not None and path.is_file():
            try:
                vector = np.load(path)
            except (OSError, ValueError) as e:
                logger.warning("Ignoring unreadable cache entry %s: %s", path.name, e)
                return None
            self._vectors[key] = vector
            return vector
        return None

    def put(self, text: str, vector) -> None:
        key = self.fingerprint(text)
        vector = np.asarray(vector, dtype=np.float32)
        self._vectors[key] = vector
        path = self._file(key)
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
            np.save(path, vector)

    def clear(self) -> int:
        """Drop every cached embedding. Returns how many files were removed."""
        self._vectors.clear()
        removed = 0
        if self.cache_dir and self.cache_dir.is_dir():
            for path in self.cache_dir.glob("*.npy"):
                path.unlink(missing_ok=True)
                removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._vectors)


class EphemeralIndex:
    """Unnamespaced in-memory store of chunks for one invocation."""

    def __init__(self, store: SemanticStore):
        self.store = store
        self.chunks: dict[int, Chunk] = {}

    def __len__(self) -> int:
        return len(self.chunks)

    def add(self, chunk: Chunk) -> int:
        id = self.store.add_vector_with_content(chunk.vector, Memory(Role.USER, chunk.text))
        self.chunks[id] = chunk
        return id

    def search(self, vector, k: int) -> list[tuple[Chunk, float]]:
        return [(self.chunks[id], d) for id, d in self.store.search(vector, k) if id in self.chunks]


class RetrievalPipeline:
    """Chunk, embed and index documents, then answer top-k queries against them."""

    def __init__(
        self,
        embedder,
        tokenizer,
        cache: Optional[EmbeddingCache] = None,
        chunk_size: int = RAG_CHUNK_SIZE,
        overlap: int = RAG_CHUNK_OVERLAP,
        dim: int = EMBED_DIM,
    ):
        # raises ValueError on bad window parameters
        chunk_spans(0, chunk_size, overlap)
        self.embedder = embedder
        self.tokenizer = tokenizer
        if cache is None:
            cache = EmbeddingCache(model_name=getattr(embedder, "model_name", EMBED_MODEL_NAME))
        self.cache = cache
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.dim = dim

    def chunk(self, document: str, source: Optional[str] = None) -> list[Chunk]:
        return chunk(document, self.tokenizer, self.chunk_size, self.overlap, source=source)

    def _embed(self, text: str) -> np.ndarray:
        cached = self.cache.get(text)
        if cached is not None:
            return cached
        try:
            vector = self.embedder.embed(text)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding failed: {e}") from e
        self.cache.put(text, vector)
        return np.asarray(vector, dtype=np.float32)

    def index_documents(self, chunks: Iterable[Chunk]) -> EphemeralIndex:
        """Embed every chunk into a fresh index and build it once at the end."""
        index = EphemeralIndex(SemanticStore(self.dim, namespace=None, embedder=self.embedder))
        skipped = 0
        for c in chunks:
            try:
                c.vector = self._embed(c.text)
            except EmbeddingError as e:
                skipped += 1
                logger.warning("Skipping chunk [%d, %d) of %s: %s", c.start, c.end, c.source, e)
                continue
            index.add(c)
        index.store.build()
        logger.info("Indexed %d chunks (%d skipped)", len(index), skipped)
        return index

    def index_files(self, paths: Iterable[Path]) -> EphemeralIndex:
        """Load, chunk and index plain-text files; unsupported files are left out."""
        chunks = []
        for path in paths:
            try:
                document = load_document(path)
            except UnsupportedFormatError as e:
                logger.warning("Leaving %s out of document context: %s", path, e)
                continue
            chunks.extend(self.chunk(document, source=str(path)))
        return self.index_documents(chunks)

    def retrieve(self, index: EphemeralIndex, query_text: str, k: int = RAG_TOP_K) -> list[Chunk]:
        """The k nearest chunks, nearest first. Empty if the query can't be embedded."""
        if not len(index):
            return []
        try:
            vector = self.embedder.embed(query_text)
        except Exception as e:
            logger.warning("Proceeding without document context: %s", e)
            return []
        return [c for c, _ in index.search(vector, k)]


def build_context_block(chunks: list[Chunk]) -> str:
    """Concatenate retrieved chunk texts, in retrieval order, under a fixed heading."""
    if not chunks:
        return ""
    body = "\n\n---\n\n".join(c.text for c in chunks)
    return f"{CONTEXT_HEADING}\n\n{body}"
