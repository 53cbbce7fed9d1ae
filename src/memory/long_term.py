"""
Long-term semantic memory - an HNSW index of embedded memories, persisted per session.

On disk a store is two files that live side by side:

- a JSON metadata file (dimension, namespace, identifier, id -> memory map)
- a binary faiss index file whose name is recorded in the metadata

Both names derive from ``identifier`` (a digest of the namespace), and the
binary file is always resolved from the metadata's ``index_file`` field, so
moving the pair to another directory keeps them together.
"""

import hashlib
import json
import logging
from pathlib import Path
from typing import Optional

import numpy as np

from config import EMBED_DIM, MemoryConfig
from memory.ann_index import ApproximateIndex
from memory.embeddings import Embedder
from memory.errors import DimensionError, EmbeddingError, StoreLoadError
from memory.short_term import Memory

logger = logging.getLogger(__name__)

METADATA_VERSION = 1


def namespace_identifier(namespace: Optional[str]) -> str:
    """Stable short identifier for a namespace."""
    return hashlib.sha256((namespace or "").encode("utf-8")).hexdigest()[:16]


def index_filename(identifier: str) -> str:
    return f"{identifier}_hnsw_index.bin"


class SemanticStore:
    """
    Embedded memories keyed by monotonic id.
    Inserted vectors become searchable after build().
    """

    def __init__(
        self,
        dim: int = EMBED_DIM,
        namespace: Optional[str] = None,
        embedder: Optional[Embedder] = None,
        index: Optional[ApproximateIndex] = None,
    ):
        if not isinstance(dim, int) or dim <= 0:
            raise DimensionError(f"Store dimension must be a positive integer, got {dim!r}")
        self.dimension = dim
        self.namespace = namespace
        self.embedder = embedder
        self.index = index if index is not None else ApproximateIndex(dim)
        self.next_id = 0
        self.id_to_memory: dict[int, Memory] = {}

    def __len__(self) -> int:
        return len(self.id_to_memory)

    @property
    def identifier(self) -> str:
        return namespace_identifier(self.namespace)

    @property
    def pending(self) -> int:
        """Vectors inserted since the last build()."""
        return self.index.pending

    def embed_text_to_vector(self, text: str) -> np.ndarray:
        if self.embedder is None:
            raise EmbeddingError("No embedder attached to this store")
        try:
            vector = self.embedder.embed(text)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding failed: {e}") from e
        return np.asarray(vector, dtype=np.float32)

    def add_vector_with_content(self, vector, memory: Memory) -> int:
        """Store a vector and its memory under the next id. Searchable after build()."""
        id = self.next_id
        self.index.insert(id, vector)
        self.id_to_memory[id] = memory
        self.next_id += 1
        return id

    def build(self) -> None:
        self.index.build()

    def discard_pending(self) -> int:
        """Forget memories inserted since the last build()."""
        ids = self.index.discard_pending()
        for id in ids:
            self.id_to_memory.pop(id, None)
        return len(ids)

    def search(self, vector, k: int) -> list[tuple[int, float]]:
        return self.index.search(vector, k)

    def get_content_by_id(self, id: int) -> Optional[Memory]:
        return self.id_to_memory.get(id)

    def search_memories(self, vector, k: int) -> list[tuple[int, Memory, float]]:
        """search() joined with the stored memories."""
        hits = []
        for id, distance in self.search(vector, k):
            memory = self.id_to_memory.get(id)
            if memory is None:
                logger.warning("Index returned id %d with no stored memory", id)
                continue
            hits.append((id, memory, distance))
        return hits

    def to_metadata(self, namespace: Optional[str] = None) -> dict:
        namespace = self.namespace if namespace is None else namespace
        identifier = namespace_identifier(namespace)
        return {
            "version": METADATA_VERSION,
            "dimension": self.dimension,
            "namespace": namespace,
            "identifier": identifier,
            "next_id": self.next_id,
            "index_file": index_filename(identifier),
            "id_to_memory": {str(i): m.to_dict() for i, m in sorted(self.id_to_memory.items())},
        }

    def serialize(self, path: Path, namespace: Optional[str] = None) -> Path:
        """
        Write the metadata file at ``path`` and the binary index next to it.
        Pending vectors are built first. Returns the index file path.
        """
        if self.pending:
            logger.info("Building %d pending vectors before serializing", self.pending)
            self.build()
        if namespace is not None:
            self.namespace = namespace
        path = Path(path)
        metadata = self.to_metadata()
        index_path = path.parent / metadata["index_file"]
        path.parent.mkdir(parents=True, exist_ok=True)
        self.index.save(index_path)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(metadata, f, indent=2)
        logger.info("Serialized %d memories to %s (index %s)", len(self), path, index_path.name)
        return index_path

    @classmethod
    def deserialize(
        cls,
        path: Path,
        config: Optional[MemoryConfig] = None,
        embedder: Optional[Embedder] = None,
    ) -> "SemanticStore":
        """
        Load a store from its metadata file and the index file it names.
        The embedder is not persisted: pass one in, or one is built from config.
        """
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                metadata = json.load(f)
            dimension = int(metadata["dimension"])
            index_file = metadata["index_file"]
            id_to_memory = {
                int(i): Memory.from_dict(m) for i, m in metadata["id_to_memory"].items()
            }
            next_id = int(metadata["next_id"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StoreLoadError(f"Could not read store metadata {path}: {e}") from e

        index = ApproximateIndex.load(path.parent / index_file, dimension)
        if len(index) != len(id_to_memory):
            raise StoreLoadError(
                f"Index holds {len(index)} vectors but metadata has {len(id_to_memory)} memories"
            )

        if embedder is None:
            config = config or MemoryConfig()
            embedder = Embedder(model_name=config.embed_model_name, dimension=dimension)

        store = cls(dimension, metadata.get("namespace"), embedder=embedder, index=index)
        store.id_to_memory = id_to_memory
        store.next_id = max(next_id, max(id_to_memory, default=-1) + 1)
        return store


def open_store(
    namespace: str,
    config: MemoryConfig,
    embedder: Optional[Embedder] = None,
    dim: int = EMBED_DIM,
) -> SemanticStore:
    """Load the namespace's store, or start a fresh one if there is none or it can't be read."""
    path = config.store_metadata_path(namespace)
    if embedder is None:
        embedder = Embedder(model_name=config.embed_model_name, dimension=dim)
    if path.exists():
        try:
            store = SemanticStore.deserialize(path, config, embedder=embedder)
            logger.info("Loaded %d memories for session %s", len(store), namespace)
            return store
        except StoreLoadError as e:
            logger.warning("Starting cold for session %s: %s", namespace, e)
    else:
        logger.info("No stored memories for session %s; starting cold", namespace)
    return SemanticStore(dim, namespace, embedder=embedder)


def save_store(store: SemanticStore, config: MemoryConfig) -> Path:
    """Serialize a namespaced store to its default location."""
    if store.namespace is None:
        raise ValueError("Only namespaced stores can be saved")
    path = config.store_metadata_path(store.namespace)
    store.serialize(path, store.namespace)
    return path
