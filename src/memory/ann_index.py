"""
Approximate nearest-neighbor index over faiss HNSW.

Vectors are queued by insert() and only become searchable once build()
has added them to the graph. Labels in the faiss index are the caller's
integer ids, so results map straight back to stored memories.
"""

import logging
from pathlib import Path

import numpy as np

from memory.errors import DimensionError, IndexBuildError, StoreLoadError

logger = logging.getLogger(__name__)

HNSW_M = 32
EF_CONSTRUCTION = 64
EF_SEARCH = 64
# Extra candidates fetched so equal-distance neighbors at the cut are ordered by id.
TIE_SLACK = 8


def _new_faiss_index(dimension: int):
    import faiss
    hnsw = faiss.IndexHNSWFlat(dimension, HNSW_M)
    hnsw.hnsw.efConstruction = EF_CONSTRUCTION
    hnsw.hnsw.efSearch = EF_SEARCH
    return faiss.IndexIDMap(hnsw)


class ApproximateIndex:
    """HNSW graph with Euclidean distance and deferred (batched) insertion."""

    def __init__(self, dimension: int, faiss_index=None):
        import faiss
        self.dimension = dimension
        self.index = faiss_index if faiss_index is not None else _new_faiss_index(dimension)
        self._hnsw = faiss.downcast_index(self.index.index)
        self._pending_ids: list[int] = []
        self._pending_vectors: list[np.ndarray] = []

    def __len__(self) -> int:
        return int(self.index.ntotal)

    @property
    def pending(self) -> int:
        return len(self._pending_ids)

    def _as_row(self, vector) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float32).reshape(-1)
        if arr.shape[0] != self.dimension:
            raise DimensionError(
                f"Vector dimension {arr.shape[0]} does not match expected dimension {self.dimension}"
            )
        return arr

    def insert(self, id: int, vector) -> None:
        """Queue a vector; it is not searchable until build()."""
        self._pending_vectors.append(self._as_row(vector))
        self._pending_ids.append(int(id))

    def build(self) -> None:
        """Add every queued vector to the graph."""
        if not self._pending_ids:
            return
        batch = np.ascontiguousarray(np.vstack(self._pending_vectors), dtype=np.float32)
        ids = np.asarray(self._pending_ids, dtype=np.int64)
        if not np.all(np.isfinite(batch)):
            raise IndexBuildError("Refusing to index vectors containing NaN or infinity")
        try:
            self.index.add_with_ids(batch, ids)
        except Exception as e:
            raise IndexBuildError(f"HNSW index rejected {len(ids)} vectors: {e}") from e
        logger.debug("Built %d vectors into index (%d total)", len(ids), self.index.ntotal)
        self._pending_ids.clear()
        self._pending_vectors.clear()

    def discard_pending(self) -> list[int]:
        """Drop queued vectors without indexing them. Returns their ids."""
        ids = list(self._pending_ids)
        self._pending_ids.clear()
        self._pending_vectors.clear()
        return ids

    def search(self, vector, k: int) -> list[tuple[int, float]]:
        """Up to k (id, distance) pairs, nearest first, ties broken by lower id."""
        total = int(self.index.ntotal)
        if k <= 0 or total == 0:
            return []
        query = self._as_row(vector).reshape(1, -1)
        fetch = min(k + TIE_SLACK, total)
        while True:
            results = self._search_candidates(query, fetch)
            if fetch >= total or len(results) <= k:
                break
            # an equal-distance run crossing the cut may hide lower ids
            if results[k - 1][1] < results[-1][1]:
                break
            fetch = min(fetch * 2, total)
        return results[:k]

    def _search_candidates(self, query: np.ndarray, fetch: int) -> list[tuple[int, float]]:
        if self._hnsw.hnsw.efSearch < fetch:
            self._hnsw.hnsw.efSearch = fetch
        distances, labels = self.index.search(query, fetch)
        results = []
        for label, dist in zip(labels[0], distances[0]):
            if label < 0:
                continue
            # faiss reports squared L2
            results.append((int(label), float(np.sqrt(max(float(dist), 0.0)))))
        results.sort(key=lambda r: (r[1], r[0]))
        return results

    def save(self, path: Path) -> None:
        import faiss
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        faiss.write_index(self.index, str(path))

    @classmethod
    def load(cls, path: Path, dimension: int) -> "ApproximateIndex":
        import faiss
        path = Path(path)
        if not path.is_file():
            raise StoreLoadError(f"Index file not found: {path}")
        try:
            faiss_index = faiss.read_index(str(path))
        except Exception as e:
            raise StoreLoadError(f"Could not read index file {path}: {e}") from e
        if faiss_index.d != dimension:
            raise StoreLoadError(
                f"Index file {path} has dimension {faiss_index.d}, metadata says {dimension}"
            )
        if not hasattr(faiss_index, "id_map"):
            raise StoreLoadError(f"Index file {path} is not an id-mapped HNSW index")
        return cls(dimension, faiss_index=faiss_index)
