"""Vector index backends: exact numpy scan and USearch HNSW."""

import itertools
import json
import logging
import threading
import zlib
from contextlib import contextmanager
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .errors import ConfigurationError, ValidationError
from .models import IndexHit

logger = logging.getLogger(__name__)

_LOCK_STRIPES = 64


@dataclass
class BatchWriteResult:
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def _matches(metadata: Mapping[str, Any], filter: Optional[Mapping[str, str]]) -> bool:
    if not filter:
        return True
    for key, value in filter.items():
        if key not in metadata or str(metadata[key]) != str(value):
            return False
    return True


class VectorIndex(ABC):
    """
    Stores ``(id, vector, metadata)`` triples and answers cosine-similarity
    queries filtered on exact metadata values.

    Writers of the same id are serialized through striped locks; writers of
    different ids only contend on the short structural mutation. Searches
    score their candidates outside any write lock.
    """

    def __init__(self, dimension: int):
        if dimension <= 0:
            raise ConfigurationError(f"Vector dimension must be positive, got {dimension}")
        self.dimension = dimension
        self._id_locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]
        self._seq = itertools.count(1)

    def _stripe(self, item_id: str) -> int:
        return zlib.crc32(item_id.encode()) % _LOCK_STRIPES

    @contextmanager
    def _locked(self, ids: Iterable[str]):
        """Hold the write stripes of ``ids`` (acquired in a fixed order)."""
        stripes = sorted({self._stripe(i) for i in ids})
        for s in stripes:
            self._id_locks[s].acquire()
        try:
            yield
        finally:
            for s in reversed(stripes):
                self._id_locks[s].release()

    def _as_vector(self, vector: Sequence[float]) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float32).reshape(-1)
        if arr.shape[0] != self.dimension:
            raise ConfigurationError(
                f"Vector dimension mismatch: got {arr.shape[0]}, index dimension is {self.dimension}"
            )
        return arr

    @staticmethod
    def _check_item(item_id: str, arr: np.ndarray) -> None:
        if not item_id:
            raise ValidationError("Vector id must be a non-empty string")
        if not np.all(np.isfinite(arr)):
            raise ValidationError(f"Vector for {item_id} contains non-finite values")

    def add(self, id: str, vector: Sequence[float], metadata: Optional[Mapping[str, Any]] = None) -> None:
        """Upsert one vector; replaces any previous vector and metadata for ``id``."""
        arr = self._as_vector(vector)
        self._check_item(id, arr)
        with self._locked([id]):
            self._upsert([(id, arr, dict(metadata or {}))])

    def add_batch(self, items: Iterable[Tuple[str, Sequence[float], Optional[Mapping[str, Any]]]]) -> BatchWriteResult:
        """
        Upsert many vectors.

        Dimensions are checked for the whole batch before anything is written.
        Other per-item problems are reported in ``failed`` while the remaining
        items are still stored.
        """
        prepared = [(item_id, self._as_vector(vector), dict(metadata or {})) for item_id, vector, metadata in items]

        result = BatchWriteResult()
        # Last write wins for ids repeated inside one batch
        valid: Dict[str, Tuple[str, np.ndarray, Dict[str, Any]]] = {}
        for item_id, arr, metadata in prepared:
            try:
                self._check_item(item_id, arr)
            except ValidationError as e:
                result.failed[item_id or "<empty>"] = e.message
                continue
            valid[item_id] = (item_id, arr, metadata)

        with self._locked(valid):
            try:
                self._upsert(list(valid.values()))
                result.succeeded.extend(valid)
            except Exception as e:
                logger.error("Vector batch write of %d items failed: %s", len(valid), e)
                for item_id in valid:
                    result.failed[item_id] = str(e)

        if result.failed:
            logger.warning("Vector batch write: %d stored, %d failed", len(result.succeeded), len(result.failed))
        return result

    def remove(self, id: str) -> None:
        """Remove ``id``; unknown ids are ignored."""
        with self._locked([id]):
            self._delete([id])

    def remove_where(self, filter: Mapping[str, str]) -> int:
        """Remove every entry whose metadata matches ``filter``; returns the count."""
        ids = self.ids_matching(filter)
        if ids:
            with self._locked(ids):
                self._delete(ids)
        return len(ids)

    def search(
        self,
        query_vector: Sequence[float],
        limit: int = 10,
        filter: Optional[Mapping[str, str]] = None,
    ) -> List[IndexHit]:
        """
        Nearest neighbours by cosine similarity.

        Args:
            query_vector: Vector of the index dimension
            limit: Maximum number of hits
            filter: Every key must match the stored metadata value exactly

        Returns:
            Hits ordered by similarity, most recent insertion first on ties
        """
        query = self._as_vector(query_vector)
        if limit <= 0:
            return []
        norm = float(np.linalg.norm(query))
        if norm > 0:
            query = query / norm
        return self._search(query, limit, filter)

    @abstractmethod
    def _upsert(self, items: List[Tuple[str, np.ndarray, Dict[str, Any]]]) -> None:
        ...

    @abstractmethod
    def _delete(self, ids: List[str]) -> None:
        ...

    @abstractmethod
    def _search(self, query: np.ndarray, limit: int, filter: Optional[Mapping[str, str]]) -> List[IndexHit]:
        ...

    @abstractmethod
    def ids_matching(self, filter: Mapping[str, str]) -> List[str]:
        ...

    @abstractmethod
    def get(self, id: str) -> Optional[Tuple[np.ndarray, Dict[str, Any]]]:
        ...

    @abstractmethod
    def save(self) -> None:
        """Persist index to disk."""

    @abstractmethod
    def __len__(self) -> int:
        ...


def _normalize(arr: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(arr))
    return arr / norm if norm > 0 else arr


@dataclass(frozen=True)
class _Entry:
    vector: np.ndarray  # unit length (or zero)
    metadata: Dict[str, Any]
    seq: int


class _Snapshot:
    """Immutable view of the flat index; the stacked matrix is built once, lazily."""

    def __init__(self, entries: Dict[str, _Entry], version: int = 0):
        self.entries = entries
        self.version = version
        self._matrix: Optional[np.ndarray] = None
        self._ids: List[str] = []
        self._lock = threading.Lock()

    def matrix(self, dimension: int) -> Tuple[List[str], np.ndarray]:
        with self._lock:
            if self._matrix is None:
                self._ids = list(self.entries)
                if self._ids:
                    self._matrix = np.stack([self.entries[i].vector for i in self._ids])
                else:
                    self._matrix = np.zeros((0, dimension), dtype=np.float32)
            return self._ids, self._matrix


class FlatVectorIndex(VectorIndex):
    """
    Exact linear-scan index over unit vectors.

    Writes mutate a live dict under a short lock and bump a version. Searches
    use an immutable snapshot of that dict, republished only when a search
    finds the version has moved, and score it without holding any lock.
    """

    def __init__(self, dimension: int, path: Optional[str] = None):
        super().__init__(dimension)
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._entries: Dict[str, _Entry] = {}
        self._version = 0
        self._published = _Snapshot({}, 0)
        if self.path is not None:
            self._load()

    def _upsert(self, items: List[Tuple[str, np.ndarray, Dict[str, Any]]]) -> None:
        normalized = [(id, _normalize(arr), metadata) for id, arr, metadata in items]
        with self._lock:
            for id, vector, metadata in normalized:
                self._entries.pop(id, None)  # re-insert so dict order follows recency
                self._entries[id] = _Entry(vector, metadata, next(self._seq))
            self._version += 1

    def _delete(self, ids: List[str]) -> None:
        with self._lock:
            removed = [id for id in ids if self._entries.pop(id, None) is not None]
            if removed:
                self._version += 1

    def _snapshot(self) -> _Snapshot:
        snapshot = self._published
        if snapshot.version == self._version:
            return snapshot
        with self._lock:
            if self._published.version != self._version:
                self._published = _Snapshot(dict(self._entries), self._version)
            return self._published

    def _search(self, query: np.ndarray, limit: int, filter: Optional[Mapping[str, str]]) -> List[IndexHit]:
        snapshot = self._snapshot()
        ids, matrix = snapshot.matrix(self.dimension)
        if not ids:
            return []

        scores = matrix @ query
        candidates = [
            (float(scores[row]), snapshot.entries[id].seq, id)
            for row, id in enumerate(ids)
            if _matches(snapshot.entries[id].metadata, filter)
        ]
        candidates.sort(key=lambda c: (-c[0], -c[1]))

        return [
            IndexHit(id=id, score=score, metadata=dict(snapshot.entries[id].metadata), seq=seq)
            for score, seq, id in candidates[:limit]
        ]

    def ids_matching(self, filter: Mapping[str, str]) -> List[str]:
        with self._lock:
            entries = list(self._entries.items())
        return [id for id, entry in entries if _matches(entry.metadata, filter)]

    def get(self, id: str) -> Optional[Tuple[np.ndarray, Dict[str, Any]]]:
        with self._lock:
            entry = self._entries.get(id)
        if entry is None:
            return None
        return entry.vector, dict(entry.metadata)

    def __len__(self) -> int:
        return len(self._entries)

    # ============ Persistence ============

    def _files(self) -> Tuple[Path, Path]:
        assert self.path is not None
        return self.path.with_suffix(".npz"), self.path.with_suffix(".json")

    def save(self) -> None:
        """Persist vectors (npz) and metadata (JSON sidecar)."""
        if self.path is None:
            return
        vectors_path, meta_path = self._files()
        vectors_path.parent.mkdir(parents=True, exist_ok=True)
        snapshot = self._snapshot()
        ids, matrix = snapshot.matrix(self.dimension)
        np.savez(vectors_path, vectors=matrix)
        with open(meta_path, "w", encoding="utf-8") as f:
            json.dump(
                {
                    "dimension": self.dimension,
                    "ids": ids,
                    "metadata": [snapshot.entries[i].metadata for i in ids],
                },
                f,
            )

    def _load(self) -> None:
        vectors_path, meta_path = self._files()
        if not (vectors_path.exists() and meta_path.exists()):
            return
        with open(meta_path, "r", encoding="utf-8") as f:
            meta = json.load(f)
        if meta["dimension"] != self.dimension:
            raise ConfigurationError(
                f"Stored vectors at {vectors_path} have dimension {meta['dimension']}, "
                f"configured dimension is {self.dimension}"
            )
        with np.load(vectors_path) as data:
            matrix = data["vectors"]
        entries = {
            id: _Entry(matrix[row].astype(np.float32), metadata, next(self._seq))
            for row, (id, metadata) in enumerate(zip(meta["ids"], meta["metadata"]))
        }
        with self._lock:
            self._entries = entries
            self._version += 1
        logger.info("Loaded %d vectors from %s", len(entries), vectors_path)


class USearchVectorIndex(VectorIndex):
    """
    Approximate index on the USearch HNSW graph.

    Each upsert gets a fresh integer key, so the key order doubles as
    insertion recency. Filtered queries widen the candidate pool until enough
    matches are found or the whole graph has been considered.
    """

    def __init__(
        self,
        dimension: int,
        path: Optional[str] = None,
        dtype: str = "f32",
        connectivity: int = 32,
        expansion_add: int = 128,
        expansion_search: int = 64,
    ):
        super().__init__(dimension)
        from usearch.index import Index as USearchIndex, MetricKind

        self.path = Path(path) if path else None
        self._write_lock = threading.Lock()
        self._keys: Dict[str, int] = {}
        self._ids: Dict[int, str] = {}
        self._metadata: Dict[int, Dict[str, Any]] = {}

        index_file = self.path.with_suffix(".usearch") if self.path else None
        if index_file is not None and index_file.exists():
            self.index = USearchIndex.restore(str(index_file))
            self._load_sidecar()
            if self.index.ndim != dimension:
                raise ConfigurationError(
                    f"Stored index {index_file} has dimension {self.index.ndim}, configured {dimension}"
                )
        else:
            self.index = USearchIndex(
                ndim=dimension,
                metric=MetricKind.Cosine,
                dtype=dtype,
                connectivity=connectivity,
                expansion_add=expansion_add,
                expansion_search=expansion_search,
            )

    def _upsert(self, items: List[Tuple[str, np.ndarray, Dict[str, Any]]]) -> None:
        with self._write_lock:
            for id, arr, metadata in items:
                old = self._keys.pop(id, None)
                if old is not None:
                    self.index.remove(old)
                    self._ids.pop(old, None)
                    self._metadata.pop(old, None)
                key = next(self._seq)
                self.index.add(key, _normalize(arr))
                self._keys[id] = key
                self._ids[key] = id
                self._metadata[key] = metadata

    def _delete(self, ids: List[str]) -> None:
        with self._write_lock:
            for id in ids:
                key = self._keys.pop(id, None)
                if key is None:
                    continue
                self.index.remove(key)
                self._ids.pop(key, None)
                self._metadata.pop(key, None)

    def _search(self, query: np.ndarray, limit: int, filter: Optional[Mapping[str, str]]) -> List[IndexHit]:
        total = len(self.index)
        if total == 0:
            return []

        fetch = min(total, limit * 4 if filter else limit)
        while True:
            matches = self.index.search(query, fetch)
            hits = []
            for key, distance in zip(matches.keys, matches.distances):
                key = int(key)
                id = self._ids.get(key)
                metadata = self._metadata.get(key)
                if id is None or metadata is None or not _matches(metadata, filter):
                    continue
                hits.append(IndexHit(id=id, score=1.0 - float(distance), metadata=dict(metadata), seq=key))
            if len(hits) >= limit or fetch >= total:
                break
            fetch = min(total, fetch * 2)

        hits.sort(key=lambda h: (-h.score, -h.seq))
        return hits[:limit]

    def ids_matching(self, filter: Mapping[str, str]) -> List[str]:
        with self._write_lock:
            return [self._ids[k] for k, m in self._metadata.items() if _matches(m, filter)]

    def get(self, id: str) -> Optional[Tuple[np.ndarray, Dict[str, Any]]]:
        key = self._keys.get(id)
        if key is None:
            return None
        return np.asarray(self.index.get(key), dtype=np.float32), dict(self._metadata[key])

    def __len__(self) -> int:
        return len(self._keys)

    # ============ Persistence ============

    def save(self) -> None:
        """Persist the HNSW graph and the id/metadata sidecar."""
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._write_lock:
            self.index.save(str(self.path.with_suffix(".usearch")))
            sidecar = {
                "keys": self._keys,
                "metadata": {str(k): m for k, m in self._metadata.items()},
            }
        with open(self.path.with_suffix(".json"), "w", encoding="utf-8") as f:
            json.dump(sidecar, f)

    def _load_sidecar(self) -> None:
        sidecar_path = self.path.with_suffix(".json")
        if not sidecar_path.exists():
            return
        with open(sidecar_path, "r", encoding="utf-8") as f:
            sidecar = json.load(f)
        self._keys = {id: int(k) for id, k in sidecar["keys"].items()}
        self._ids = {k: id for id, k in self._keys.items()}
        self._metadata = {int(k): m for k, m in sidecar["metadata"].items()}
        start = max(self._ids, default=0) + 1
        self._seq = itertools.count(start)


def create_vector_index(config) -> VectorIndex:
    """Build the vector index selected by ``config.vector_backend``."""
    if config.vector_backend == "usearch":
        return USearchVectorIndex(
            config.embedding_dim,
            path=config.index_path,
            dtype=config.dtype,
            connectivity=config.connectivity,
            expansion_add=config.expansion_add,
            expansion_search=config.expansion_search,
        )
    if config.vector_backend == "flat":
        return FlatVectorIndex(config.embedding_dim, path=config.index_path)
    raise ConfigurationError(f"Unknown vector_backend: {config.vector_backend}")
