"""
Coarse bucket index over fingerprint embeddings.

Candidates are grouped into k-means buckets (FAISS) over their
L2-normalized embeddings, the same idea as an IVF index: a query only
looks at the buckets whose centroids are nearest to it, and widens to
neighboring buckets when too few candidates turn up.

Small populations (below BUCKET_MIN_POPULATION) get a single bucket,
which makes the cascade an exact scan; clustering a few hundred vectors
costs more than it saves.
"""

import logging
import threading
from typing import Dict, List, Optional, Sequence

import faiss
import numpy as np

from .config import BUCKET_MIN_POPULATION
from .features import VisualFingerprint

logger = logging.getLogger(__name__)

KMEANS_ITERATIONS = 20
KMEANS_SEED = 1234


class BucketIndex:
    """
    K-means buckets for the fingerprints sharing one embedding dimension.

    Attributes:
        dim: Embedding dimensionality.
        buckets: bucket id -> positions into the population list.
    """

    def __init__(self, dim: int, centroids: np.ndarray, buckets: Dict[int, List[int]]):
        self.dim = dim
        self.buckets = buckets
        self._quantizer = faiss.IndexFlatIP(dim)
        self._quantizer.add(centroids.astype(np.float32))

    @property
    def n_buckets(self) -> int:
        return self._quantizer.ntotal

    @classmethod
    def build(cls, vectors: np.ndarray, positions: Sequence[int],
              min_population: int = BUCKET_MIN_POPULATION,
              seed: int = KMEANS_SEED) -> "BucketIndex":
        """
        Cluster embedding vectors into buckets.

        Args:
            vectors: (N, d) float array, one row per candidate.
            positions: Position of each row in the population list.
            min_population: Below this many vectors, use one bucket.
            seed: K-means seed; fixed so bucketing is reproducible.
        """
        data = np.array(vectors, dtype=np.float32, order="C")
        faiss.normalize_L2(data)
        n, dim = data.shape

        if n < max(2, min_population):
            centroid = data.mean(axis=0, keepdims=True)
            norm = np.linalg.norm(centroid)
            if norm > 0:
                centroid = centroid / norm
            logger.debug(f"Single bucket for {n} embeddings ({dim}d)")
            return cls(dim, centroid, {0: list(positions)})

        nlist = max(2, int(np.sqrt(n)))
        kmeans = faiss.Kmeans(dim, nlist, niter=KMEANS_ITERATIONS, seed=seed,
                              spherical=True, verbose=False)
        kmeans.train(data)
        _, labels = kmeans.index.search(data, 1)

        buckets: Dict[int, List[int]] = {}
        for position, label in zip(positions, labels[:, 0]):
            buckets.setdefault(int(label), []).append(position)

        logger.info(
            f"Built bucket index: {n} embeddings, {nlist} buckets, {dim}d, "
            f"largest bucket {max(len(b) for b in buckets.values())}"
        )
        return cls(dim, kmeans.centroids, buckets)

    def nearest_buckets(self, query: np.ndarray, n: int) -> List[int]:
        """Bucket ids ordered by centroid similarity to the query."""
        q = np.array(query, dtype=np.float32).reshape(1, -1)
        if q.shape[1] != self.dim:
            raise ValueError(
                f"Query dimension {q.shape[1]} doesn't match "
                f"index dimension {self.dim}"
            )
        faiss.normalize_L2(q)
        k = min(max(1, n), self.n_buckets)
        _, ids = self._quantizer.search(q, k)
        return [int(i) for i in ids[0] if i >= 0]

    def members(self, bucket: int) -> List[int]:
        return self.buckets.get(bucket, [])


class CandidatePopulation:
    """
    A fixed set of candidate fingerprints with lazily built bucket indexes.

    Build once and reuse across searches; indexes are built on first use,
    one per embedding dimension present.
    """

    def __init__(self, fingerprints: Sequence[VisualFingerprint],
                 min_population: int = BUCKET_MIN_POPULATION):
        self.fingerprints = list(fingerprints)
        self.min_population = min_population
        self._indexes: Dict[int, Optional[BucketIndex]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self.fingerprints)

    def bucket_index(self, dim: int) -> Optional[BucketIndex]:
        """Index over the candidates whose embedding has ``dim`` dimensions."""
        with self._lock:
            if dim not in self._indexes:
                self._indexes[dim] = self._build(dim)
            return self._indexes[dim]

    def _build(self, dim: int) -> Optional[BucketIndex]:
        positions = [
            i for i, fp in enumerate(self.fingerprints)
            if fp.has_embedding and fp.neural_embedding.shape == (dim,)
        ]
        if not positions:
            return None
        vectors = np.vstack([self.fingerprints[i].neural_embedding for i in positions])
        return BucketIndex.build(vectors, positions, self.min_population)
