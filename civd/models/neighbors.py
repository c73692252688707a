"""
Nearest-neighbour search strategies.

Every strategy keeps its own copy of the indexed instances and answers
``retrieve_neighbors(query, k)`` with the ``k`` closest of them, ordered by
non-decreasing distance, plus the parallel distance array.

* ``linear``  exhaustive scan with :class:`EuclideanDistance` (exact, handles
              missing values, ties keep arrival order)
* ``sklearn`` ``sklearn.neighbors.NearestNeighbors`` over the embedded rows
* ``torch``   brute-force ``torch.cdist`` over the embedded rows (GPU if asked)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import torch
from sklearn.neighbors import NearestNeighbors

from civd.models.distance import EuclideanDistance, Ranges
from civd.models.errors import ConfigurationError
from civd.models.instances import Instance, Schema

logger = logging.getLogger(__name__)

NeighborSet = Tuple[List[Instance], np.ndarray]


class NeighborSource(ABC):
    """Ordered neighbour retrieval over a mutable instance collection."""

    name = "abstract"

    def __init__(self):
        self._instances: List[Instance] = []
        self._num_queries = 0
        self._points_visited = 0
        self._prepared: Optional[Instance] = None

    # ------------------------------------------------------------------ #
    @abstractmethod
    def index(self, instances: Iterable[Instance], schema: Optional[Schema] = None) -> None:
        """Rebuild from ``instances``, dropping any previous state."""

    @abstractmethod
    def insert(self, instance: Instance) -> None:
        """Add one instance while keeping the existing structure."""

    def prepare(self, query: Instance) -> None:
        """Fold query-specific context in before :meth:`retrieve_neighbors`.

        The context only applies to the next retrieval for ``query``; the
        indexed state is not changed.
        """
        self._prepared = query

    @abstractmethod
    def retrieve_neighbors(self, query: Instance, k: int) -> NeighborSet:
        """Return up to ``k`` instances nearest to ``query`` and their distances."""

    def get_options(self) -> Dict:
        return {}

    # ------------------------------------------------------------------ #
    def size(self) -> int:
        return len(self._instances)

    def __len__(self) -> int:
        return self.size()

    def _record_query(self, visited: int) -> None:
        self._num_queries += 1
        self._points_visited += visited

    def measure_names(self) -> List[str]:
        return ["measureNumQueries",
                "measureTotalPointsVisited",
                "measureMeanPointsVisited"]

    def get_measure(self, name: str) -> float:
        if name == "measureNumQueries":
            return float(self._num_queries)
        if name == "measureTotalPointsVisited":
            return float(self._points_visited)
        if name == "measureMeanPointsVisited":
            if self._num_queries == 0:
                return 0.0
            return self._points_visited / self._num_queries
        raise ValueError(f"{name} not supported by {type(self).__name__}")


def _query_ranges(source: NeighborSource, query: Instance) -> Optional[Ranges]:
    """Ranges widened by a prepared ``query``, or None to use the stored ones."""
    prepared, source._prepared = source._prepared, None
    distance = source.distance
    if prepared is not query or distance.schema is None:
        return None
    mins, maxs = distance.ranges_with(query)
    if (np.array_equal(mins, distance.mins, equal_nan=True)
            and np.array_equal(maxs, distance.maxs, equal_nan=True)):
        return None
    return mins, maxs


class LinearSearch(NeighborSource):
    """Exhaustive scan; the reference strategy."""

    name = "linear"

    def __init__(self, normalize: bool = True):
        super().__init__()
        self.distance = EuclideanDistance(normalize=normalize)
        self._matrix: np.ndarray | None = None

    def get_options(self) -> Dict:
        return {"normalize": self.distance.normalize}

    def index(self, instances, schema=None):
        self._instances = list(instances)
        if schema is None and self._instances:
            schema = self._instances[0].schema
        if schema is not None:
            self.distance.set_instances(schema, self._instances)
        self._matrix = None

    def insert(self, instance):
        if self.distance.schema is None:
            self.distance.set_instances(instance.schema, [])
        self._instances.append(instance)
        self.distance.update_ranges(instance)
        self._matrix = None

    def _rows(self) -> np.ndarray:
        if self._matrix is None:
            self._matrix = (np.stack([i.values for i in self._instances])
                            if self._instances else np.empty((0, 0)))
        return self._matrix

    def retrieve_neighbors(self, query, k):
        ranges = _query_ranges(self, query)
        if not self._instances or k <= 0:
            return [], np.empty(0)
        dists = self.distance.distances(query, self._rows(), ranges)
        order = np.argsort(dists, kind="stable")[:k]
        self._record_query(len(self._instances))
        return [self._instances[i] for i in order], dists[order]


class _EmbeddedSearch(NeighborSource):
    """Shared bookkeeping for strategies that work on plain vectors.

    Rows are embedded with :meth:`EuclideanDistance.embed`; the embedding is
    refreshed lazily whenever instances arrive or the ranges move.
    """

    def __init__(self, normalize: bool = True):
        super().__init__()
        self.distance = EuclideanDistance(normalize=normalize)
        self._fitted_key = None

    def index(self, instances, schema=None):
        self._instances = list(instances)
        if schema is None and self._instances:
            schema = self._instances[0].schema
        if schema is not None:
            self.distance.set_instances(schema, self._instances)
        self._fitted_key = None

    def insert(self, instance):
        if self.distance.schema is None:
            self.distance.set_instances(instance.schema, [])
        self._instances.append(instance)
        self.distance.update_ranges(instance)

    def _refresh(self, ranges: Optional[Ranges]) -> None:
        key = (self.distance.version, len(self._instances),
               None if ranges is None else (ranges[0].tobytes(), ranges[1].tobytes()))
        if key == self._fitted_key:
            return
        embedded = self.distance.embed(np.stack([i.values for i in self._instances]), ranges)
        self._fit(embedded)
        self._fitted_key = key
        logger.debug(f"{self.name}: refitted over {embedded.shape[0]} rows")

    def retrieve_neighbors(self, query, k):
        ranges = _query_ranges(self, query)
        if not self._instances or k <= 0:
            return [], np.empty(0)
        k = min(k, len(self._instances))
        self._refresh(ranges)
        q = self.distance.embed(query.values[np.newaxis, :], ranges)
        if q.shape[1] == 0:
            # nothing to compare on: every row is at distance zero
            idx, dists = np.arange(k), np.zeros(k)
        else:
            idx, dists = self._query(q, k)
        self._record_query(len(self._instances))
        return [self._instances[i] for i in idx], np.asarray(dists, dtype=np.float64)

    @abstractmethod
    def _fit(self, embedded: np.ndarray) -> None:
        ...

    @abstractmethod
    def _query(self, q: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        ...


class SklearnSearch(_EmbeddedSearch):
    """``NearestNeighbors`` index (ball tree, kd tree or brute force)."""

    name = "sklearn"

    def __init__(self, algorithm: str = "auto", leaf_size: int = 30, normalize: bool = True):
        if algorithm not in {"auto", "ball_tree", "kd_tree", "brute"}:
            raise ConfigurationError(f"unknown sklearn algorithm {algorithm!r}")
        super().__init__(normalize=normalize)
        self.algorithm = algorithm
        self.leaf_size = leaf_size
        self.nn: NearestNeighbors | None = None

    def get_options(self) -> Dict:
        return {"algorithm": self.algorithm, "leaf_size": self.leaf_size,
                "normalize": self.distance.normalize}

    def _fit(self, embedded):
        self.nn = NearestNeighbors(algorithm=self.algorithm,
                                   leaf_size=self.leaf_size,
                                   metric="euclidean")
        if embedded.shape[1]:
            self.nn.fit(embedded)

    def _query(self, q, k):
        dists, idx = self.nn.kneighbors(q, n_neighbors=k)
        return idx[0], dists[0]


class TorchSearch(_EmbeddedSearch):
    """Brute-force ``torch.cdist`` memory bank."""

    name = "torch"

    def __init__(self, device: str = "auto", normalize: bool = True):
        super().__init__(normalize=normalize)
        self.device_name = device
        if device == "auto":
            device = "cuda" if torch.cuda.is_available() else "cpu"
        self.device = torch.device(device)
        self.bank: torch.Tensor | None = None

    def get_options(self) -> Dict:
        return {"device": self.device_name, "normalize": self.distance.normalize}

    def _fit(self, embedded):
        self.bank = torch.as_tensor(embedded, dtype=torch.float64, device=self.device)

    @torch.no_grad()
    def _query(self, q, k):
        q = torch.as_tensor(q, dtype=torch.float64, device=self.device)
        # exact pairwise distances; the matmul shortcut loses zeros
        d = torch.cdist(q, self.bank,
                        compute_mode="donot_use_mm_for_euclid_dist")[0]   # (N,)
        dists, idx = torch.sort(d, stable=True)
        return idx[:k].cpu().numpy(), dists[:k].cpu().numpy()


SEARCH_STRATEGIES = {
    LinearSearch.name: LinearSearch,
    SklearnSearch.name: SklearnSearch,
    TorchSearch.name: TorchSearch,
}


def make_search(strategy: str = "linear", **options) -> NeighborSource:
    """Build a search strategy from its identifier and nested options."""
    try:
        cls = SEARCH_STRATEGIES[strategy]
    except KeyError:
        raise ConfigurationError(
            f"unknown neighbour search strategy {strategy!r}; "
            f"expected one of {sorted(SEARCH_STRATEGIES)}"
        ) from None
    try:
        return cls(**options)
    except TypeError as e:
        raise ConfigurationError(f"bad options for {strategy!r} search: {e}") from e


def prune_to_k(neighbors: Sequence[Instance], distances: Sequence[float],
               k: int) -> NeighborSet:
    """Keep the ``k`` nearest, plus any neighbours tied at the k-th distance.

    Expects ``neighbors`` already ordered by distance.
    """
    if neighbors is None or distances is None or len(neighbors) == 0:
        return [], np.empty(0)
    k = max(k, 1)
    distances = np.asarray(distances, dtype=np.float64)
    keep = len(neighbors)
    for i in range(k, len(neighbors)):
        if distances[i] != distances[i - 1]:
            keep = i
            break
    return list(neighbors[:keep]), distances[:keep]
