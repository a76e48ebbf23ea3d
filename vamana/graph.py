"""In-memory Vamana graph: construction, pruning and greedy search."""

from __future__ import annotations

import math
import random
import threading
from dataclasses import dataclass, replace
from typing import Iterable, MutableSequence, Sequence

import numpy as np

from vamana.logger import get_stream
from vamana.search import (
    ANNError,
    Metric,
    Neighbor,
    SearchResult,
    distance_function,
    insert_into_pool,
    iterate_to_fixed_point,
    occlude_list,
)
from vamana.timer import Timer

SLACK_FACTOR = 1.3
SYNC_BLOCK = 64 * 64
MIN_SYNCS = 40
NUM_ROUNDS = 2


def _log(message: str, name: str = "cout") -> None:
    stream = get_stream(name)
    stream.write(message + "\n")
    stream.flush()


@dataclass
class IndexParameters:
    """Build and update settings: degree bound, search list size, candidates, alpha."""

    max_degree: int
    list_size: int
    max_candidates: int
    alpha: float
    num_threads: int = 0
    saturate_graph: bool = False

    def __post_init__(self) -> None:
        if self.max_degree < 1:
            raise ValueError("max_degree must be at least 1")
        if self.list_size < 1:
            raise ValueError("list_size must be at least 1")
        if self.max_candidates < 1:
            raise ValueError("max_candidates must be at least 1")
        if self.num_threads < 0:
            raise ValueError("num_threads cannot be negative")


@dataclass
class _OptimizedGraph:
    norms: np.ndarray
    vectors: np.ndarray
    neighbors: list[list[int]]


class GraphIndex:
    """A navigable graph over a fixed set of vectors."""

    def __init__(
        self,
        metric: Metric,
        data: np.ndarray,
        max_points: int = 0,
        num_points: int = 0,
        num_frozen_pts: int = 0,
        enable_tags: bool = False,
        store_data: bool = True,
        support_eager_delete: bool = False,
    ) -> None:
        points = np.asarray(data)
        if points.ndim != 2:
            raise ANNError("Data must be a two-dimensional array")
        if num_frozen_pts < 0:
            raise ANNError("Number of frozen points cannot be negative")
        _log(f"Number of frozen points = {num_frozen_pts}")

        nd = len(points)
        if num_points > 0:
            if nd >= num_points:
                nd = num_points
            else:
                message = (
                    f"ERROR: Driver requests loading {num_points} points, "
                    f"but data has fewer ({nd}) points"
                )
                _log(message, "cerr")
                raise ANNError(message)

        self.max_points = max_points if max_points > 0 else nd
        if self.max_points < nd:
            message = (
                "ERROR: max_points must be >= data size; "
                f"max_points: {self.max_points}  n: {nd}"
            )
            _log(message, "cerr")
            raise ANNError(message)

        self.metric = metric
        self.nd = nd
        self.dim = points.shape[1]
        self.num_frozen_pts = num_frozen_pts
        self.data = np.zeros((self.max_points + num_frozen_pts, self.dim), dtype=points.dtype)
        self.data[:nd] = points[:nd]
        self.distance = distance_function(metric, points.dtype)

        self.enable_tags = enable_tags
        self.store_data = store_data
        self.support_eager_delete = support_eager_delete
        self.has_built = False
        self.width = 0
        self.ep = 0
        self.saturate_graph = False
        self.can_delete = False
        self.eager_done = True
        self.lazy_done = True
        self.compacted_order = True
        self.consolidated_order = True

        self.final_graph: list[list[int]] = []
        self.in_graph: list[list[int]] = []
        self.tag_to_location: dict[object, int] = {}
        self.location_to_tag: dict[int, object] = {}
        self.delete_set: set[int] = set()
        self.empty_slots: set[int] = set()
        self.change_lock = threading.RLock()
        self._opt_graph: _OptimizedGraph | None = None
        self._rng = random.Random()

    @property
    def total_slots(self) -> int:
        """Number of vector slots, including frozen points."""
        return self.max_points + self.num_frozen_pts

    def calculate_entry_point(self) -> int:
        """Return the id of the point closest to the centroid of the data."""
        if self.nd == 0:
            raise ANNError("Cannot compute an entry point without data")
        points = self.data[: self.nd].astype(np.float32)
        center = points.sum(axis=0, dtype=np.float32) / np.float32(self.nd)
        diffs = center - points
        distances = np.einsum("ij,ij->i", diffs, diffs)
        return int(np.argmin(distances))

    def get_expanded_nodes(
        self, node_id: int, list_size: int, init_ids: Sequence[int] | None = None
    ) -> SearchResult:
        """Search from ``init_ids`` (or the entry point) towards ``node_id``."""
        starts = list(init_ids) if init_ids else [self.ep]
        return iterate_to_fixed_point(
            self.data, self.final_graph, self.data[node_id], list_size, starts, self.distance
        )

    def occlude_list(
        self,
        pool: Sequence[Neighbor],
        alpha: float,
        degree: int,
        maxc: int,
        occlude_factor: list[float] | None = None,
    ) -> list[Neighbor]:
        """Select up to ``degree`` diverse neighbors from a sorted pool."""
        return occlude_list(
            pool, self.data, self.metric, self.distance, alpha, degree, maxc, occlude_factor
        )

    def prune_neighbors(
        self, location: int, pool: Sequence[Neighbor], parameters: IndexParameters
    ) -> list[int]:
        """Return the pruned out-neighbor ids of ``location`` drawn from ``pool``."""
        if not pool:
            return []
        degree = parameters.max_degree
        self.width = max(self.width, degree)
        ordered = sorted(pool)
        occlude_factor = [0.0] * len(ordered)
        result = self.occlude_list(
            ordered, parameters.alpha, degree, parameters.max_candidates, occlude_factor
        )
        pruned = [n.id for n in result if n.id != location]

        if self.saturate_graph and parameters.alpha > 1:
            chosen = set(pruned)
            for candidate in ordered:
                if len(pruned) >= degree:
                    break
                if candidate.id not in chosen and candidate.id != location:
                    pruned.append(candidate.id)
                    chosen.add(candidate.id)
        return pruned

    def batch_inter_insert(
        self,
        n: int,
        pruned_list: Iterable[int],
        parameters: IndexParameters,
        need_to_sync: MutableSequence[bool],
    ) -> None:
        """Add back edges to ``n``; mark nodes whose degree exceeds the slack."""
        limit = int(parameters.max_degree * SLACK_FACTOR)
        for des in pruned_list:
            if des == n:
                continue
            neighbors = self.final_graph[des]
            if n not in neighbors:
                neighbors.append(n)
                if len(neighbors) > limit:
                    need_to_sync[des] = True

    def inter_insert(
        self,
        n: int,
        pruned_list: Iterable[int],
        parameters: IndexParameters,
        update_in_graph: bool = False,
    ) -> None:
        """Add back edges to ``n``, pruning a neighbor list once it is full."""
        slack = SLACK_FACTOR * parameters.max_degree
        for des in pruned_list:
            des_pool = self.final_graph[des]
            if n in des_pool:
                continue
            if len(des_pool) < slack:
                des_pool.append(n)
                if update_in_graph and des not in self.in_graph[n]:
                    self.in_graph[n].append(des)
                continue
            candidates = [*des_pool, n]
            new_out = self.prune_neighbors(des, self._candidate_pool(des, candidates), parameters)
            self.final_graph[des] = list(new_out)
            if update_in_graph:
                for new_nbr in new_out:
                    self.in_graph[new_nbr].append(des)

    def _candidate_pool(
        self, node: int, candidates: Iterable[int], seen: set[int] | None = None
    ) -> list[Neighbor]:
        seen = set() if seen is None else seen
        pool: list[Neighbor] = []
        for candidate in candidates:
            if candidate in seen or candidate == node:
                continue
            seen.add(candidate)
            pool.append(
                Neighbor(candidate, self.distance(self.data[node], self.data[candidate]), True)
            )
        return pool

    def _reprune(self, node: int, parameters: IndexParameters) -> None:
        pool = self._candidate_pool(node, self.final_graph[node])
        self.final_graph[node] = self.prune_neighbors(node, pool, parameters)

    def link(self, parameters: IndexParameters) -> None:
        """Build the graph in two passes of batched search, prune and back-linking."""
        num_syncs = max(MIN_SYNCS, math.ceil((self.nd + self.num_frozen_pts) / SYNC_BLOCK))
        _log(f"Number of syncs: {num_syncs}")
        self.saturate_graph = parameters.saturate_graph

        list_size = parameters.list_size
        degree = parameters.max_degree
        last_round_alpha = parameters.alpha
        params = replace(parameters, alpha=1.0)

        visit_order = list(range(self.nd))
        visit_order.extend(self.max_points + i for i in range(self.num_frozen_pts))

        self.ep = self.max_points if self.num_frozen_pts > 0 else self.calculate_entry_point()

        total = self.total_slots
        self.final_graph.extend([] for _ in range(total - len(self.final_graph)))
        if self.support_eager_delete:
            self.in_graph.extend([] for _ in range(total - len(self.in_graph)))

        init_ids = [self.ep]
        link_timer = Timer()
        for rnd_no in range(NUM_ROUNDS):
            if rnd_no == NUM_ROUNDS - 1 and last_round_alpha > 1:
                params = replace(params, alpha=last_round_alpha)

            round_size = math.ceil(self.nd / num_syncs)
            need_to_sync = [False] * total
            inter_count = 0

            for sync_num in range(num_syncs):
                start = sync_num * round_size
                end = min(len(visit_order), (sync_num + 1) * round_size)
                batch = visit_order[start:end]
                if not batch:
                    continue

                pruned_lists = []
                for node in batch:
                    result = self.get_expanded_nodes(node, list_size, init_ids)
                    pool = list(result.expanded)
                    visited = set(result.expanded_ids)
                    pool.extend(self._candidate_pool(node, self.final_graph[node], visited))
                    pruned_lists.append(self.prune_neighbors(node, pool, params))

                for node, pruned in zip(batch, pruned_lists):
                    self.final_graph[node] = list(pruned)

                for node, pruned in zip(batch, pruned_lists):
                    self.batch_inter_insert(node, pruned, params, need_to_sync)

                for node in visit_order:
                    if need_to_sync[node]:
                        need_to_sync[node] = False
                        inter_count += 1
                        self._reprune(node, params)

            _log(
                f"Completed Pass {rnd_no} of data using L={list_size} and "
                f"alpha={params.alpha}. Stats: inter_count={inter_count}"
            )

        for node in visit_order:
            if len(self.final_graph[node]) > degree:
                self._reprune(node, params)
        _log(f"done. Link time: {link_timer.elapsed() / 1_000_000}s")

    def build(self, parameters: IndexParameters, tags: Iterable[object] | None = None) -> None:
        """Build the graph over the loaded points, registering ``tags`` if enabled."""
        if self.enable_tags:
            tag_list = list(tags) if tags is not None else []
            if len(tag_list) != self.nd:
                _log("#Tags should be equal to #points", "cerr")
                raise ANNError("#Tags must be equal to #points")
            for location, tag in enumerate(tag_list):
                self.tag_to_location[tag] = location
                self.location_to_tag[location] = tag

        _log("Starting index build...")
        self.link(parameters)
        if self.support_eager_delete:
            self.update_in_graph()

        degrees = [len(self.final_graph[i]) for i in range(self.nd)]
        if degrees:
            max_degree = max(degrees)
            _log(
                f"Degree: max:{max_degree}  avg:{sum(degrees) / len(degrees)}  "
                f"min:{min(degrees)}  count(deg<2):{sum(1 for d in degrees if d < 2)}\n"
                "Index built."
            )
            self.width = max(max_degree, self.width)
        self.has_built = True

    def update_in_graph(self) -> None:
        """Rebuild the in-neighbor lists from the out-neighbor lists."""
        self.in_graph = [[] for _ in self.final_graph]
        for source, neighbors in enumerate(self.final_graph):
            for target in neighbors:
                if source in self.in_graph[target]:
                    _log("Duplicates found")
                self.in_graph[target].append(source)

        sizes = [len(nbrs) for nbrs in self.in_graph]
        others = [size for node, size in enumerate(sizes) if node != self.ep]
        count = self.nd + self.num_frozen_pts
        average = sum(sizes) / count if count else 0.0
        _log(
            f"Max in_degree = {max(sizes, default=0)}; "
            f"Min in_degree = {min(others, default=0)}; Average in_degree = {average}"
        )

    def _as_query(self, query: np.ndarray) -> np.ndarray:
        vector = np.asarray(query)
        if vector.shape != (self.dim,):
            raise ANNError(f"Query must have shape ({self.dim},), got {vector.shape}")
        return vector

    def search(
        self,
        query: np.ndarray,
        k: int,
        list_size: int,
        init_ids: Sequence[int] | None = None,
    ) -> tuple[list[int], list[float]]:
        """Return the ids and distances of the ``k`` nearest points found.

        For inner product the returned distances are the inner products.
        """
        if not self.final_graph:
            raise ANNError("Index has no graph to search")
        vector = self._as_query(query)
        starts = list(init_ids) if init_ids else [self.ep]
        result = iterate_to_fixed_point(
            self.data, self.final_graph, vector, list_size, starts, self.distance
        )
        best = result.best[:k]
        sign = -1.0 if self.metric is Metric.INNER_PRODUCT else 1.0
        return [n.id for n in best], [sign * n.distance for n in best]

    def search_with_tags(self, query: np.ndarray, k: int, list_size: int) -> list[object]:
        """Return the tags of the ``k`` nearest points found."""
        ids, _ = self.search(query, k, list_size)
        return [self.location_to_tag.get(location) for location in ids]

    def optimize_graph(self) -> None:
        """Pack vectors, norms and adjacency into a compact search layout."""
        if self.metric is not Metric.FAST_L2:
            raise ANNError("Optimized graph search requires the FAST_L2 metric")
        if len(self.final_graph) < self.nd:
            raise ANNError("Index has no graph to optimize")
        vectors = self.data[: self.nd].astype(np.float32)
        norms = np.einsum("ij,ij->i", vectors, vectors)
        neighbors = [list(self.final_graph[i]) for i in range(self.nd)]
        self._opt_graph = _OptimizedGraph(norms, vectors, neighbors)
        self.final_graph = []

    def search_with_opt_graph(self, query: np.ndarray, k: int, list_size: int) -> list[int]:
        """Search the optimized layout and return the ids of the ``k`` best points."""
        opt = self._opt_graph
        if opt is None:
            raise ANNError("Graph has not been optimized")
        nd = self.nd
        if not 0 < list_size <= nd:
            raise ANNError(f"Search list size must be between 1 and {nd}")
        if not 0 <= self.ep < nd:
            raise ANNError("Entry point is not part of the optimized graph")
        vector = self._as_query(query).astype(np.float32)

        def score(node: int) -> float:
            return float(opt.norms[node]) - 2.0 * float(np.dot(opt.vectors[node], vector))

        flags: set[int] = set()
        init: list[int] = []
        for node in opt.neighbors[self.ep][:list_size]:
            if node < nd and node not in flags:
                flags.add(node)
                init.append(node)
        while len(init) < list_size:
            node = self._rng.randrange(nd)
            if node in flags:
                continue
            flags.add(node)
            init.append(node)

        retset = sorted(Neighbor(node, score(node), True) for node in init)
        size = len(retset)
        pos = 0
        while pos < size:
            nk = size
            current = retset[pos]
            if current.flag:
                current.flag = False
                for node in opt.neighbors[current.id]:
                    if node >= nd or node in flags:
                        continue
                    flags.add(node)
                    dist = score(node)
                    if dist >= retset[size - 1].distance:
                        continue
                    r = insert_into_pool(retset, size, Neighbor(node, dist, True))
                    del retset[size:]
                    nk = min(nk, r)
            pos = nk if nk <= pos else pos + 1
        return [n.id for n in retset[:k]]