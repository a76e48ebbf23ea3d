"""Greedy graph search primitives: distances, candidate pools and pruning."""

from __future__ import annotations

import bisect
import enum
from dataclasses import dataclass, field
from typing import Callable, Iterable, MutableSequence, Sequence

import numpy as np

from vamana.logger import get_stream

FLOAT_MAX = float(np.finfo(np.float32).max)

Vector = np.ndarray
DistanceFn = Callable[[Vector, Vector], float]


class ANNError(Exception):
    """Raised when an index operation cannot be carried out."""


class Metric(enum.Enum):
    """Distance metrics an index may be built with."""

    L2 = "l2"
    INNER_PRODUCT = "inner_product"
    FAST_L2 = "fast_l2"
    COSINE = "cosine"


@dataclass
class Neighbor:
    """A candidate point with its distance to the query and an unexpanded flag."""

    id: int
    distance: float
    flag: bool = True

    def __lt__(self, other: Neighbor) -> bool:
        return self.distance < other.distance


@dataclass
class SearchResult:
    """Outcome of a greedy search over the graph."""

    best: list[Neighbor] = field(default_factory=list)
    expanded: list[Neighbor] = field(default_factory=list)
    expanded_ids: set[int] = field(default_factory=set)
    hops: int = 0
    cmps: int = 0


def _f32(value: float) -> float:
    return float(np.float32(value))


class _L2Distance:
    """Squared Euclidean distance."""

    metric = Metric.L2

    def __init__(self, integer_data: bool = False) -> None:
        self.integer_data = integer_data

    def __call__(self, a: Vector, b: Vector) -> float:
        if self.integer_data:
            diff = np.asarray(a, dtype=np.int64) - np.asarray(b, dtype=np.int64)
            return float(np.dot(diff, diff))
        diff = np.asarray(a, dtype=np.float32) - np.asarray(b, dtype=np.float32)
        return float(np.dot(diff, diff))


class _InnerProductDistance:
    """Negated inner product, so that smaller means more similar."""

    metric = Metric.INNER_PRODUCT

    def __call__(self, a: Vector, b: Vector) -> float:
        return -float(np.dot(np.asarray(a, dtype=np.float32), np.asarray(b, dtype=np.float32)))


class _FastL2Distance(_L2Distance):
    """Squared Euclidean distance that can reuse a precomputed point norm."""

    metric = Metric.FAST_L2

    def __init__(self) -> None:
        super().__init__(integer_data=False)

    @staticmethod
    def norm(vector: Vector) -> float:
        """Return the squared norm of ``vector``."""
        v = np.asarray(vector, dtype=np.float32)
        return float(np.dot(v, v))

    @staticmethod
    def compare_with_norm(point: Vector, query: Vector, norm: float) -> float:
        """Return ``norm - 2 <point, query>``: L2 distance less the query's norm."""
        dot = float(np.dot(np.asarray(point, dtype=np.float32), np.asarray(query, dtype=np.float32)))
        return norm - 2.0 * dot


def _unsupported_metric() -> ANNError:
    message = "Only L2 metric supported as of now."
    stream = get_stream("cerr")
    stream.write(message + "\n")
    stream.flush()
    return ANNError(message)


def distance_function(metric: Metric, dtype: object = np.float32) -> DistanceFn:
    """Return the distance callable for ``metric`` over data of ``dtype``."""
    try:
        kind = np.dtype(dtype)
    except TypeError as exc:
        raise ANNError(f"Unsupported data type: {dtype!r}") from exc
    if kind.kind == "f":
        if metric is Metric.FAST_L2:
            return _FastL2Distance()
        if metric is Metric.L2:
            return _L2Distance()
        if metric is Metric.INNER_PRODUCT:
            return _InnerProductDistance()
        raise _unsupported_metric()
    if kind in (np.dtype(np.int8), np.dtype(np.uint8)):
        if metric is Metric.L2:
            return _L2Distance(integer_data=True)
        raise _unsupported_metric()
    raise ANNError(f"Unsupported data type: {kind}")


def insert_into_pool(pool: MutableSequence[Neighbor], size: int, neighbor: Neighbor) -> int:
    """Insert ``neighbor`` into the sorted first ``size`` entries of ``pool``.

    Entries past ``size`` are dropped. Returns the position of the new entry,
    or ``size + 1`` if a neighbor with the same id is already present.
    """
    if size < 0 or size > len(pool):
        raise ValueError(f"size {size} out of range for a pool of {len(pool)}")
    del pool[size:]
    if any(item.id == neighbor.id for item in pool):
        return size + 1
    position = bisect.bisect_right(pool, neighbor.distance, key=lambda item: item.distance)
    pool.insert(position, neighbor)
    return position


def iterate_to_fixed_point(
    data: np.ndarray,
    graph: Sequence[Sequence[int]],
    query: Vector,
    list_size: int,
    init_ids: Iterable[int],
    distance: DistanceFn,
) -> SearchResult:
    """Greedily expand the closest unexpanded candidates until none remain."""
    if list_size < 1:
        raise ANNError("Search list size must be at least 1")
    num_points = len(data)
    result = SearchResult()
    best = result.best
    inserted: set[int] = set()

    for node_id in init_ids:
        if not 0 <= node_id < num_points:
            raise ANNError(f"Initial id {node_id} is outside the data ({num_points} points)")
        if node_id not in inserted:
            inserted.add(node_id)
            best.append(Neighbor(node_id, distance(data[node_id], query), True))
        if len(best) == list_size:
            break

    best.sort()
    k = 0
    while k < len(best):
        nk = len(best)
        current = best[k]
        if current.flag:
            current.flag = False
            result.expanded.append(Neighbor(current.id, current.distance, False))
            result.expanded_ids.add(current.id)
            for node_id in graph[current.id]:
                if node_id in inserted:
                    continue
                inserted.add(node_id)
                result.cmps += 1
                dist = distance(query, data[node_id])
                if len(best) == list_size and dist >= best[-1].distance:
                    continue
                position = insert_into_pool(best, len(best), Neighbor(node_id, dist, True))
                del best[list_size:]
                nk = min(nk, position)
            k = nk if nk <= k else k + 1
        else:
            k += 1
    return result


def _ratio(numerator: float, denominator: float) -> float:
    if denominator != 0:
        return numerator / denominator
    if numerator == 0:
        return float("nan")
    return float("inf") if numerator > 0 else float("-inf")


def occlude_list(
    pool: Sequence[Neighbor],
    data: np.ndarray,
    metric: Metric,
    distance: DistanceFn,
    alpha: float,
    degree: int,
    maxc: int,
    occlude_factor: list[float] | None = None,
) -> list[Neighbor]:
    """Select up to ``degree`` diverse neighbors from a pool sorted by distance.

    ``occlude_factor`` holds one factor per pool entry and is updated in place.
    """
    result: list[Neighbor] = []
    if not pool:
        return result
    if any(later < earlier for earlier, later in zip(pool, pool[1:])):
        raise ValueError("pool must be sorted by distance")
    if occlude_factor is None:
        occlude_factor = [0.0] * len(pool)
    elif len(occlude_factor) < len(pool):
        raise ValueError("occlude_factor must hold one entry per pool element")

    alpha = _f32(alpha)
    limit = min(len(pool), maxc)
    cur_alpha = 1.0
    while cur_alpha <= alpha and len(result) < degree:
        eps = _f32(cur_alpha + 0.01)
        start = 0
        while len(result) < degree and start < limit:
            chosen = pool[start]
            if occlude_factor[start] > cur_alpha:
                start += 1
                continue
            occlude_factor[start] = FLOAT_MAX
            result.append(chosen)
            for t in range(start + 1, limit):
                if occlude_factor[t] > alpha:
                    continue
                candidate = pool[t]
                djk = distance(data[candidate.id], data[chosen.id])
                if metric is Metric.L2:
                    ratio = _ratio(candidate.distance, djk)
                    if occlude_factor[t] < ratio:
                        occlude_factor[t] = ratio
                elif metric is Metric.INNER_PRODUCT:
                    x = -candidate.distance
                    y = -djk
                    if y > cur_alpha * x:
                        occlude_factor[t] = max(occlude_factor[t], eps)
            start += 1
        cur_alpha = _f32(cur_alpha * 1.2)
    return result