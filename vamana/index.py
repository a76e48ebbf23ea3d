"""Updatable graph index: persistence, insertion and deletion of points."""

from __future__ import annotations

import os
import struct
from typing import Iterable, Sequence

import numpy as np

from vamana.graph import GraphIndex, IndexParameters
from vamana.logger import get_stream
from vamana.search import ANNError, Neighbor

_HEADER = struct.Struct("<QII")
_COUNT = struct.Struct("<I")


def _log(message: str, name: str = "cout") -> None:
    stream = get_stream(name)
    stream.write(message + "\n")
    stream.flush()


def _fail(message: str) -> ANNError:
    _log(message, "cerr")
    return ANNError(message)


class Index(GraphIndex):
    """A graph index that can be saved, loaded and changed after it is built."""

    # Persistence

    def save(self, path: str | os.PathLike[str]) -> None:
        """Write the adjacency lists: a size/width/entry header, then each list."""
        with self.change_lock:
            if self.support_eager_delete and self.eager_done and not self.compacted_order:
                if self.nd < self.max_points:
                    new_location, active = self.get_new_location()
                    total = self.total_slots
                    for node, target in enumerate(new_location):
                        deleted = node in self.delete_set
                        if not deleted and target >= total:
                            _log(f"Wrong new_location assigned to  {node}")
                        elif deleted and target < total:
                            _log(f"Wrong location assigned to delete point  {node}")
                    self._compact(new_location, active)
                    self.compacted_order = True
                    self.update_in_graph()
                elif self.enable_tags and self.can_delete:
                    raise _fail("Disable deletes and consolidate index before saving.")
            if self.lazy_done and self.enable_tags:
                if self.can_delete or not self.consolidated_order:
                    raise _fail("Disable deletes and consolidate index before saving.")

            count = self.nd + self.num_frozen_pts
            if len(self.final_graph) < count:
                raise ANNError("Index has no graph to save")
            lists = self.final_graph[:count]
            body = b"".join(
                _COUNT.pack(len(nbrs)) + np.asarray(nbrs, dtype="<u4").tobytes() for nbrs in lists
            )
            index_size = _HEADER.size + len(body)
            with open(path, "wb") as out:
                out.write(_HEADER.pack(index_size, self.width, self.ep))
                out.write(body)

        edges = sum(len(nbrs) for nbrs in lists)
        _log(f"Avg degree: {edges / count if count else 0.0}")

    def load(
        self,
        path: str | os.PathLike[str],
        load_tags: bool = False,
        tag_path: str | os.PathLike[str] | None = None,
    ) -> None:
        """Read adjacency lists written by ``save`` and, optionally, a tag file."""
        try:
            with open(path, "rb") as handle:
                raw = handle.read()
        except OSError as exc:
            raise _fail(f"Cannot read index file {os.fspath(path)}: {exc}") from exc
        if len(raw) < _HEADER.size:
            raise _fail(f"Index file {os.fspath(path)} is too short")
        expected_size, width, ep = _HEADER.unpack_from(raw)
        if expected_size != len(raw):
            raise _fail(
                f"Index file size mismatch: header says {expected_size} bytes, "
                f"file has {len(raw)} bytes"
            )
        _log(f"Loading vamana index {os.fspath(path)}...")

        graph: list[list[int]] = []
        offset = _HEADER.size
        while offset + _COUNT.size <= len(raw):
            (k,) = _COUNT.unpack_from(raw, offset)
            offset += _COUNT.size
            end = offset + 4 * k
            if end > len(raw):
                raise _fail("Index file is truncated")
            graph.append(np.frombuffer(raw[offset:end], dtype="<u4").astype(int).tolist())
            offset = end

        if len(graph) != self.nd:
            raise _fail(
                f"ERROR. mismatch in number of points. Graph has {len(graph)} points "
                f"and loaded dataset has {self.nd} points."
            )
        self.width = width
        self.ep = ep
        graph.extend([] for _ in range(self.total_slots - len(graph)))
        self.final_graph = graph
        edges = sum(len(nbrs) for nbrs in graph)
        _log(f"..done. Index has {self.nd} nodes and {edges} out-edges")

        if load_tags:
            if not self.enable_tags:
                _log("Enabling tags.")
            self.enable_tags = True
            tag_file = tag_path if tag_path is not None else os.fspath(path) + ".tags"
            try:
                with open(tag_file, encoding="utf-8") as handle:
                    tags = [int(token) for token in handle.read().split()]
            except OSError as exc:
                raise _fail("Tag file not found.") from exc
            except ValueError as exc:
                raise _fail(f"Malformed tag file: {exc}") from exc
            if len(tags) != self.nd:
                raise _fail(f"Tag file holds {len(tags)} tags for {self.nd} points")
            self.location_to_tag = dict(enumerate(tags))
            self.tag_to_location = {tag: location for location, tag in enumerate(tags)}

    # Frozen points

    def generate_random_frozen_points(self, points: np.ndarray | None = None) -> None:
        """Fill the frozen slots from ``points``, or with uniform values in [0, 1)."""
        if self.has_built:
            raise _fail("Index already built. Cannot add more points")
        start = self.max_points
        if points is not None:
            frozen = np.asarray(points)
            if frozen.shape != (self.num_frozen_pts, self.dim):
                raise ANNError(
                    f"Frozen points must have shape ({self.num_frozen_pts}, {self.dim}), "
                    f"got {frozen.shape}"
                )
        else:
            frozen = np.random.default_rng().random((self.num_frozen_pts, self.dim), dtype=np.float32)
        self.data[start:start + self.num_frozen_pts] = frozen.astype(self.data.dtype)

    def readjust_data(self, num_frozen_pts: int) -> None:
        """Move frozen points stored right after the live points to their reserved slots."""
        if num_frozen_pts <= 0:
            _log("No frozen points. No re-adjustment required")
            return
        if self.final_graph[self.max_points]:
            return
        _log("Readjusting data to correctly position frozen point")
        nd, max_points = self.nd, self.max_points
        for node in range(nd):
            self.final_graph[node] = [
                max_points + (nbr - nd) if nbr >= nd else nbr for nbr in self.final_graph[node]
            ]
        for i in range(num_frozen_pts):
            self.final_graph[max_points + i].extend(self.final_graph[nd + i])
            self.final_graph[nd + i] = []

        if self.support_eager_delete:
            self.update_in_graph()

        _log("Finished updating graph, updating data now")
        for i in range(num_frozen_pts):
            self.data[max_points + i] = self.data[nd + i]
            self.data[nd + i] = 0
        _log("Readjustment done")

    # Deletion

    def enable_delete(self) -> None:
        """Allow points to be deleted; requires tags."""
        with self.change_lock:
            if self.can_delete:
                raise _fail("Delete already enabled")
            if not self.enable_tags:
                raise _fail("Tags must be instantiated for deletions")
            if self.consolidated_order and self.compacted_order:
                self.empty_slots = set(range(self.nd, self.max_points))
                self.consolidated_order = False
                self.compacted_order = False
            self.lazy_done = False
            self.eager_done = False
            self.can_delete = True

    def disable_delete(self, parameters: IndexParameters, consolidate: bool = False) -> None:
        """Stop accepting deletes, optionally consolidating the lazy deletes first."""
        with self.change_lock:
            if not self.can_delete:
                raise _fail("Delete not currently enabled")
            if not self.enable_tags:
                raise _fail("Point tag array not instantiated")
            pending = 0 if self.eager_done else len(self.delete_set)
            if self.eager_done:
                _log(f"#Points after eager_delete : {self.nd + self.num_frozen_pts}")
            if len(self.tag_to_location) + pending != self.nd:
                raise _fail("Tags to points array wrong sized")
            if len(self.location_to_tag) + pending != self.nd:
                raise _fail("Points to tags array wrong sized")
            if consolidate:
                remaining = self.consolidate_deletes(parameters)
                _log(f"#Points after consolidation: {remaining + self.num_frozen_pts}")
            self.can_delete = False

    def delete_point(self, tag: object) -> None:
        """Mark the point with ``tag`` as deleted; it is removed on consolidation."""
        if self.eager_done and not self.compacted_order:
            raise _fail(
                "Eager delete requests were issued but data was not compacted, "
                "cannot proceed with lazy_deletes"
            )
        with self.change_lock:
            location = self.tag_to_location.get(tag)
            if location is None:
                raise _fail("Delete tag not found")
            self.delete_set.add(location)
            del self.location_to_tag[location]
            del self.tag_to_location[tag]

    def eager_delete(self, tag: object, parameters: IndexParameters) -> None:
        """Remove the point with ``tag`` now, repairing its in-neighbors' lists."""
        if self.lazy_done and not self.consolidated_order:
            raise _fail(
                "Lazy delete requests issued but data not consolidated, "
                "cannot proceed with eager deletes."
            )
        if not self.support_eager_delete:
            raise ANNError("Index was not created with eager delete support")
        with self.change_lock:
            location = self.tag_to_location.get(tag)
            if location is None:
                raise _fail("Delete tag not found")
            del self.location_to_tag[location]
            del self.tag_to_location[tag]
            self.delete_set.add(location)
            self.empty_slots.add(location)

            for out_nbr in self.final_graph[location]:
                in_list = self.in_graph[out_nbr]
                if location in in_list:
                    in_list.remove(location)

            in_nbrs = set(self.in_graph[location])
            visited = self.get_expanded_nodes(location, parameters.list_size).expanded_ids

            for in_nbr in in_nbrs:
                self.final_graph[in_nbr] = [n for n in self.final_graph[in_nbr] if n != location]

            for ngh in visited:
                if ngh not in in_nbrs:
                    continue
                candidates = dict.fromkeys(
                    j
                    for j in (*self.final_graph[location], *self.final_graph[ngh])
                    if j != location and j != ngh and j not in self.delete_set
                )
                pool = sorted(
                    Neighbor(j, self.distance(self.data[ngh], self.data[j]), True) for j in candidates
                )
                result = self.occlude_list(
                    pool, parameters.alpha, parameters.max_degree, parameters.max_candidates
                )
                for old in self.final_graph[ngh]:
                    self.in_graph[old] = [n for n in self.in_graph[old] if n != ngh]
                self.final_graph[ngh] = [n.id for n in result if n.id not in self.delete_set]
                for n in result:
                    if ngh not in self.in_graph[n.id]:
                        self.in_graph[n.id].append(ngh)

            self.final_graph[location] = []
            self.nd -= 1
            self.eager_done = True

    def consolidate_deletes(self, parameters: IndexParameters) -> int:
        """Drop lazily deleted points, rewire their neighbors and compact; return live count."""
        if self.eager_done:
            _log("No consolidation required, eager deletes done")
            return 0
        with self.change_lock:
            if len(self.delete_set) > self.nd:
                raise ANNError("More points marked deleted than the index holds")
            total = self.total_slots
            new_location, active = self.get_new_location()

            for node in range(total):
                if new_location[node] >= total:
                    self.final_graph[node] = []
                    continue
                candidates: dict[int, None] = {}
                modify = False
                for ngh in self.final_graph[node]:
                    if new_location[ngh] >= total:
                        modify = True
                        for j in self.final_graph[ngh]:
                            if j not in self.delete_set:
                                candidates[j] = None
                    else:
                        candidates[ngh] = None
                if not modify:
                    continue
                pool = sorted(
                    Neighbor(j, self.distance(self.data[node], self.data[j]), True) for j in candidates
                )
                result = self.occlude_list(
                    pool, parameters.alpha, parameters.max_degree, parameters.max_candidates
                )
                self.final_graph[node] = [n.id for n in result if n.id != node]

            if self.support_eager_delete:
                self.update_in_graph()

            self.nd -= len(self.delete_set)
            self.compact_data(new_location, active)
            return self.nd

    def get_new_location(self) -> tuple[list[int], int]:
        """Map each live slot to its compacted position; dead slots map past the end."""
        total = self.total_slots
        new_location = [total] * total
        active = 0
        for old in range(total):
            if old not in self.empty_slots and old not in self.delete_set:
                new_location[old] = active
                active += 1
        return new_location, active

    def compact_data(self, new_location: Sequence[int], active: int) -> None:
        """Renumber nodes by ``new_location``, moving vectors, lists and tags."""
        self._compact(new_location, active)
        self.consolidated_order = True

    def _compact(self, new_location: Sequence[int], active: int) -> None:
        if self.ep in self.delete_set:
            _log("Replacing start node which has been deleted... ", "cerr")
            replacement = next(
                (n for n in self.final_graph[self.ep] if n not in self.delete_set), None
            )
            if replacement is None:
                raise _fail("ERROR: Did not find a replacement for start node.")
            self.ep = replacement
            _log(f"New start node is {self.ep}")

        _log(f"Re-numbering nodes and edges and consolidating data... active = {active}")
        total = self.total_slots
        for old in range(total):
            new = new_location[old]
            if new >= total:
                continue
            self.final_graph[old] = [new_location[n] for n in self.final_graph[old]]
            if self.support_eager_delete:
                self.in_graph[old] = [
                    new_location[n] if new_location[n] <= n else n for n in self.in_graph[old]
                ]
            if new != old:
                graph = self.final_graph
                graph[new], graph[old] = graph[old], graph[new]
                if self.support_eager_delete:
                    ins = self.in_graph
                    ins[new], ins[old] = ins[old], ins[new]
                self.data[new] = self.data[old]

        if self.ep < total and new_location[self.ep] < total:
            self.ep = new_location[self.ep]

        self.tag_to_location = {
            tag: new_location[location] for location, tag in self.location_to_tag.items()
        }
        self.location_to_tag = {location: tag for tag, location in self.tag_to_location.items()}

        for old in range(active, total):
            self.final_graph[old] = []
        self.delete_set.clear()
        self.empty_slots.clear()
        _log("Consolidated the index")

    # Insertion

    def reserve_location(self) -> int:
        """Claim a free slot for a new point and return it."""
        if self.nd >= self.max_points:
            raise ANNError(f"Can not insert, reached maximum({self.max_points}) points.")
        if self.consolidated_order or self.compacted_order:
            location = self.nd
        else:
            if not self.empty_slots:
                raise ANNError("No empty slot is available")
            location = min(self.empty_slots)
            self.empty_slots.discard(location)
            self.delete_set.discard(location)
        self.nd += 1
        return location

    def insert_point(self, point: Iterable[float], parameters: IndexParameters, tag: object) -> int:
        """Add ``point`` under ``tag`` and link it into the graph; return its slot."""
        with self.change_lock:
            if self.enable_tags and tag in self.tag_to_location:
                raise _fail(f"Entry with the tag {tag} exists already")
            if self.nd == self.max_points:
                raise _fail(f"Can not insert, reached maximum({self.max_points}) points.")
            vector = np.asarray(point)
            if vector.shape != (self.dim,):
                raise ANNError(f"Point must have shape ({self.dim},), got {vector.shape}")

            location = self.reserve_location()
            self.tag_to_location[tag] = location
            self.location_to_tag[location] = tag
            self.data[location] = vector.astype(self.data.dtype)

            result = self.get_expanded_nodes(location, parameters.list_size)
            pool = [n for n in result.expanded if n.id != location]
            pruned = self.prune_neighbors(location, pool, parameters)

            if self.support_eager_delete:
                for old in self.final_graph[location]:
                    self.in_graph[old] = [n for n in self.in_graph[old] if n != location]
            self.final_graph[location] = list(pruned)
            if self.support_eager_delete:
                for link in pruned:
                    if location not in self.in_graph[link]:
                        self.in_graph[link].append(location)

            self.inter_insert(location, pruned, parameters, self.support_eager_delete)
            return location