# vamana

An in-memory, graph-based approximate nearest neighbour index over
`numpy` vectors. A proximity graph is built over the points in two
passes and queried with a best-first beam search. After building, points
can be inserted, deleted lazily or eagerly, and the index consolidated.
The graph can be saved to and loaded from a binary file.

## Installation

```
pip install .
```

## Building and searching

```python
import numpy as np
from vamana.graph import GraphIndex, IndexParameters
from vamana.search import Metric

data = np.random.default_rng(0).random((1000, 16), dtype=np.float32)

index = GraphIndex(Metric.L2, data)
params = IndexParameters(max_degree=32, list_size=50, max_candidates=500, alpha=1.2)
index.build(params)

ids, distances = index.search(data[0], 10, 50)
```

`GraphIndex(metric, data, max_points=0, num_points=0, num_frozen_pts=0,
enable_tags=False, store_data=True, support_eager_delete=False)` copies
the rows of a two-dimensional array. `num_points` keeps only the first
rows; `max_points` reserves room for later inserts (it defaults to the
number of points and may not be smaller).

`IndexParameters` holds the settings:

- `max_degree` – the bound on each node's out-degree,
- `list_size` – the size of the search list used while building and updating,
- `max_candidates` – how many pool entries are considered while pruning,
- `alpha` – how strongly neighbours are pruned (the first pass uses 1.0,
  the second this value when it is above 1),
- `num_threads` – accepted and validated; building runs in one thread,
- `saturate_graph` – fill pruned lists up to `max_degree` when `alpha > 1`.

Metrics (`vamana.search.Metric`):

- `L2` – squared Euclidean distance, for `float`, `int8` and `uint8` data,
- `INNER_PRODUCT` – for floating-point data; `search` returns the inner
  products as distances,
- `FAST_L2` – squared Euclidean distance that also allows
  `optimize_graph()` followed by `search_with_opt_graph(query, k, list_size)`.

`COSINE` is listed but not supported: asking for it raises
`vamana.search.ANNError`.

`search(query, k, list_size, init_ids=None)` returns a pair of lists,
ids and distances, of at most `k` points. With `enable_tags=True`,
`build(params, tags)` takes one tag per point and
`search_with_tags(query, k, list_size)` returns tags instead of ids.

## Updates and persistence

`vamana.index.Index` extends `GraphIndex`:

```python
from vamana.index import Index

index = Index(Metric.L2, data, max_points=1200, enable_tags=True)
index.build(params, tags=range(1000))

index.insert_point(np.zeros(16, dtype=np.float32), params, tag=1000)

index.enable_delete()
index.delete_point(5)
index.disable_delete(params, consolidate=True)

index.save("graph.bin")
```

- `insert_point(point, parameters, tag)` stores the vector, links it into
  the graph and returns its slot.
- `enable_delete()` requires tags. `delete_point(tag)` marks a point
  for removal; `disable_delete(parameters, consolidate=True)` runs
  `consolidate_deletes`, which rewires neighbours and compacts slots.
- `eager_delete(tag, parameters)` removes a point at once and repairs
  its neighbours; it needs an index created with
  `support_eager_delete=True`.
- Frozen points: `generate_random_frozen_points(points=None)` fills the
  `num_frozen_pts` reserved slots before building, from an array or with
  uniform values in [0, 1).

Failures raise `vamana.search.ANNError`.

`save(path)` writes the graph only:

- a 64-bit little-endian file size,
- the maximum degree (32-bit),
- the entry point (32-bit),
- one adjacency list per node, each a 32-bit count followed by 32-bit ids.

`load(path, load_tags=False, tag_path=None)` reads such a file into an
index built from the same vectors; the number of lists must match the
number of points. With `load_tags=True` it reads whitespace-separated
integer tags, one per point, from `tag_path` or `path + ".tags"`.

## What this package does not do

- It does not store vectors on disk or read them from files: vectors are
  passed in as `numpy` arrays, and `save` writes only the graph.
  `save` does not write a tag file either.
- There is no command-line tool; the package is used as a library.
- Building and search run in a single thread.

## Utilities

- `vamana.timer.Timer` measures elapsed whole microseconds
  (`elapsed()`, `reset()`).
- `vamana.logger.get_stream("cout")` / `get_stream("cerr")` return
  shared, buffered, write-only `LogStream` objects over standard output
  and standard error. The index reports its progress through them.
- `vamana.aligned_reader.AlignedFileReader` serves batches of
  `AlignedRead(offset, length, buf)` requests from a file. Each thread
  calls `register_thread()` and passes `get_ctx()` to
  `read(requests, ctx)`; errors raise `ReaderError`. It works as a
  context manager that closes the file.

## Tests

```
pip install .[test]
pytest
```