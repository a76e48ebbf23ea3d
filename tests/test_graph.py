import numpy as np
import pytest

from vamana.graph import GraphIndex, IndexParameters
from vamana.search import ANNError, Metric, Neighbor


def _params(**overrides):
    values = dict(max_degree=8, list_size=20, max_candidates=100, alpha=1.2)
    values.update(overrides)
    return IndexParameters(**values)


@pytest.fixture
def points():
    return np.random.default_rng(7).random((60, 4), dtype=np.float32)


def _brute_l2(points, query, k):
    dists = ((points.astype(np.float64) - query) ** 2).sum(axis=1)
    return list(np.argsort(dists)[:k])


def test_parameters_reject_zero_degree():
    with pytest.raises(ValueError):
        IndexParameters(max_degree=0, list_size=10, max_candidates=10, alpha=1.0)


def test_rejects_one_dimensional_data():
    with pytest.raises(ANNError):
        GraphIndex(Metric.L2, np.zeros(5, dtype=np.float32))


def test_rejects_more_points_than_available(points):
    with pytest.raises(ANNError):
        GraphIndex(Metric.L2, points, num_points=100)


def test_num_points_truncates_data(points):
    index = GraphIndex(Metric.L2, points, num_points=10)
    assert index.nd == 10
    assert index.max_points == 10


def test_rejects_max_points_below_data_size(points):
    with pytest.raises(ANNError):
        GraphIndex(Metric.L2, points, max_points=5)


def test_rejects_unsupported_metric(points):
    with pytest.raises(ANNError):
        GraphIndex(Metric.COSINE, points)


def test_entry_point_is_closest_to_centroid():
    data = np.array([[0, 0], [2, 0], [0, 2], [2, 2], [1, 1]], dtype=np.float32)
    index = GraphIndex(Metric.L2, data)
    assert index.calculate_entry_point() == 4


def test_build_respects_degree_bound(points):
    index = GraphIndex(Metric.L2, points)
    params = _params()
    index.build(params)
    assert index.has_built
    assert len(index.final_graph) == 60
    for node, neighbors in enumerate(index.final_graph):
        assert len(neighbors) <= params.max_degree
        assert node not in neighbors
        assert all(0 <= n < 60 for n in neighbors)
    assert index.width >= max(len(n) for n in index.final_graph)
    assert index.ep == index.calculate_entry_point()


def test_build_rejects_wrong_tag_count(points):
    index = GraphIndex(Metric.L2, points, enable_tags=True)
    with pytest.raises(ANNError):
        index.build(_params(), tags=[1, 2, 3])


def test_search_matches_brute_force(points):
    index = GraphIndex(Metric.L2, points)
    index.build(_params())
    query = points[11] + np.float32(0.01)
    ids, dists = index.search(query, 5, 60)
    assert ids == _brute_l2(points, query, 5)
    assert dists == sorted(dists)


def test_search_finds_point_itself(points):
    index = GraphIndex(Metric.L2, points)
    index.build(_params())
    ids, dists = index.search(points[23], 1, 60)
    assert ids == [23]
    assert dists[0] == pytest.approx(0.0)


def test_search_rejects_wrong_query_shape(points):
    index = GraphIndex(Metric.L2, points)
    index.build(_params())
    with pytest.raises(ANNError):
        index.search(np.zeros(3, dtype=np.float32), 1, 10)


def test_search_with_tags(points):
    tags = [1000 + i for i in range(60)]
    index = GraphIndex(Metric.L2, points, enable_tags=True)
    index.build(_params(), tags=tags)
    query = points[40]
    expected = [tags[i] for i in _brute_l2(points, query, 3)]
    assert index.search_with_tags(query, 3, 60) == expected


def test_inner_product_search_returns_products(points):
    index = GraphIndex(Metric.INNER_PRODUCT, points)
    index.build(_params())
    query = points[3]
    ids, dists = index.search(query, 5, 60)
    products = points.astype(np.float64) @ query.astype(np.float64)
    assert ids == list(np.argsort(-products)[:5])
    assert np.allclose(dists, products[ids], atol=1e-5)
    assert dists == sorted(dists, reverse=True)


def test_int8_data_build_and_search():
    data = np.random.default_rng(3).integers(-100, 100, size=(40, 6)).astype(np.int8)
    index = GraphIndex(Metric.L2, data)
    index.build(_params())
    ids, dists = index.search(data[17], 1, 40)
    assert ids == [17]
    assert dists == [0.0]


def test_frozen_point_becomes_entry_point(points):
    index = GraphIndex(Metric.L2, points, max_points=70, num_frozen_pts=1)
    index.build(_params())
    assert index.ep == 70
    assert len(index.final_graph) == 71
    assert all(index.final_graph[i] == [] for i in range(60, 70))
    assert index.final_graph[70]


def test_update_in_graph_mirrors_out_edges(points):
    index = GraphIndex(Metric.L2, points, support_eager_delete=True)
    index.build(_params())
    for source, neighbors in enumerate(index.final_graph):
        for target in neighbors:
            assert source in index.in_graph[target]
    total_in = sum(len(n) for n in index.in_graph)
    total_out = sum(len(n) for n in index.final_graph)
    assert total_in == total_out


def test_get_expanded_nodes_starts_from_entry_point(points):
    index = GraphIndex(Metric.L2, points)
    index.build(_params())
    result = index.get_expanded_nodes(5, 20)
    assert index.ep in result.expanded_ids
    distances = [n.distance for n in result.best]
    assert distances == sorted(distances)


def test_occlude_list_with_alpha_below_one_selects_nothing(points):
    index = GraphIndex(Metric.L2, points)
    pool = [Neighbor(1, 0.1), Neighbor(2, 0.2)]
    assert index.occlude_list(pool, 0.5, 4, 10) == []


def test_prune_neighbors_excludes_location(points):
    index = GraphIndex(Metric.L2, points)
    location = 0
    pool = [
        Neighbor(i, index.distance(points[location], points[i]))
        for i in range(0, 30)
    ]
    params = _params(max_degree=5)
    pruned = index.prune_neighbors(location, pool, params)
    assert location not in pruned
    assert 0 < len(pruned) <= 5
    assert len(set(pruned)) == len(pruned)
    assert index.width == 5


def test_prune_neighbors_empty_pool(points):
    index = GraphIndex(Metric.L2, points)
    assert index.prune_neighbors(0, [], _params()) == []


def test_batch_inter_insert_marks_overfull_nodes(points):
    index = GraphIndex(Metric.L2, points[:5])
    index.final_graph = [[] for _ in range(5)]
    need = [False] * 5
    params = _params(max_degree=1)
    index.batch_inter_insert(0, [1, 2, 0], params, need)
    assert index.final_graph[1] == [0]
    assert index.final_graph[2] == [0]
    assert index.final_graph[0] == []
    assert need == [False] * 5
    index.batch_inter_insert(3, [1], params, need)
    assert index.final_graph[1] == [0, 3]
    assert need[1] is True


def test_inter_insert_adds_back_edges(points):
    index = GraphIndex(Metric.L2, points[:5])
    index.final_graph = [[] for _ in range(5)]
    index.in_graph = [[] for _ in range(5)]
    index.inter_insert(0, [1, 2], _params(max_degree=4), True)
    assert index.final_graph[1] == [0]
    assert index.final_graph[2] == [0]
    assert index.in_graph[0] == [1, 2]


def test_inter_insert_prunes_full_list(points):
    data = points[:5]
    index = GraphIndex(Metric.L2, data)
    index.final_graph = [[] for _ in range(5)]
    index.final_graph[1] = [2, 0]
    index.inter_insert(3, [1], _params(max_degree=1), False)
    candidates = [2, 0, 3]
    dists = [float(((data[1] - data[c]) ** 2).sum()) for c in candidates]
    assert index.final_graph[1] == [candidates[int(np.argmin(dists))]]


def test_optimize_requires_fast_l2(points):
    index = GraphIndex(Metric.L2, points)
    index.build(_params())
    with pytest.raises(ANNError):
        index.optimize_graph()


def test_opt_graph_search_requires_optimize(points):
    index = GraphIndex(Metric.FAST_L2, points)
    index.build(_params())
    with pytest.raises(ANNError):
        index.search_with_opt_graph(points[0], 1, 10)


def test_opt_graph_search_matches_brute_force(points):
    index = GraphIndex(Metric.FAST_L2, points)
    index.build(_params())
    index.optimize_graph()
    assert index.final_graph == []
    query = points[5] + np.float32(0.02)
    assert index.search_with_opt_graph(query, 3, 60) == _brute_l2(points, query, 3)


def test_opt_graph_search_rejects_oversized_list(points):
    index = GraphIndex(Metric.FAST_L2, points)
    index.build(_params())
    index.optimize_graph()
    with pytest.raises(ANNError):
        index.search_with_opt_graph(points[0], 1, 61)