import matplotlib
matplotlib.use("Agg")

import numpy as np
import pytest

from scpinstance import (
    InvalidInstance,
    SCPInstance,
    load_instance,
    random_scp_instance,
    read_scp_file,
    write_scp_file,
)

# rows {0,1} and {1,2}, unit costs
TOY_FILE = """ 2 3
 1 1 1
 2
 1 2
 2
 2 3
"""


def toy_instance():
    return load_instance(2, 3, [1, 1, 1], [[0, 1], [1, 2]])


def test_both_directions_are_built():
    inst = toy_instance()
    assert inst.num_rows == 2 and inst.num_cols == 3
    assert inst.num_nonzero == 4
    assert list(inst.cols_of_row(0)) == [0, 1]
    assert list(inst.cols_of_row(1)) == [1, 2]
    assert list(inst.rows_of_col(0)) == [0]
    assert list(inst.rows_of_col(1)) == [0, 1]
    assert list(inst.rows_of_col(2)) == [1]
    assert list(inst.col_sizes) == [1, 2, 1]
    assert list(inst.row_sizes) == [2, 2]
    assert list(inst.row_ptr) == [0, 2, 4]
    assert list(inst.col_ptr) == [0, 1, 3, 4]


def test_row_and_column_views_agree():
    inst = random_scp_instance(30, 60, 0.1, seed=3)
    pairs_by_row = {(i, int(j)) for i in range(inst.num_rows) for j in inst.cols_of_row(i)}
    pairs_by_col = {(int(i), j) for j in range(inst.num_cols) for i in inst.rows_of_col(j)}
    assert pairs_by_row == pairs_by_col
    assert len(pairs_by_row) == inst.num_nonzero


def test_duplicate_incidences_collapse():
    inst = load_instance(1, 2, [1, 1], [[0, 0, 1]])
    assert inst.num_nonzero == 2
    assert list(inst.col_sizes) == [1, 1]


def test_instance_is_read_only():
    inst = toy_instance()
    with pytest.raises(ValueError):
        inst.costs[0] = 5
    with pytest.raises(ValueError):
        inst.row_cols[0] = 2
    assert list(inst.cover_matrix.indices) == [0, 1, 1, 2]


@pytest.mark.parametrize("args, match", [
    ((0, 3, [1, 1, 1], []), "positive"),
    ((2, 0, [], [[0], [0]]), "positive"),
    ((2, 3, [1, 1], [[0], [1]]), "3 column costs"),
    ((2, 3, [1, -1, 1], [[0], [1]]), "non-negative"),
    ((2, 3, [1, 1.5, 1], [[0], [1]]), "integers"),
    ((2, 3, [1, 1, 1], [[0]]), "2 rows"),
    ((2, 3, [1, 1, 1], [[0], [3]]), "out of range"),
    ((2, 3, [1, 1, 1], [[0], [-1]]), "out of range"),
    ((2, 3, [1, 1, 1], [[0], []]), "not covered"),
])
def test_malformed_instances_are_rejected(args, match):
    with pytest.raises(InvalidInstance, match=match):
        load_instance(*args)


def test_integral_float_costs_are_accepted():
    inst = load_instance(1, 2, [2.0, 3.0], [[0, 1]])
    assert inst.costs.dtype == np.int64
    assert list(inst.costs) == [2, 3]


def test_read_scp_file(tmp_path):
    path = tmp_path / "toy.txt"
    path.write_text(TOY_FILE)
    inst = read_scp_file(str(path))
    assert isinstance(inst, SCPInstance)
    assert list(inst.costs) == [1, 1, 1]
    assert list(inst.cols_of_row(0)) == [0, 1]
    assert list(inst.cols_of_row(1)) == [1, 2]


def test_read_scp_file_tokens_may_span_lines(tmp_path):
    path = tmp_path / "split.txt"
    path.write_text("2\n3 4 5\n6\n2 1\n3 3 1 2 3\n")
    inst = read_scp_file(str(path))
    assert list(inst.costs) == [4, 5, 6]
    assert list(inst.cols_of_row(0)) == [0, 2]
    assert list(inst.cols_of_row(1)) == [0, 1, 2]


@pytest.mark.parametrize("text", [
    "2 3\n1 1 1\n2\n1 2\n",        # second row missing
    "2 3\n1 1\n",                   # costs truncated
    "2 3\n1 1 1\n2\n1 4\n1\n2\n",   # column 4 does not exist
    "2 3\n1 1 1\n2\n0 1\n1\n2\n",   # columns are 1-based
    "2 x\n1 1 1\n",                 # not an integer
    "0 3\n",                        # bad dimensions
])
def test_read_scp_file_rejects_bad_format(tmp_path, text):
    path = tmp_path / "bad.txt"
    path.write_text(text)
    with pytest.raises(InvalidInstance, match="wrong SCP file format"):
        read_scp_file(str(path))


def test_read_scp_file_missing_file(tmp_path):
    with pytest.raises(OSError):
        read_scp_file(str(tmp_path / "nope.txt"))


def test_written_file_reads_back(tmp_path):
    inst = random_scp_instance(25, 40, 0.15, seed=11)
    path = write_scp_file(inst, str(tmp_path / "rnd.txt"))
    again = read_scp_file(path)
    assert np.array_equal(again.costs, inst.costs)
    assert np.array_equal(again.row_ptr, inst.row_ptr)
    assert np.array_equal(again.row_cols, inst.row_cols)
    assert all(len(line.split()) <= 12 for line in open(path))


def test_random_instance_is_feasible_and_seeded():
    a = random_scp_instance(40, 30, 0.02, max_cost=9, seed=7)
    b = random_scp_instance(40, 30, 0.02, max_cost=9, seed=7)
    assert np.all(a.row_sizes >= 1)
    assert np.array_equal(a.costs, b.costs)
    assert np.array_equal(a.row_cols, b.row_cols)
    assert a.costs.min() >= 1 and a.costs.max() <= 9


def test_random_instance_rejects_bad_density():
    with pytest.raises(ValueError):
        random_scp_instance(5, 5, 1.5)


def test_bipartite_graph_view():
    inst = toy_instance()
    graph = inst.to_graph()
    assert graph.number_of_nodes() == 5
    assert graph.number_of_edges() == inst.num_nonzero
    assert graph.has_edge(("r", 0), ("c", 1))
    assert graph.nodes[("c", 2)]["cost"] == 1
    assert inst.density == pytest.approx(4 / 6)


def test_plot_writes_png(tmp_path):
    path = toy_instance().plot(str(tmp_path / "toy.png"))
    assert (tmp_path / "toy.png").stat().st_size > 0
    assert path.endswith("toy.png")
