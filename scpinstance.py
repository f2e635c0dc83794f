import logging
import random

import networkx as nx
import numpy as np
import scipy.sparse as sp

logger = logging.getLogger(__name__)

MAX_COLUMN_COST = 100
TOKENS_PER_LINE = 12


class InvalidInstance(ValueError):
    """Raised when the covering data is structurally inconsistent."""


class ResourceExhausted(RuntimeError):
    """Raised when the sparse structure or a driver buffer cannot be allocated."""


class SCPInstance:
    """
    Represents an instance of the set-covering problem (SCP).
    Rows are the elements to cover, columns are the candidate sets, and each column has a
    non-negative integer cost.
    The 0/1 incidence matrix A (A[i, j] = 1 iff column j covers row i) is stored twice:
    - row-major (CSR): row_ptr / row_cols give the columns covering each row
    - column-major (CSC): col_ptr / col_rows give the rows covered by each column
    Both are built once here. Dual updates walk the rows, reduced costs walk the columns.
    The instance is never mutated after construction.
    """
    def __init__(self, num_rows, num_cols, costs, incidence):
        if int(num_rows) <= 0 or int(num_cols) <= 0:
            raise InvalidInstance(f"Counts must be positive, got {num_rows} rows and {num_cols} columns")
        self.num_rows = int(num_rows)
        self.num_cols = int(num_cols)

        try:
            self.costs = self._check_costs(costs)
            row_idx, col_idx = self._check_incidence(incidence)

            data = np.ones(len(row_idx), dtype=np.float64)
            matrix = sp.coo_matrix((data, (row_idx, col_idx)), shape=(self.num_rows, self.num_cols)).tocsr()
            matrix.sum_duplicates()
            # a row listing the same column twice still covers it once
            matrix.data[:] = 1.0
            self.cover_matrix = matrix
            self.cover_matrix_csc = matrix.tocsc()
            self.cover_matrix_t = self.cover_matrix_csc.transpose().tocsr()
        except MemoryError as exc:
            raise ResourceExhausted(
                f"Could not allocate the sparse structure for {self.num_rows}x{self.num_cols}"
            ) from exc

        # read-only views, the sparse matrices keep their own buffers
        self.row_ptr = self.cover_matrix.indptr.view()
        self.row_cols = self.cover_matrix.indices.view()
        self.col_ptr = self.cover_matrix_csc.indptr.view()
        self.col_rows = self.cover_matrix_csc.indices.view()
        self.row_sizes = np.diff(self.row_ptr).astype(np.int64)
        self.col_sizes = np.diff(self.col_ptr).astype(np.int64)
        self.num_nonzero = int(self.cover_matrix.nnz)

        for arr in (self.costs, self.row_ptr, self.row_cols, self.col_ptr, self.col_rows,
                    self.row_sizes, self.col_sizes):
            arr.flags.writeable = False

    def _check_costs(self, costs):
        costs = np.asarray(costs)
        if costs.ndim != 1 or costs.shape[0] != self.num_cols:
            raise InvalidInstance(f"Expected {self.num_cols} column costs, got {costs.size}")
        if costs.dtype.kind not in "iu":
            if costs.dtype.kind != "f" or not np.all(np.isfinite(costs)) or not np.all(costs == np.floor(costs)):
                raise InvalidInstance("Column costs must be integers")
        costs = costs.astype(np.int64)
        if np.any(costs < 0):
            raise InvalidInstance(f"Column costs must be non-negative (column {int(np.argmin(costs))})")
        return costs.copy()

    def _check_incidence(self, incidence):
        incidence = list(incidence)
        if len(incidence) != self.num_rows:
            raise InvalidInstance(f"Expected incidence lists for {self.num_rows} rows, got {len(incidence)}")

        row_chunks, col_chunks = [], []
        for row, cols in enumerate(incidence):
            cols = np.asarray(list(cols), dtype=np.int64)
            if cols.size == 0:
                raise InvalidInstance(f"Row {row} is not covered by any column")
            bad = (cols < 0) | (cols >= self.num_cols)
            if np.any(bad):
                raise InvalidInstance(f"Row {row} references column {int(cols[bad][0])} out of range 0..{self.num_cols - 1}")
            row_chunks.append(np.full(cols.size, row, dtype=np.int64))
            col_chunks.append(cols)
        return np.concatenate(row_chunks), np.concatenate(col_chunks)

    def cols_of_row(self, row):
        return self.row_cols[self.row_ptr[row]:self.row_ptr[row + 1]]

    def rows_of_col(self, col):
        return self.col_rows[self.col_ptr[col]:self.col_ptr[col + 1]]

    @property
    def density(self):
        return self.num_nonzero / float(self.num_rows * self.num_cols)

    def to_graph(self):
        """Bipartite view: row nodes ('r', i), column nodes ('c', j) carrying their cost."""
        graph = nx.Graph()
        graph.add_nodes_from((("r", i) for i in range(self.num_rows)), bipartite=0)
        graph.add_nodes_from(((("c", j), {"bipartite": 1, "cost": int(self.costs[j])})
                              for j in range(self.num_cols)))
        for i in range(self.num_rows):
            graph.add_edges_from((("r", i), ("c", int(j))) for j in self.cols_of_row(i))
        return graph

    def plot(self, path="scp_instance.png", show=False):
        import matplotlib.pyplot as plt

        graph = self.to_graph()
        rows = [n for n, d in graph.nodes(data=True) if d["bipartite"] == 0]
        pos = nx.bipartite_layout(graph, rows)
        labels = {n: (f"r{n[1]}" if n[0] == "r" else f"c{n[1]}:{graph.nodes[n]['cost']}") for n in graph.nodes}
        colors = ["skyblue" if n[0] == "r" else "lightgreen" for n in graph.nodes]
        fig = plt.figure(figsize=(8, max(4, 0.3 * max(self.num_rows, self.num_cols))))
        nx.draw(graph, pos, labels=labels, node_color=colors, node_size=500, font_size=8)
        plt.axis("off")
        plt.savefig(path, format="PNG")
        if show:
            plt.show()
        plt.close(fig)
        return path

    def __repr__(self):
        return f"SCPInstance(rows={self.num_rows}, cols={self.num_cols}, nonzeros={self.num_nonzero})"


def load_instance(num_rows, num_cols, costs, incidence):
    """
    Builds an SCPInstance from already parsed data.
    incidence[row] lists the 0-based columns covering that row.
    Raises InvalidInstance when the data is inconsistent.
    """
    return SCPInstance(num_rows, num_cols, costs, incidence)


def _next_int(tokens, what):
    try:
        token = next(tokens)
    except StopIteration:
        raise InvalidInstance(f"wrong SCP file format: unexpected end of file while reading {what}") from None
    try:
        return int(token)
    except ValueError:
        raise InvalidInstance(f"wrong SCP file format: expected an integer for {what}, got {token!r}") from None


def read_scp_file(filename):
    """
    Reads an OR-Library SCP file:
      m n
      cost_1 ... cost_n             (may span several lines)
      for each row: k  col_1 ... col_k   (1-based columns, may span several lines)
    """
    with open(filename, "r") as f:
        tokens = iter(f.read().split())

    num_rows = _next_int(tokens, "the number of rows")
    num_cols = _next_int(tokens, "the number of columns")
    if num_rows <= 0 or num_cols <= 0:
        raise InvalidInstance(f"wrong SCP file format: bad dimensions {num_rows} x {num_cols}")

    costs = [_next_int(tokens, f"the cost of column {j + 1}") for j in range(num_cols)]

    incidence = []
    for i in range(num_rows):
        row_size = _next_int(tokens, f"the size of row {i + 1}")
        cols = []
        for _ in range(row_size):
            col = _next_int(tokens, f"a column of row {i + 1}") - 1
            if not 0 <= col < num_cols:
                raise InvalidInstance(f"wrong SCP file format: row {i + 1} references column {col + 1}")
            cols.append(col)
        incidence.append(cols)

    instance = load_instance(num_rows, num_cols, costs, incidence)
    logger.info(f"Loaded {filename}: {instance.num_rows} rows, {instance.num_cols} columns, "
                f"{instance.num_nonzero} nonzeros")
    return instance


def _write_tokens(f, tokens):
    for start in range(0, len(tokens), TOKENS_PER_LINE):
        f.write(" " + " ".join(str(t) for t in tokens[start:start + TOKENS_PER_LINE]) + "\n")


def write_scp_file(instance, filename):
    with open(filename, "w") as f:
        f.write(f" {instance.num_rows} {instance.num_cols}\n")
        _write_tokens(f, [int(c) for c in instance.costs])
        for i in range(instance.num_rows):
            cols = instance.cols_of_row(i)
            f.write(f" {len(cols)}\n")
            _write_tokens(f, [int(j) + 1 for j in cols])
    return filename


def random_scp_instance(num_rows, num_cols, density, max_cost=MAX_COLUMN_COST, seed=None):
    """
    Random SCP instance drawn as a random bipartite graph rows x columns where every
    row-column pair is an incidence with probability `density`.
    Rows left uncovered get one extra random column so that the instance is feasible.
    """
    if not 0.0 <= density <= 1.0:
        raise ValueError(f"density must lie in [0, 1], got {density}")
    rng = random.Random(seed)

    graph = nx.bipartite.random_graph(num_rows, num_cols, density, seed=rng)
    incidence = [sorted(c - num_rows for c in graph.neighbors(i)) for i in range(num_rows)]

    uncovered = 0
    for cols in incidence:
        if not cols:
            cols.append(rng.randrange(num_cols))
            uncovered += 1
    if uncovered:
        logger.debug(f"Patched {uncovered} uncovered rows with a random column")

    costs = [rng.randint(1, max_cost) for _ in range(num_cols)]
    return load_instance(num_rows, num_cols, costs, incidence)


if __name__ == "__main__":
    instance = random_scp_instance(10, 20, 0.2, seed=0)
    print(instance)
    print(f"Costs: {list(instance.costs)}")
    for i in range(instance.num_rows):
        print(f"Row {i}: columns {list(instance.cols_of_row(i))}")
    print(f"Density: {instance.density:.3f}")
    instance.plot()
