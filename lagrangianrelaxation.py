"""
Lagrangian dual bounds for the set-covering problem.

Relaxing the covering rows A x >= 1 with multipliers u >= 0 gives

    L(u) = sum_i u_i + sum_j min(0, c_j - sum_{i covered by j} u_i)

which is a lower bound on the SCP optimum for every u >= 0. Two ascent methods are provided:

1) spectral projected subgradient, based on
   Crema, A., Loreto, M., & Raydan, M. (2007) Spectral projected subgradient with a momentum
   term for the Lagrangian dual approach. Computers and Operations Research, 34(10), 3174-3186.

2) basic subgradient, based on
   Beasley, J.E. (1990) A Lagrangian heuristic for set-covering problems.
   Naval Research Logistics, 37(1), 151-164.
"""
import logging
import math
from dataclasses import dataclass, field
from time import time

import numpy as np
from scipy.optimize import linprog

from scpinstance import ResourceExhausted

logger = logging.getLogger(__name__)

ZERO_TOL = 1e-12
SELECT_TOL = 1e-14

# spectral projected subgradient
WINDOW_SIZE = 10
MOMENTUM_WEIGHT = 0.7
LINE_SEARCH_GAMMA = 0.1
INITIAL_ALPHA = 0.1
ETA_EXPONENT = 1.1

# basic subgradient
INITIAL_LAMBDA = 2.0
COUNTER_LIMIT = 10
UPPER_BOUND_FACTOR = 1.05

DEFAULT_MAX_ITER = 300


def compute_reduced_costs(instance, dual):
    """c_j - sum of the multipliers of the rows covered by column j, recomputed from scratch."""
    return instance.costs.astype(np.float64) - instance.cover_matrix_t @ np.asarray(dual, dtype=np.float64)


def lagrangian_objective(dual, reduced_costs):
    return float(np.sum(dual) + np.sum(reduced_costs[reduced_costs < 0]))


def init_dual_vector(instance):
    """
    u_i = min over the columns j covering row i of c_j / |j|, i.e. the cheapest per-row
    share of a covering column. No reduced cost is negative at this point.
    Returns (dual, reduced_costs, objective).
    """
    costs = instance.costs.astype(np.float64)
    share = np.divide(costs, instance.col_sizes, out=np.full_like(costs, np.inf), where=instance.col_sizes > 0)
    dual = np.minimum.reduceat(share[instance.row_cols], instance.row_ptr[:-1])
    reduced_costs = compute_reduced_costs(instance, dual)
    return dual, reduced_costs, lagrangian_objective(dual, reduced_costs)


def _covering_counts(instance, reduced_costs):
    selected = (reduced_costs < SELECT_TOL).astype(np.float64)
    return np.rint(instance.cover_matrix @ selected).astype(np.int64)


def compute_subgradient_sps(instance, reduced_costs):
    """
    g_i = 1 - (number of columns covering row i that the relaxed problem selects), a column
    being selected when its reduced cost is below 1e-14.
    Returns (g, is_optimal); is_optimal means g is the zero vector.
    """
    subg = 1 - _covering_counts(instance, reduced_costs)
    return subg, not np.any(subg)


def compute_subgradient_basic(instance, reduced_costs, dual):
    """
    Same vector as compute_subgradient_sps, but a row that is over-covered (g_i < 0) while its
    multiplier already sits at zero cannot move, so its entry is zeroed.
    Returns (g, squared_norm, is_optimal). Optimality is decided before the clamping; a
    non-optimal vector whose clamped norm vanishes reports norm 1.
    """
    subg = 1 - _covering_counts(instance, reduced_costs)
    if not np.any(subg):
        return subg, 0, True

    subg[(subg < 0) & (dual < SELECT_TOL)] = 0
    norm = int(subg @ subg)
    if norm == 0:
        norm = 1
    return subg, norm, False


def lp_relaxation_bound(instance):
    """Optimal value of min c.x s.t. A x >= 1, x >= 0, the ceiling of every Lagrangian bound."""
    res = linprog(
        instance.costs.astype(np.float64),
        A_ub=-instance.cover_matrix,
        b_ub=-np.ones(instance.num_rows),
        bounds=(0, None),
        method="highs",
    )
    if not res.success:
        raise RuntimeError(f"LP relaxation failed: {res.message}")
    return float(res.fun)


@dataclass
class DualSolution:
    """Best multipliers of a finished run. Reduced costs are recomputed on every request."""
    instance: object
    dual: np.ndarray
    objective: float
    method: str
    iterations: int = 0
    optimal: bool = False
    elapsed: float = 0.0
    extra: dict = field(default_factory=dict)

    @property
    def num_rows(self):
        return self.instance.num_rows

    @property
    def num_cols(self):
        return self.instance.num_cols

    def dual_vector(self):
        return self.dual.copy()

    def reduced_costs(self):
        return compute_reduced_costs(self.instance, self.dual)


class LagrangianSCP:
    """
    Holds one SCP instance and the result of the last dual ascent run on it.
    Every per-run buffer lives inside the driver call, so separate handles never share
    mutable state.
    """
    total_compute_time = 0

    def __init__(self, instance, window_size=WINDOW_SIZE, momentum_weight=MOMENTUM_WEIGHT,
                 gamma=LINE_SEARCH_GAMMA, initial_alpha=INITIAL_ALPHA, initial_lambda=INITIAL_LAMBDA,
                 counter_limit=COUNTER_LIMIT, upper_bound_factor=UPPER_BOUND_FACTOR,
                 verbose=False, history_cap=1000):
        if window_size < 1:
            raise ValueError(f"window_size must be at least 1, got {window_size}")
        self.instance = instance
        self.window_size = int(window_size)
        self.momentum_weight = float(momentum_weight)
        self.gamma = float(gamma)
        self.initial_alpha = float(initial_alpha)
        self.initial_lambda = float(initial_lambda)
        self.counter_limit = int(counter_limit)
        self.upper_bound_factor = float(upper_bound_factor)
        self.verbose = verbose
        self._history_cap = history_cap

        self.result = None
        self.clear_iteration_state()

    def clear_iteration_state(self):
        """Clear per-run histories"""
        self.objective_history = []
        self.best_history = []
        self.acceptance_history = []
        self.step_sizes = []
        self.lambda_history = []
        # final iterate with its incrementally maintained reduced costs
        self.last_dual = None
        self.last_reduced_costs = None

    def _append_with_cap(self, bucket, item):
        bucket.append(item)
        if self._history_cap is not None:
            overflow = len(bucket) - self._history_cap
            if overflow > 0:
                del bucket[:overflow]

    def _allocate(self):
        try:
            dual, reduced_costs, obj = init_dual_vector(self.instance)
            return dual, reduced_costs, obj, np.zeros(self.instance.num_rows)
        except MemoryError as exc:
            raise ResourceExhausted(f"Could not allocate driver buffers for {self.instance!r}") from exc

    @staticmethod
    def _check_max_iter(max_iter):
        max_iter = int(max_iter)
        if max_iter < 0:
            raise ValueError(f"max_iter must be non-negative, got {max_iter}")
        return max_iter

    def _finish(self, method, dual, objective, iterations, optimal, start_time, **extra):
        elapsed = time() - start_time
        LagrangianSCP.total_compute_time += elapsed
        self.result = DualSolution(self.instance, dual.copy(), float(objective), method,
                                   iterations=iterations, optimal=optimal, elapsed=elapsed, extra=extra)
        logger.info(f"{method}: bound={objective:.6f} after {iterations} iterations "
                    f"({'optimal' if optimal else 'iteration limit'}, {elapsed:.3f}s)")
        return self.result.objective

    def spectral_projected_subgradient(self, max_iter=DEFAULT_MAX_ITER):
        """
        Spectral projected subgradient with momentum and a non-monotone line search.
        Returns the best (maximum) dual objective found.
        """
        start_time = time()
        max_iter = self._check_max_iter(max_iter)
        self.clear_iteration_state()
        At = self.instance.cover_matrix_t
        M = self.window_size
        mu = self.momentum_weight
        gamma = self.gamma

        dual, reduced_costs, curr_obj, momentum = self._allocate()
        best_obj = worst_obj = curr_obj
        best_dual = dual.copy()
        past_objs = np.full(M, curr_obj)
        worst_obj_idx = 0
        alpha = self.initial_alpha
        itr_done = 0

        old_subg, is_opt = compute_subgradient_sps(self.instance, reduced_costs)
        if not is_opt:
            eta_not = math.sqrt(float(old_subg @ old_subg))

            for itr in range(max_iter):
                itr_done = itr + 1
                if self.verbose:
                    print(f"SPS iter {itr}: obj={curr_obj:.6f}, best={best_obj:.6f}, alpha={alpha:.4g}")

                # projected step along the momentum direction
                momentum = alpha * old_subg + mu * momentum
                dd = np.maximum(dual + momentum, 0.0) - dual
                dd[np.abs(dd) <= ZERO_TOL] = 0.0
                changed = dd != 0.0
                product = float(dd[changed] @ momentum[changed])

                dual += dd
                reduced_costs -= At @ dd
                curr_obj = lagrangian_objective(dual, reduced_costs)

                # non-monotone line search along dd
                product /= alpha
                tau = 1.0
                eta = eta_not / itr ** ETA_EXPONENT if itr > 0 else math.inf
                accept = worst_obj + gamma * tau * product - eta
                while curr_obj < accept:
                    tau *= 0.5
                    back = tau * dd
                    back[np.abs(back) <= ZERO_TOL] = 0.0
                    dual -= back
                    reduced_costs += At @ back
                    curr_obj = lagrangian_objective(dual, reduced_costs)
                    accept -= gamma * tau * product
                if tau < 1.0:
                    logger.debug(f"SPS iter {itr}: line search stopped at tau={tau:.3g}")

                self._append_with_cap(self.objective_history, curr_obj)
                self._append_with_cap(self.acceptance_history, accept)

                if best_obj < curr_obj:
                    best_obj = curr_obj
                    np.copyto(best_dual, dual)
                self._append_with_cap(self.best_history, best_obj)

                curr_subg, is_opt = compute_subgradient_sps(self.instance, reduced_costs)
                if is_opt:
                    break

                # spectral (Barzilai-Borwein) step scale over the moved rows
                dd_c = dd[changed]
                alpha_num = float(dd_c @ dd_c)
                alpha_deno = float(dd_c @ (old_subg[changed] - curr_subg[changed]))
                if alpha_deno < ZERO_TOL:
                    alpha = self.initial_alpha
                else:
                    alpha = tau * alpha_num / alpha_deno
                self._append_with_cap(self.step_sizes, alpha)

                # window of the last M accepted objectives, worst_obj is its minimum
                i = (itr + 1) % M
                past_objs[i] = curr_obj
                if i == worst_obj_idx:
                    # the current minimum left the window; rescan only if it may have moved
                    prev_worst, worst_obj = worst_obj, curr_obj
                    if curr_obj > prev_worst:
                        for j in range(M - 1, -1, -1):
                            if past_objs[j] < worst_obj:
                                worst_obj = past_objs[j]
                                worst_obj_idx = j
                elif curr_obj < worst_obj:
                    worst_obj = curr_obj
                    worst_obj_idx = i

                old_subg = curr_subg

        self.last_dual, self.last_reduced_costs = dual, reduced_costs
        if is_opt:
            best_dual = dual
            best_obj = curr_obj

        return self._finish("spectral projected subgradient", best_dual, best_obj, itr_done, bool(is_opt),
                            start_time, final_alpha=alpha)

    def basic_subgradient(self, max_iter, upper_bound):
        """
        Beasley's subgradient method. upper_bound is the value of a feasible cover (the known
        optimum when benchmarking) and drives the Polyak-type step size.
        Returns the best (maximum) dual objective found.
        """
        start_time = time()
        max_iter = self._check_max_iter(max_iter)
        self.clear_iteration_state()
        At = self.instance.cover_matrix_t
        target = self.upper_bound_factor * float(upper_bound)

        dual, reduced_costs, curr_obj, _ = self._allocate()
        best_obj = curr_obj
        best_dual = dual.copy()
        lmbda = self.initial_lambda
        counter = 0
        is_opt = False
        itr_done = 0

        for itr in range(max_iter):
            if self.verbose:
                print(f"Basic iter {itr}: obj={curr_obj:.6f}, best={best_obj:.6f}, lambda={lmbda:.4g}")

            subg, norm, is_opt = compute_subgradient_basic(self.instance, reduced_costs, dual)
            if is_opt:
                break
            itr_done = itr + 1

            step_size = lmbda * (target - curr_obj) / norm
            self._append_with_cap(self.step_sizes, step_size)

            value = step_size * subg
            new_dual = dual + value
            neg = new_dual < 0
            value[neg] -= new_dual[neg]
            new_dual[neg] = 0.0
            value[np.abs(value) <= ZERO_TOL] = 0.0

            reduced_costs -= At @ value
            dual = new_dual
            curr_obj = lagrangian_objective(dual, reduced_costs)
            self._append_with_cap(self.objective_history, curr_obj)

            if best_obj < curr_obj:
                best_obj = curr_obj
                counter = 0
                np.copyto(best_dual, dual)
            else:
                counter += 1
            self._append_with_cap(self.best_history, best_obj)

            if counter > self.counter_limit:
                lmbda *= 0.5
                counter = 0
                logger.debug(f"Basic iter {itr}: no improvement, lambda halved to {lmbda:.4g}")
            self._append_with_cap(self.lambda_history, lmbda)

        self.last_dual, self.last_reduced_costs = dual, reduced_costs
        if is_opt:
            best_dual = dual
            best_obj = curr_obj

        return self._finish("basic subgradient", best_dual, best_obj, itr_done, bool(is_opt),
                            start_time, final_lambda=lmbda, upper_bound=float(upper_bound))

    def _require_result(self):
        if self.result is None:
            raise RuntimeError("No subgradient run has completed on this instance")
        return self.result

    def best_objective(self):
        return self._require_result().objective

    def get_dual_vector(self):
        """Copy of the best dual vector of the last run."""
        return self._require_result().dual_vector()

    def get_reduced_costs(self):
        """Reduced costs of the best dual vector of the last run."""
        return self._require_result().reduced_costs()

    def get_num_rows(self):
        return self.instance.num_rows

    def get_num_cols(self):
        return self.instance.num_cols
