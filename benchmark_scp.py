import argparse
import gc
import logging
import os
import pickle
import random
from datetime import datetime
from pathlib import Path
from time import time

import pandas as pd
import psutil

from lagrangianrelaxation import DEFAULT_MAX_ITER, LagrangianSCP, lp_relaxation_bound
from scpinstance import InvalidInstance, random_scp_instance, read_scp_file, write_scp_file

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(prog='SCP Lagrangian Bound Benchmark', usage='%(prog)s [options]')
    parser.add_argument(
        "--num-instances",
        type=int,
        default=5,
        help="Number of random instances to generate (default: 5)"
    )
    parser.add_argument(
        "--num-rows",
        type=int,
        default=50,
        help="Number of rows of each random instance (default: 50)"
    )
    parser.add_argument(
        "--num-cols",
        type=int,
        default=200,
        help="Number of columns of each random instance (default: 200)"
    )
    parser.add_argument(
        "--density",
        type=float,
        default=0.05,
        help="Incidence density of the random instances (default: 0.05)"
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=42,
        help="Random seed for reproducibility (default: 42)"
    )
    parser.add_argument(
        "--max-iter",
        type=int,
        default=DEFAULT_MAX_ITER,
        help=f"Subgradient iterations per run (default: {DEFAULT_MAX_ITER})"
    )
    parser.add_argument(
        "--instance-files",
        nargs="*",
        default=None,
        help="OR-Library SCP files to benchmark instead of random instances"
    )
    parser.add_argument(
        "--upper-bounds",
        type=str,
        default=None,
        help="CSV with columns instance,upper_bound; enables the basic subgradient for listed instances"
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default="results",
        help="Directory to save results and instances (default: results)"
    )
    parser.add_argument(
        "--export-instances",
        action="store_true",
        help="Also write the random instances in OR-Library format (default: False)"
    )
    parser.add_argument(
        "--plot",
        action="store_true",
        help="Save a convergence plot per instance (default: False)"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose output (default: False)"
    )
    return parser.parse_args(argv)


def generate_instances(num_instances, num_rows, num_cols, density, seed):
    random.seed(seed)
    instances = []
    for i in range(num_instances):
        instance_seed = random.randint(0, 1000000)
        instance = random_scp_instance(num_rows, num_cols, density, seed=instance_seed)
        instances.append((f"random_{i}", instance, instance_seed))
        logger.info(f"Generated instance {i+1}/{num_instances} with seed {instance_seed}: {instance}")
    return instances


def read_instances(paths):
    instances = []
    for path in paths:
        try:
            instances.append((Path(path).stem, read_scp_file(path), None))
        except (OSError, InvalidInstance) as e:
            logger.error(f"Skipping {path}: {e}")
    return instances


def save_instances(instances, output_dir):
    os.makedirs(output_dir, exist_ok=True)
    instances_path = os.path.join(output_dir, "instances.pkl")
    with open(instances_path, 'wb') as f:
        pickle.dump(instances, f)
    logger.info(f"Saved instances to {instances_path}")
    return instances_path


def load_instances(output_dir):
    instances_path = os.path.join(output_dir, "instances.pkl")
    if not os.path.exists(instances_path):
        raise FileNotFoundError(f"No instances found at {instances_path}")
    with open(instances_path, 'rb') as f:
        instances = pickle.load(f)
    logger.info(f"Loaded {len(instances)} instances from {instances_path}")
    return instances


def load_upper_bounds(path):
    if path is None:
        return {}
    df = pd.read_csv(path)
    missing = {"instance", "upper_bound"} - set(df.columns)
    if missing:
        raise ValueError(f"{path} lacks columns {sorted(missing)}")
    return {str(name): float(ub) for name, ub in zip(df["instance"], df["upper_bound"])}


def _rss_mb(process):
    return process.memory_info().rss / 1024 / 1024 if process is not None else float("nan")


def run_experiment(name, instance, seed, upper_bound, args):
    """Runs every applicable method on one instance and returns one result row per method."""
    try:
        process = psutil.Process()
    except Exception:
        process = None

    start_lp = time()
    lp_bound = lp_relaxation_bound(instance)
    lp_time = time() - start_lp

    runs = [("sps", lambda s: s.spectral_projected_subgradient(args.max_iter))]
    if upper_bound is not None:
        runs.append(("basic", lambda s: s.basic_subgradient(args.max_iter, upper_bound)))

    rows, histories = [], {}
    for method, run in runs:
        solver = LagrangianSCP(instance, verbose=args.verbose, history_cap=None)
        start = time()
        bound = run(solver)
        elapsed = time() - start
        histories[method] = list(solver.objective_history)

        gap = lp_bound - bound
        rows.append({
            "instance": name,
            "instance_seed": seed,
            "num_rows": instance.num_rows,
            "num_cols": instance.num_cols,
            "density": instance.density,
            "method": method,
            "upper_bound": upper_bound,
            "bound": bound,
            "lp_bound": lp_bound,
            "gap_to_lp": gap,
            "rel_gap_to_lp": gap / abs(lp_bound) if lp_bound else 0.0,
            "iterations": solver.result.iterations,
            "optimal": solver.result.optimal,
            "time": elapsed,
            "lp_time": lp_time,
            "rss_mb": _rss_mb(process),
        })
        del solver

    gc.collect()
    return rows, histories


def plot_convergence(name, histories, lp_bound, output_dir):
    import matplotlib.pyplot as plt

    fig, ax = plt.subplots(figsize=(7, 4))
    for method, objs in histories.items():
        ax.plot(range(1, len(objs) + 1), objs, label=method)
    ax.axhline(lp_bound, color="gray", linestyle="--", label="LP relaxation")
    ax.set_xlabel("iteration")
    ax.set_ylabel("Lagrangian objective")
    ax.set_title(name)
    ax.legend()
    path = os.path.join(output_dir, f"convergence_{name}.png")
    fig.savefig(path, format="PNG")
    plt.close(fig)
    return path


def analyze_results(results):
    df_all = pd.DataFrame(results).copy()
    summary = (df_all
        .groupby("method", dropna=False)
        .agg(
            runs=("bound", "size"),
            bound_mean=("bound", "mean"),
            gap_mean=("gap_to_lp", "mean"),
            rel_gap_mean=("rel_gap_to_lp", "mean"),
            rel_gap_max=("rel_gap_to_lp", "max"),
            iterations_mean=("iterations", "mean"),
            optimal_rate=("optimal", "mean"),
            time_mean=("time", "mean"),
            time_std=("time", "std"),
        ).round(6)
        .reset_index()
    )
    summary["optimal_rate"] = (100 * summary["optimal_rate"]).round(1)
    return summary


def main(argv=None):
    args = parse_arguments(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    output_dir = os.path.join(args.output_dir, datetime.now().strftime("%Y%m%d_%H%M%S"))
    os.makedirs(output_dir, exist_ok=True)

    if args.instance_files:
        instances = read_instances(args.instance_files)
    else:
        instances = generate_instances(args.num_instances, args.num_rows, args.num_cols, args.density, args.seed)
        save_instances(instances, output_dir)
        if args.export_instances:
            for name, instance, _ in instances:
                write_scp_file(instance, os.path.join(output_dir, f"{name}.txt"))

    upper_bounds = load_upper_bounds(args.upper_bounds)

    results = []
    LagrangianSCP.total_compute_time = 0.0
    for instance_idx, (name, instance, instance_seed) in enumerate(instances):
        logger.info(f"Processing instance {instance_idx+1}/{len(instances)}: {name}")
        try:
            rows, histories = run_experiment(name, instance, instance_seed, upper_bounds.get(name), args)
        except Exception as e:
            logger.error(f"Error processing instance {name}: {str(e)}")
            continue
        results.extend(rows)

        for row in rows:
            logger.info(
                f"Completed {name} [{row['method']}]: bound={row['bound']:.4f}, "
                f"LP={row['lp_bound']:.4f}, gap={row['gap_to_lp']:.4f}, "
                f"iters={row['iterations']}, time={row['time']:.2f}s, RSS={row['rss_mb']:.0f} MB"
            )

        if args.plot:
            path = plot_convergence(name, histories, rows[0]["lp_bound"], output_dir)
            logger.info(f"Saved convergence plot to {path}")

    if not results:
        logger.warning("No instance could be processed")
        return 1

    final_path = os.path.join(output_dir, "results.csv")
    pd.DataFrame(results).to_csv(final_path, index=False)
    logger.info(f"Saved final results to {final_path}")

    summary_path = os.path.join(output_dir, "summary.csv")
    summary = analyze_results(results)
    summary.to_csv(summary_path, index=False)
    logger.info(f"Saved summary statistics to {summary_path}")
    print("\nSummary Statistics:\n", summary)
    print(f"Lagrangian compute time: {LagrangianSCP.total_compute_time:.2f}s")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
