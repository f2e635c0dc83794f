import argparse
import logging
import sys
import time

import numpy as np

from lagrangianrelaxation import DEFAULT_MAX_ITER, LagrangianSCP
from scpinstance import InvalidInstance, ResourceExhausted, read_scp_file

logger = logging.getLogger(__name__)


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(prog='SCP Lagrangian subgradient', usage='%(prog)s input_file [-b upperbound] [options]')
    parser.add_argument(
        "input_file",
        help="SCP instance in OR-Library format"
    )
    parser.add_argument(
        "-b", "--upper-bound",
        type=int,
        default=None,
        dest="upper_bound",
        help="Run Beasley's basic subgradient with this upper bound (default: spectral projected subgradient)"
    )
    parser.add_argument(
        "--max-iter",
        type=int,
        default=DEFAULT_MAX_ITER,
        help=f"Maximum number of subgradient iterations (default: {DEFAULT_MAX_ITER})"
    )
    parser.add_argument(
        "--show-duals",
        action="store_true",
        help="Print the best dual vector and its reduced costs (default: False)"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose debug output (default: False)"
    )
    return parser.parse_args(argv)


def report(solver, dual_soln, cpu_time, show_duals=False):
    print(f"obj value: {dual_soln:f}")
    print(f"CPU time {cpu_time:.3f}")
    if show_duals:
        with np.printoptions(precision=6, suppress=True, threshold=sys.maxsize):
            print(f"dual vector ({solver.get_num_rows()} rows):")
            print(solver.get_dual_vector())
            print(f"reduced costs ({solver.get_num_cols()} columns):")
            print(solver.get_reduced_costs())


def main(argv=None):
    args = parse_arguments(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(asctime)s - %(levelname)s - %(message)s')

    try:
        instance = read_scp_file(args.input_file)
    except (OSError, InvalidInstance, ResourceExhausted) as e:
        logger.error(f"Could not load {args.input_file}: {e}")
        return 1

    solver = LagrangianSCP(instance, verbose=args.verbose)

    begin_t = time.process_time()
    try:
        if args.upper_bound is None:
            print("Type: spectral projected subgradient")
            dual_soln = solver.spectral_projected_subgradient(args.max_iter)
        else:
            print("Type: basic subgradient")
            dual_soln = solver.basic_subgradient(args.max_iter, args.upper_bound)
    except (ResourceExhausted, ValueError) as e:
        logger.error(f"Subgradient run failed: {e}")
        return 1
    end_t = time.process_time()

    report(solver, dual_soln, end_t - begin_t, show_duals=args.show_duals)
    return 0


if __name__ == "__main__":
    sys.exit(main())
