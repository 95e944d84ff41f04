#!/usr/bin/env python3
"""
Command line entry point of the RTI solver generator
"""

import argparse
import logging
import sys

import numpy as np

from .rti_generator import GeneratorConfig, ProblemShape, RTIGenerator, load_problem
from .backends import BACKENDS
from .errors import GenerationError

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Generate a Real-Time Iteration NMPC solver')
    parser.add_argument('--problem', default=None,
                        help='.npz archive with dimensions, weights, Jacobians and bounds')
    parser.add_argument('--N', type=int, default=None, help='Prediction horizon')
    parser.add_argument('--nx', type=int, default=None, help='Number of differential states')
    parser.add_argument('--nu', type=int, default=None, help='Number of controls')
    parser.add_argument('--ny', type=int, default=None, help='Number of stage residuals')
    parser.add_argument('--nyn', type=int, default=None, help='Number of terminal residuals')
    parser.add_argument('--nod', type=int, default=None, help='Number of online data entries')
    parser.add_argument('--lm', type=float, default=None, help='Levenberg-Marquardt regularization')
    parser.add_argument('--prefix', default='rti', help='Prefix of generated symbols and files')
    parser.add_argument('--precision', choices=['float', 'double'], default='double', help='Data precision')
    parser.add_argument('--qp-solver', choices=sorted(BACKENDS), default='hpmpc', help='QP backend')
    parser.add_argument('--unroll', action='store_true', help='Unroll all loops')
    parser.add_argument('--openmp', action='store_true', help='Parallelize the stage loop with OpenMP')
    parser.add_argument('--validate', action='store_true', help='Compile the exported code with gcc')
    parser.add_argument('--output', default=None, help='Export folder (default: rti_export)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    return parser


def _problem_from_args(args) -> ProblemShape:
    overrides = dict(N=args.N, nx=args.nx, nu=args.nu, ny=args.ny, nyn=args.nyn, nod=args.nod,
                     levenberg_marquardt=args.lm)
    if args.problem is not None:
        return load_problem(args.problem, **overrides)

    missing = [name for name in ('N', 'nx', 'nu', 'ny', 'nyn') if overrides[name] is None]
    if missing:
        raise GenerationError(f"Without --problem the options {', '.join('--' + m for m in missing)} are required")
    # Plain tracking problem: residual is the state (and control) itself with unit weights
    nx, nu, ny, nyn = args.nx, args.nu, args.ny, args.nyn
    if ny != nx + nu or nyn != nx:
        raise GenerationError("Without --problem the residual must be (x, u) per stage and x at the end")
    return ProblemShape(
        N=args.N, nx=nx, nu=nu, ny=ny, nyn=nyn, nod=args.nod or 0,
        W=np.eye(ny), WN=np.eye(nyn),
        Fx=np.vstack([np.eye(nx), np.zeros((nu, nx))]),
        Fu=np.vstack([np.zeros((nx, nu)), np.eye(nu)]),
        FxEnd=np.eye(nx),
        levenberg_marquardt=args.lm or 0.0,
    )


def main(argv=None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(levelname)s %(name)s: %(message)s')

    config = GeneratorConfig(
        prefix=args.prefix,
        unroll=args.unroll,
        use_openmp=args.openmp,
        precision=args.precision,
        qp_solver=args.qp_solver,
        validate=args.validate,
    )
    if args.output is not None:
        config.export_folder = args.output

    try:
        problem = _problem_from_args(args)
        paths = RTIGenerator(problem, config).export()
    except GenerationError as e:
        logger.error(str(e))
        return 1

    for path in paths:
        print(path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
