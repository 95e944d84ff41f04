"""
QP backends for the RTI generator

A backend contributes the solver-specific parts of the program: how the
objective and constraints are evaluated into QP data, how the QP matrices are
laid out and how the QP solver is called from the feedback step.
"""

import logging
import numpy as np
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple, Type

from .core import StorageClass
from .expressions import Operand, literal, zeros
from .ast_nodes import ForLoop, Function
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# Parameter list of the HPMPC interior-point wrapper; order is part of the ABI.
HPMPC_WRAPPER_SIGNATURE = (
    ('unsigned', 'N'), ('unsigned', 'nx'), ('unsigned', 'nu'),
    ('real_t*', 'A'), ('real_t*', 'B'), ('real_t*', 'd'),
    ('real_t*', 'Q'), ('real_t*', 'Qf'), ('real_t*', 'S'), ('real_t*', 'R'),
    ('real_t*', 'q'), ('real_t*', 'qf'), ('real_t*', 'r'),
    ('real_t*', 'lb'), ('real_t*', 'ub'),
    ('real_t*', 'x'), ('real_t*', 'u'),
    ('int*', 'nIt'),
)

HPMPC_INTERFACE_TEMPLATE = 'hpmpc_interface.c'


class QPBackend(ABC):
    """Solver-specific part of RTI solver generation."""
    name: str = ''

    @abstractmethod
    def build_objective_evaluation(self, ctx):
        """Add the residual and Hessian evaluation; sets ctx.evaluate_objective."""

    @abstractmethod
    def build_constraint_evaluation(self, ctx):
        """Add the bound evaluation; sets ctx.evaluate_constraints."""

    @abstractmethod
    def build_qp_assembly(self, ctx):
        """Declare the QP payload and fill the constant parts in ctx.initialize."""

    @abstractmethod
    def build_feedback_call(self, ctx, feedback: Function, status: Operand):
        """Fill the feedback step: gradients, solver call and Newton step."""


def hessian_seeds(problem) -> Dict[str, Optional[np.ndarray]]:
    """Hessian blocks that can be computed at generation time; None where runtime data is needed."""
    seeds = dict.fromkeys(('Q1', 'Q2', 'R1', 'R2', 'QN1', 'QN2'))
    lm = problem.levenberg_marquardt
    if problem.W is not None:
        if problem.Fx is not None:
            seeds['Q2'] = problem.Fx.T @ problem.W
            seeds['Q1'] = seeds['Q2'] @ problem.Fx + lm * np.eye(problem.nx)
        if problem.Fu is not None:
            seeds['R2'] = problem.Fu.T @ problem.W
            seeds['R1'] = seeds['R2'] @ problem.Fu + lm * np.eye(problem.nu)
    if problem.WN is not None and problem.FxEnd is not None:
        seeds['QN2'] = problem.FxEnd.T @ problem.WN
        seeds['QN1'] = seeds['QN2'] @ problem.FxEnd
    return seeds


def check_cross_term(problem):
    if problem.variable_cross_term or problem.S1 is None or np.any(problem.S1 != 0.0):
        raise ConfigurationError("Mixed control-state terms in the objective function are not supported at the moment.")


class HpmpcBackend(QPBackend):
    """Condensing-free backend calling the HPMPC interior-point wrapper."""
    name = 'hpmpc'

    def build_objective_evaluation(self, ctx):
        problem, b = ctx.problem, ctx.builder
        check_cross_term(problem)
        N, nx, nu, ny, nyn = problem.N, problem.nx, problem.nu, problem.ny, problem.nyn

        self._declare_hessian(ctx)
        Q1, Q2, R1, R2 = (ctx.hessian[name] for name in ('Q1', 'Q2', 'R1', 'R2'))
        QN1, QN2 = ctx.hessian['QN1'], ctx.hessian['QN2']

        fn = Function("evaluateObjective", doc="Evaluate the residuals and Hessian blocks of the objective.")
        if ctx.config.use_openmp:
            stage_in = fn.add_local(b.declare("stageIn", 1, ctx.obj_value_in.cols, StorageClass.LOCAL))
            stage_out = fn.add_local(b.declare("stageOut", 1, ctx.obj_value_out.cols, StorageClass.LOCAL))
        else:
            stage_in, stage_out = ctx.obj_value_in, ctx.obj_value_out

        lm = problem.levenberg_marquardt
        run_obj = b.declare_index("runObj")
        loop = ForLoop(run_obj, 0, N, parallel=ctx.config.use_openmp,
                       private=[stage_in, stage_out] if ctx.config.use_openmp else [])
        loop.add(stage_in.assign(ctx.stage_input(run_obj)))
        loop.add(ctx.evaluate_lsq.call(stage_in, stage_out))
        loop.add(ctx.Dy.get_rows(run_obj * ny, (run_obj + 1) * ny).assign(stage_out.get_cols(0, ny).T))

        tmp_obj_s = None
        if not Q1.is_given or not R1.is_given:
            tmp_obj_s = b.declare("tmpObjS", ny, ny, StorageClass.LOCAL)
        weighting = ctx.stage_weighting(run_obj)
        index_x = ny

        if not Q1.is_given:
            tmp_fx = b.declare("tmpFx", ny, nx, StorageClass.LOCAL)
            tmp_q1 = b.declare("tmpQ1", nx, nx, StorageClass.LOCAL)
            tmp_q2 = b.declare("tmpQ2", nx, ny, StorageClass.LOCAL)
            helper = Function("setObjQ1Q2", tmp_fx, tmp_obj_s, tmp_q1, tmp_q2)
            helper.add(tmp_q2.assign(tmp_fx.T * tmp_obj_s))
            helper.add(tmp_q1.assign(tmp_q2 * tmp_fx + literal(lm * np.eye(nx))))
            b.add_function(helper)

            if ctx.Fx is not None:
                fx = ctx.Fx
            else:
                fx = stage_out.view(index_x, ny, nx)
                index_x += ny * nx
            loop.add_linebreak()
            loop.add(helper.call(fx, weighting,
                                 Q1.get_rows(run_obj * nx, (run_obj + 1) * nx),
                                 Q2.get_rows(run_obj * nx, (run_obj + 1) * nx)))

        if not R1.is_given:
            tmp_fu = b.declare("tmpFu", ny, nu, StorageClass.LOCAL)
            tmp_r1 = b.declare("tmpR1", nu, nu, StorageClass.LOCAL)
            tmp_r2 = b.declare("tmpR2", nu, ny, StorageClass.LOCAL)
            helper = Function("setObjR1R2", tmp_fu, tmp_obj_s, tmp_r1, tmp_r2)
            helper.add(tmp_r2.assign(tmp_fu.T * tmp_obj_s))
            helper.add(tmp_r1.assign(tmp_r2 * tmp_fu + literal(lm * np.eye(nu))))
            b.add_function(helper)

            fu = ctx.Fu if ctx.Fu is not None else stage_out.view(index_x, ny, nu)
            loop.add_linebreak()
            loop.add(helper.call(fu, weighting,
                                 R1.get_rows(run_obj * nu, (run_obj + 1) * nu),
                                 R2.get_rows(run_obj * nu, (run_obj + 1) * nu)))

        fn.add(loop)
        fn.add_linebreak()
        fn.add(ctx.obj_value_in.get_cols(0, nx + problem.nod).assign(ctx.terminal_input()))
        fn.add(ctx.evaluate_lsq_end_term.call(ctx.obj_value_in, ctx.obj_value_out))
        fn.add_linebreak()
        fn.add(ctx.DyN.assign(ctx.obj_value_out.get_cols(0, nyn).T))

        if not QN1.is_given:
            tmp_fx_end = b.declare("tmpFxEnd", nyn, nx, StorageClass.LOCAL)
            tmp_obj_s_end = b.declare("tmpObjSEndTerm", nyn, nyn, StorageClass.LOCAL)
            tmp_qn1 = b.declare("tmpQN1", nx, nx, StorageClass.LOCAL)
            tmp_qn2 = b.declare("tmpQN2", nx, nyn, StorageClass.LOCAL)
            helper = Function("setObjQN1QN2", tmp_fx_end, tmp_obj_s_end, tmp_qn1, tmp_qn2)
            helper.add(tmp_qn2.assign(tmp_fx_end.T * tmp_obj_s_end))
            helper.add(tmp_qn1.assign(tmp_qn2 * tmp_fx_end))
            b.add_function(helper)

            fx_end = ctx.FxEnd if ctx.FxEnd is not None else ctx.obj_value_out.view(nyn, nyn, nx)
            fn.add_linebreak()
            fn.add(helper.call(fx_end, ctx.WN, QN1, QN2))

        ctx.set_stage_gradient = self._stage_gradient_function(ctx)
        b.add_function(fn)
        ctx.evaluate_objective = fn

    def _declare_hessian(self, ctx):
        problem, b = ctx.problem, ctx.builder
        N, nx, nu, ny, nyn = problem.N, problem.nx, problem.nu, problem.ny, problem.nyn
        shapes = {
            'Q1': (N * nx, nx), 'Q2': (N * nx, ny),
            'R1': (N * nu, nu), 'R2': (N * nu, ny),
            'QN1': (nx, nx), 'QN2': (nx, nyn),
        }
        for name, value in hessian_seeds(problem).items():
            if value is not None:
                logger.debug(f"Hessian block {name} is given at generation time")
                ctx.hessian[name] = b.constant(name, value)
            else:
                rows, cols = shapes[name]
                ctx.hessian[name] = b.declare(name, rows, cols, StorageClass.WORKSPACE)

    def _stage_gradient_function(self, ctx) -> Function:
        problem, b = ctx.problem, ctx.builder
        nx, nu, ny = problem.nx, problem.nu, problem.ny
        stage_q = b.declare("stageq", nx, 1, StorageClass.LOCAL)
        stage_r = b.declare("stager", nu, 1, StorageClass.LOCAL)
        index = b.declare_index("index")

        fn = Function("setStagef", stage_q, stage_r, index)
        dy = ctx.Dy.get_rows(index * ny, (index + 1) * ny)
        Q2, R2 = ctx.hessian['Q2'], ctx.hessian['R2']
        if not Q2.is_given:
            Q2 = Q2.get_rows(index * nx, (index + 1) * nx)
        if not R2.is_given:
            R2 = R2.get_rows(index * nu, (index + 1) * nu)
        fn.add(stage_q.assign(Q2 * dy))
        fn.add_linebreak()
        fn.add(stage_r.assign(R2 * dy))
        b.add_function(fn)
        return fn

    def build_constraint_evaluation(self, ctx):
        problem, b = ctx.problem, ctx.builder
        N, nx, nu = problem.N, problem.nx, problem.nu
        n_u, n_b = N * nu, N * nu + N * nx

        lower, upper = self._bound_values(problem)
        qp_lb = b.declare("qpLb", n_b, 1, StorageClass.WORKSPACE, doc="Lower bounds of the QP variables.")
        qp_ub = b.declare("qpUb", n_b, 1, StorageClass.WORKSPACE, doc="Upper bounds of the QP variables.")
        ctx.qp['lb'], ctx.qp['ub'] = qp_lb, qp_ub

        fn = Function("evaluateConstraints", doc="Evaluate the bounds relative to the current iterate.")
        ev_lb = fn.add_local(b.declare("evLbValues", n_b, 1, StorageClass.CONSTANT, lower))
        ev_ub = fn.add_local(b.declare("evUbValues", n_b, 1, StorageClass.CONSTANT, upper))
        controls = ctx.u.as_column()
        states = ctx.x.as_column().get_rows(nx, (N + 1) * nx)
        fn.add(qp_lb.get_rows(0, n_u).assign(ev_lb.get_rows(0, n_u) - controls))
        fn.add(qp_ub.get_rows(0, n_u).assign(ev_ub.get_rows(0, n_u) - controls))
        fn.add_linebreak()
        fn.add(qp_lb.get_rows(n_u, n_b).assign(ev_lb.get_rows(n_u, n_b) - states))
        fn.add(qp_ub.get_rows(n_u, n_b).assign(ev_ub.get_rows(n_u, n_b) - states))
        b.add_function(fn)
        ctx.evaluate_constraints = fn

    @staticmethod
    def _bound_values(problem) -> Tuple[np.ndarray, np.ndarray]:
        """Controls of nodes 0..N-1 first, then states of nodes 1..N."""
        lower, upper = [], []
        for node in range(problem.N):
            lb, ub = problem.control_bounds(node)
            lower.append(lb)
            upper.append(ub)
        for node in range(1, problem.N + 1):
            lb, ub = problem.state_bounds(node)
            lower.append(lb)
            upper.append(ub)
        return np.concatenate(lower), np.concatenate(upper)

    def build_qp_assembly(self, ctx):
        problem, b = ctx.problem, ctx.builder
        N, nx, nu = problem.N, problem.nx, problem.nu

        for name in ('Q1', 'R1', 'QN1'):
            if not ctx.hessian[name].is_given:
                raise ConfigurationError(
                    f"The HPMPC interface requires {name} to be known at generation time; "
                    f"provide a constant weighting and Jacobian"
                )

        qp = ctx.qp
        qp['Q'] = b.declare("qpQ", N * nx, nx, StorageClass.WORKSPACE)
        qp['Qf'] = b.declare("qpQf", nx, nx, StorageClass.WORKSPACE)
        qp['S'] = b.declare("qpS", N * nx, nu, StorageClass.WORKSPACE)
        qp['R'] = b.declare("qpR", N * nu, nu, StorageClass.WORKSPACE)
        qp['q'] = b.declare("qpq", N * nx, 1, StorageClass.WORKSPACE)
        qp['qf'] = b.declare("qpqf", nx, 1, StorageClass.WORKSPACE)
        qp['r'] = b.declare("qpr", N * nu, 1, StorageClass.WORKSPACE)
        qp['x'] = b.declare("qpx", (N + 1) * nx, 1, StorageClass.WORKSPACE)
        qp['u'] = b.declare("qpu", N * nu, 1, StorageClass.WORKSPACE)
        qp['nIt'] = b.declare("nIt", 1, 1, StorageClass.WORKSPACE, is_integer=True,
                              doc="Number of iterations of the last QP solve.")

        blk = b.declare_index("blk")
        loop = ForLoop(blk, 0, N)
        loop.add(qp['Q'].get_rows(blk * nx, (blk + 1) * nx).assign(ctx.hessian['Q1']))
        loop.add(qp['R'].get_rows(blk * nu, (blk + 1) * nu).assign(ctx.hessian['R1']))
        ctx.initialize.add(loop)
        ctx.initialize.add(qp['Qf'].assign(ctx.hessian['QN1']))
        ctx.initialize.add(qp['S'].assign(zeros(N * nx, nu)))

    def build_feedback_call(self, ctx, feedback: Function, status: Operand):
        problem, b = ctx.problem, ctx.builder
        N, nx, nu = problem.N, problem.nx, problem.nu
        qp = ctx.qp

        feedback.add(qp['x'].get_rows(0, nx).assign(ctx.x0 - ctx.x.get_row(0).T))
        feedback.add(ctx.Dy.sub_assign(ctx.y.as_column()))
        feedback.add_linebreak()
        feedback.add(ctx.DyN.sub_assign(ctx.yN))
        feedback.add_linebreak()
        for stage in range(N):
            feedback.add(ctx.set_stage_gradient.call(
                qp['q'].get_rows(stage * nx, (stage + 1) * nx),
                qp['r'].get_rows(stage * nu, (stage + 1) * nu),
                stage,
            ))
        feedback.add_linebreak()
        feedback.add(qp['qf'].assign(ctx.hessian['QN2'] * ctx.DyN))
        feedback.add_linebreak()

        wrapper = b.declare_external(
            ctx.external_name("hpmpc_ip_wrapper"), HPMPC_WRAPPER_SIGNATURE, 'int',
            doc="Interior-point solve of the stage-structured QP.",
        )
        feedback.add(wrapper.call(
            N, nx, nu, ctx.ev_gx, ctx.ev_gu, ctx.d,
            qp['Q'], qp['Qf'], qp['S'], qp['R'], qp['q'], qp['qf'], qp['r'],
            qp['lb'], qp['ub'], qp['x'], qp['u'], qp['nIt'],
            result=status,
        ))
        feedback.add_linebreak()
        feedback.add(ctx.x.as_column().add_assign(qp['x']))
        feedback.add(ctx.u.as_column().add_assign(qp['u']))

        b.request_template(HPMPC_INTERFACE_TEMPLATE, f"{ctx.config.prefix}_hpmpc_interface.c")


BACKENDS: Dict[str, Type[QPBackend]] = {
    'hpmpc': HpmpcBackend,
}


def create_backend(name: str) -> QPBackend:
    try:
        return BACKENDS[name]()
    except KeyError:
        raise ConfigurationError(
            f"Unknown QP solver '{name}', available: {', '.join(sorted(BACKENDS))}"
        ) from None
