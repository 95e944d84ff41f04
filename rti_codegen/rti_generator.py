"""
Real-Time Iteration solver generator
"""

import os
import logging
import numpy as np
from typing import Optional, Dict, List
from dataclasses import dataclass, field

from .core import INFTY, StorageClass
from .generator import Program, ProgramBuilder
from .expressions import Expression, Operand, hstack, zeros
from .ast_nodes import ExternalFunction, ForLoop, Function
from .emitters import CCodeEmitter, EmittedProgram
from .errors import ConfigurationError, GenerationError, ShapeError

logger = logging.getLogger(__name__)

TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'templates')


@dataclass
class GeneratorConfig:
    """Configuration for RTI solver generation"""
    prefix: str = 'rti'
    unroll: bool = False
    use_openmp: bool = False
    precision: str = 'double'
    qp_solver: str = 'hpmpc'
    export_folder: str = 'rti_export'
    validate: bool = False


@dataclass(frozen=True, eq=False)
class ProblemShape:
    """
    Dimensions and weighting structure of a least-squares OCP

    The shape is fixed once constructed: fields cannot be reassigned and the
    normalized matrices are read-only.

    Matrices left as None are runtime quantities: weightings become interface
    inputs, Jacobians are expected in the output of the measurement function
    after the residual (Fx, then Fu, row-major).
    """
    N: int
    nx: int
    nu: int
    ny: int
    nyn: int
    nod: int = 0
    W: Optional[np.ndarray] = None
    WN: Optional[np.ndarray] = None
    Fx: Optional[np.ndarray] = None
    Fu: Optional[np.ndarray] = None
    FxEnd: Optional[np.ndarray] = None
    S1: Optional[np.ndarray] = None
    variable_cross_term: bool = False
    variable_weighting: bool = False
    levenberg_marquardt: float = 0.0
    x_lb: Optional[np.ndarray] = None
    x_ub: Optional[np.ndarray] = None
    u_lb: Optional[np.ndarray] = None
    u_ub: Optional[np.ndarray] = None

    def __post_init__(self):
        for name in ('N', 'nx', 'nu', 'ny', 'nyn'):
            if int(getattr(self, name)) < 1:
                raise ConfigurationError(f"Dimension {name} must be positive, got {getattr(self, name)}")
        if self.nod < 0:
            raise ConfigurationError(f"Dimension nod must not be negative, got {self.nod}")
        if self.levenberg_marquardt < 0.0:
            raise ConfigurationError(f"Levenberg-Marquardt regularization must be non-negative, got {self.levenberg_marquardt}")
        if self.variable_weighting and self.W is not None:
            raise ConfigurationError("A stage-varying weighting matrix cannot be given as a constant")

        self._normalize('W', self._payload('W', self.W, self.ny, self.ny))
        self._normalize('WN', self._payload('WN', self.WN, self.nyn, self.nyn))
        self._normalize('Fx', self._payload('Fx', self.Fx, self.ny, self.nx))
        self._normalize('Fu', self._payload('Fu', self.Fu, self.ny, self.nu))
        self._normalize('FxEnd', self._payload('FxEnd', self.FxEnd, self.nyn, self.nx))
        S1 = self.S1
        if S1 is None and not self.variable_cross_term:
            S1 = np.zeros((self.nu, self.nx))
        self._normalize('S1', self._payload('S1', S1, self.nu, self.nx))

        self._normalize('x_lb', self._bounds('x_lb', self.x_lb, self.N + 1, self.nx, -INFTY))
        self._normalize('x_ub', self._bounds('x_ub', self.x_ub, self.N + 1, self.nx, INFTY))
        self._normalize('u_lb', self._bounds('u_lb', self.u_lb, self.N, self.nu, -INFTY))
        self._normalize('u_ub', self._bounds('u_ub', self.u_ub, self.N, self.nu, INFTY))

    def _normalize(self, name: str, value: Optional[np.ndarray]):
        if value is not None:
            value.setflags(write=False)
        object.__setattr__(self, name, value)

    @staticmethod
    def _payload(name: str, value, rows: int, cols: int) -> Optional[np.ndarray]:
        if value is None:
            return None
        matrix = np.atleast_2d(np.array(value, dtype=np.float64))
        if matrix.shape != (rows, cols):
            raise ShapeError(f"payload of {name}", matrix.shape, (rows, cols))
        return matrix

    @staticmethod
    def _bounds(name: str, value, nodes: int, n: int, default: float) -> np.ndarray:
        if value is None:
            return np.full((nodes, n), default)
        bounds = np.asarray(value, dtype=np.float64)
        if bounds.ndim == 1 and bounds.size == n:
            bounds = np.tile(bounds, (nodes, 1))
        if bounds.shape != (nodes, n):
            raise ShapeError(f"bounds {name}", bounds.shape if bounds.ndim == 2 else (bounds.size, 1), (nodes, n))
        return np.clip(bounds, -INFTY, INFTY)

    @property
    def num_qp_vars(self) -> int:
        return (self.N + 1) * self.nx + self.N * self.nu

    @property
    def stage_output_size(self) -> int:
        size = self.ny
        if self.Fx is None:
            size += self.ny * self.nx
        if self.Fu is None:
            size += self.ny * self.nu
        return size

    @property
    def terminal_output_size(self) -> int:
        size = self.nyn
        if self.FxEnd is None:
            size += self.nyn * self.nx
        return size

    def control_bounds(self, node: int):
        return self.u_lb[node], self.u_ub[node]

    def state_bounds(self, node: int):
        return self.x_lb[node], self.x_ub[node]


@dataclass
class GenerationContext:
    """State shared by the driver and the QP backend during one run."""
    problem: ProblemShape
    config: GeneratorConfig
    builder: ProgramBuilder

    x: Optional[Operand] = None
    u: Optional[Operand] = None
    od: Optional[Operand] = None
    y: Optional[Operand] = None
    yN: Optional[Operand] = None
    x0: Optional[Operand] = None
    W: Optional[Operand] = None
    WN: Optional[Operand] = None
    Fx: Optional[Operand] = None
    Fu: Optional[Operand] = None
    FxEnd: Optional[Operand] = None
    Dy: Optional[Operand] = None
    DyN: Optional[Operand] = None
    obj_value_in: Optional[Operand] = None
    obj_value_out: Optional[Operand] = None
    ev_gx: Optional[Operand] = None
    ev_gu: Optional[Operand] = None
    d: Optional[Operand] = None

    model_simulation: Optional[ExternalFunction] = None
    evaluate_lsq: Optional[ExternalFunction] = None
    evaluate_lsq_end_term: Optional[ExternalFunction] = None
    integrate: Optional[ExternalFunction] = None

    initialize: Optional[Function] = None
    evaluate_objective: Optional[Function] = None
    evaluate_constraints: Optional[Function] = None
    set_stage_gradient: Optional[Function] = None

    hessian: Dict[str, Operand] = field(default_factory=dict)
    qp: Dict[str, Operand] = field(default_factory=dict)

    def external_name(self, name: str) -> str:
        return f"{self.config.prefix}_{name}"

    def stage_input(self, node) -> Expression:
        parts = [self.x.get_row(node), self.u.get_row(node)]
        if self.od is not None:
            parts.append(self.od.get_row(node))
        return hstack(*parts)

    def terminal_input(self) -> Expression:
        parts = [self.x.get_row(self.problem.N)]
        if self.od is not None:
            parts.append(self.od.get_row(self.problem.N))
        return hstack(*parts)

    def stage_weighting(self, node) -> Expression:
        if self.problem.variable_weighting:
            ny = self.problem.ny
            return self.W.get_rows(node * ny, (node + 1) * ny)
        return self.W


def materialize_template(template: str, output_path: str, prefix: str) -> str:
    """Copy a template next to the generated sources, substituting the prefix."""
    with open(os.path.join(TEMPLATE_DIR, template), 'r') as f:
        content = f.read()
    content = content.replace('@PREFIX_UPPER@', prefix.upper()).replace('@PREFIX@', prefix)
    with open(output_path, 'w') as f:
        f.write(content)
    return output_path


class RTIGenerator:
    """Complete RTI solver code generator"""

    def __init__(self, problem: ProblemShape, config: Optional[GeneratorConfig] = None, backend=None):
        from .backends import create_backend

        self.problem = problem
        self.config = config or GeneratorConfig()
        self.backend = backend or create_backend(self.config.qp_solver)

    def build(self) -> Program:
        """Build the program tree; fails as a whole on any configuration error."""
        ctx = GenerationContext(self.problem, self.config, ProgramBuilder())

        logger.debug("Solver: setup initialization... ")
        self._setup_variables(ctx)
        self._setup_initialization(ctx)
        logger.debug("done!")

        self._setup_simulation(ctx)
        self.backend.build_objective_evaluation(ctx)
        self.backend.build_constraint_evaluation(ctx)
        self.backend.build_qp_assembly(ctx)
        self._setup_evaluation(ctx)
        self._setup_auxiliary_functions(ctx)
        return ctx.builder.finish()

    def generate(self) -> EmittedProgram:
        return self._emit(self.build())

    def _emit(self, program: Program) -> EmittedProgram:
        if self.config.unroll and self.config.use_openmp:
            logger.warning("OpenMP hint has no effect when loops are unrolled")
        emitter = CCodeEmitter(self.config.prefix, self.config.precision, self.config.unroll)
        return emitter.emit(program)

    def export(self, output_dir: Optional[str] = None) -> List[str]:
        """Write the generated header, source and interface shim; returns the written paths."""
        output_dir = output_dir or self.config.export_folder
        program = self.build()
        emitted = self._emit(program)
        os.makedirs(output_dir, exist_ok=True)

        paths = []
        for name, content in ((emitted.header_name, emitted.header), (emitted.source_name, emitted.source)):
            path = os.path.join(output_dir, name)
            with open(path, 'w') as f:
                f.write(content)
            paths.append(path)
        for template, output_name in emitted.templates:
            paths.append(materialize_template(template, os.path.join(output_dir, output_name), self.config.prefix))

        if self.config.validate:
            from .code_validator import CodeValidator
            result = CodeValidator().validate(
                emitted, program.externals, self.config.prefix,
                [fn.name for fn in program.functions], self.config.precision,
            )
            if not result.passed:
                logger.error(f"Generated code failed to compile: {result.error_details}")
                raise GenerationError(f"Generated code failed to compile: {result.error_details}")

        logger.info(f"Exported RTI solver ({self.backend.name}) to {output_dir}")
        return paths

    # Setup phases

    def _setup_variables(self, ctx: GenerationContext):
        p, b = self.problem, ctx.builder
        N = p.N

        ctx.x = b.declare("x", N + 1, p.nx, StorageClass.WORKSPACE,
                          doc="Matrix containing N+1 differential variable vectors.")
        ctx.u = b.declare("u", N, p.nu, StorageClass.WORKSPACE,
                          doc="Matrix containing N control variable vectors.")
        if p.nod > 0:
            ctx.od = b.declare("od", N + 1, p.nod, StorageClass.INPUT,
                               doc="Matrix containing N+1 online data vectors.")
        ctx.y = b.declare("y", N, p.ny, StorageClass.INPUT,
                          doc="Matrix containing N reference/measurement vectors of size NY.")
        ctx.yN = b.declare("yN", p.nyn, 1, StorageClass.INPUT,
                           doc="Column vector containing the reference/measurement vector of size NYN.")
        ctx.x0 = b.declare("x0", p.nx, 1, StorageClass.INPUT, doc="Current state feedback vector.")

        if p.W is not None:
            ctx.W = b.constant("W", p.W)
        elif p.variable_weighting:
            ctx.W = b.declare("W", N * p.ny, p.ny, StorageClass.INPUT,
                              doc="Matrix containing N weighting matrices of size NY x NY.")
        else:
            ctx.W = b.declare("W", p.ny, p.ny, StorageClass.INPUT, doc="Weighting matrix of the stage cost.")
        if p.WN is not None:
            ctx.WN = b.constant("WN", p.WN)
        else:
            ctx.WN = b.declare("WN", p.nyn, p.nyn, StorageClass.INPUT, doc="Weighting matrix of the terminal cost.")

        if p.Fx is not None:
            ctx.Fx = b.constant("Fx", p.Fx)
        if p.Fu is not None:
            ctx.Fu = b.constant("Fu", p.Fu)
        if p.FxEnd is not None:
            ctx.FxEnd = b.constant("FxEnd", p.FxEnd)

        ctx.Dy = b.declare("Dy", N * p.ny, 1, StorageClass.WORKSPACE, doc="Stacked stage residuals.")
        ctx.DyN = b.declare("DyN", p.nyn, 1, StorageClass.WORKSPACE, doc="Terminal residual.")
        ctx.obj_value_in = b.declare("objValueIn", 1, p.nx + p.nu + p.nod, StorageClass.WORKSPACE)
        ctx.obj_value_out = b.declare("objValueOut", 1, max(p.stage_output_size, p.terminal_output_size),
                                      StorageClass.WORKSPACE)

        ctx.ev_gx = b.declare("evGx", N * p.nx, p.nx, StorageClass.WORKSPACE,
                              doc="State sensitivities of the shooting intervals.")
        ctx.ev_gu = b.declare("evGu", N * p.nx, p.nu, StorageClass.WORKSPACE,
                              doc="Control sensitivities of the shooting intervals.")
        ctx.d = b.declare("d", N * p.nx, 1, StorageClass.WORKSPACE, doc="Continuity offsets of the shooting intervals.")

    def _setup_initialization(self, ctx: GenerationContext):
        p, b = self.problem, ctx.builder
        for name, value in (("N", p.N), ("NX", p.nx), ("NU", p.nu), ("NY", p.ny), ("NYN", p.nyn),
                            ("NOD", p.nod), ("QP_NV", p.num_qp_vars)):
            b.add_define(name, value)

        ctx.initialize = Function(
            "initialize",
            doc="Solver initialization. Must be called once before any other function call.",
        )
        ctx.initialize.add(ctx.x.assign(zeros(p.N + 1, p.nx)))
        ctx.initialize.add(ctx.u.assign(zeros(p.N, p.nu)))

    def _setup_simulation(self, ctx: GenerationContext):
        b = ctx.builder
        ctx.model_simulation = b.declare_external(
            ctx.external_name("modelSimulation"), [], 'int',
            doc="Simulates all shooting intervals and computes their sensitivities.",
        )
        ctx.evaluate_lsq = b.declare_external(
            ctx.external_name("evaluateLSQ"), [('const real_t*', 'in'), ('real_t*', 'out')],
        )
        ctx.evaluate_lsq_end_term = b.declare_external(
            ctx.external_name("evaluateLSQEndTerm"), [('const real_t*', 'in'), ('real_t*', 'out')],
        )
        ctx.integrate = b.declare_external(
            ctx.external_name("integrate"), [('const real_t*', 'in'), ('real_t*', 'out')], 'int',
        )

    def _setup_evaluation(self, ctx: GenerationContext):
        b = ctx.builder

        preparation = Function("preparationStep", doc="Preparation step of the RTI scheme.")
        ret = b.declare("ret", 1, 1, StorageClass.LOCAL, is_integer=True,
                        doc="Status of the integration module. =0: OK, otherwise the error code.")
        preparation.set_return(ret)
        preparation.add(ctx.model_simulation.call(result=ret))
        preparation.add(ctx.evaluate_objective.call())
        preparation.add(ctx.evaluate_constraints.call())
        b.add_function(preparation)

        feedback = Function("feedbackStep", doc="Feedback/estimation step of the RTI scheme.")
        status = b.declare("retVal", 1, 1, StorageClass.LOCAL, is_integer=True,
                           doc="Status code of the QP solver.")
        feedback.set_return(status)
        self.backend.build_feedback_call(ctx, feedback, status)
        b.add_function(feedback)

    def _setup_auxiliary_functions(self, ctx: GenerationContext):
        p, b = self.problem, ctx.builder
        N = p.N
        run = b.declare_index("run")

        b.add_function(ctx.initialize)

        initialize_nodes = Function(
            "initializeNodes",
            doc="Initialize shooting nodes by a forward simulation starting from the first node.",
        )
        state = initialize_nodes.add_local(
            b.declare("state", 1, p.nx + p.nu + p.nod, StorageClass.LOCAL)
        )
        loop = ForLoop(run, 0, N)
        loop.add(state.assign(ctx.stage_input(run)))
        loop.add(ctx.integrate.call(state, ctx.x.get_row(run + 1)))
        initialize_nodes.add(loop)
        b.add_function(initialize_nodes)

        shift_states = Function("shiftStates", doc="Shift differential variables vector by one interval.")
        loop = ForLoop(run, 0, N)
        loop.add(ctx.x.get_row(run).assign(ctx.x.get_row(run + 1)))
        shift_states.add(loop)
        b.add_function(shift_states)

        shift_controls = Function("shiftControls", doc="Shift controls vector by one interval.")
        loop = ForLoop(run, 0, N - 1)
        loop.add(ctx.u.get_row(run).assign(ctx.u.get_row(run + 1)))
        shift_controls.add(loop)
        b.add_function(shift_controls)

        # TODO: derive the KKT tolerance from the QP multipliers once the HPMPC wrapper returns them
        get_kkt = Function("getKKT", doc="Get the KKT tolerance of the current iterate. Under development.")
        kkt = b.declare("kkt", 1, 1, StorageClass.LOCAL, doc="The KKT tolerance value.")
        get_kkt.set_return(kkt)
        get_kkt.add(kkt.assign(zeros(1, 1)))
        b.add_function(get_kkt)

        b.add_function(self._objective_value_function(ctx, run))

    def _objective_value_function(self, ctx: GenerationContext, run) -> Function:
        p, b = self.problem, ctx.builder
        fn = Function("getObjective", doc="Calculate the objective value.")
        obj_val = b.declare("objVal", 1, 1, StorageClass.LOCAL, doc="Value of the objective function.")
        tmp_dy = fn.add_local(b.declare("tmpDy", 1, p.ny, StorageClass.LOCAL))
        tmp_dy_w = fn.add_local(b.declare("tmpDyW", 1, p.ny, StorageClass.LOCAL))
        tmp_dyn = fn.add_local(b.declare("tmpDyN", 1, p.nyn, StorageClass.LOCAL))
        tmp_dyn_w = fn.add_local(b.declare("tmpDyNW", 1, p.nyn, StorageClass.LOCAL))
        fn.set_return(obj_val)

        fn.add(obj_val.assign(zeros(1, 1)))
        loop = ForLoop(run, 0, p.N)
        loop.add(ctx.obj_value_in.assign(ctx.stage_input(run)))
        loop.add(ctx.evaluate_lsq.call(ctx.obj_value_in, ctx.obj_value_out))
        loop.add(tmp_dy.assign(ctx.obj_value_out.get_cols(0, p.ny) - ctx.y.get_row(run)))
        loop.add(tmp_dy_w.assign(tmp_dy * ctx.stage_weighting(run)))
        loop.add(obj_val.add_assign(tmp_dy_w * tmp_dy.T))
        fn.add(loop)

        fn.add(ctx.obj_value_in.get_cols(0, p.nx + p.nod).assign(ctx.terminal_input()))
        fn.add(ctx.evaluate_lsq_end_term.call(ctx.obj_value_in, ctx.obj_value_out))
        fn.add(tmp_dyn.assign(ctx.obj_value_out.get_cols(0, p.nyn) - ctx.yN.T))
        fn.add(tmp_dyn_w.assign(tmp_dyn * ctx.WN))
        fn.add(obj_val.add_assign(tmp_dyn_w * tmp_dyn.T))
        fn.add(obj_val.assign(0.5 * obj_val))
        return fn


def load_problem(path: str, **overrides) -> ProblemShape:
    """Read a ProblemShape from an .npz archive; keyword overrides win over stored entries."""
    fields = {}
    with np.load(path) as data:
        for key in ('N', 'nx', 'nu', 'ny', 'nyn', 'nod'):
            if key in data:
                fields[key] = int(data[key])
        for key in ('W', 'WN', 'Fx', 'Fu', 'FxEnd', 'S1', 'x_lb', 'x_ub', 'u_lb', 'u_ub'):
            if key in data:
                fields[key] = np.array(data[key], dtype=np.float64)
        for key in ('variable_weighting', 'variable_cross_term'):
            if key in data:
                fields[key] = bool(data[key])
        if 'levenberg_marquardt' in data:
            fields['levenberg_marquardt'] = float(data['levenberg_marquardt'])
    fields.update({key: value for key, value in overrides.items() if value is not None})

    missing = [key for key in ('N', 'nx', 'nu', 'ny', 'nyn') if key not in fields]
    if missing:
        raise ConfigurationError(f"Problem file {path} is missing: {', '.join(missing)}")
    return ProblemShape(**fields)
