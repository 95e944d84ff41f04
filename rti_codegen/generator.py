from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple
import logging
import numpy as np

from .core import Index, StorageClass, as_matrix
from .expressions import Expression, Operand, referenced_operands
from .ast_nodes import Assignment, ExternalCall, ExternalFunction, ForLoop, Function, FunctionCall, ASTNode
from .errors import ConfigurationError, NameConflictError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Program:
    """Finished program tree handed to an emitter."""
    operands: Tuple[Operand, ...]
    functions: Tuple[Function, ...]
    externals: Tuple[ExternalFunction, ...]
    defines: Tuple[Tuple[str, int], ...]
    templates: Tuple[Tuple[str, str], ...]

    def operands_of(self, *storage: StorageClass) -> List[Operand]:
        return [op for op in self.operands if op.storage in storage]

    def file_constants(self) -> List[Operand]:
        owned = {id(op) for fn in self.functions for op in fn.locals}
        return [op for op in self.operands_of(StorageClass.CONSTANT) if id(op) not in owned]

    def function(self, name: str) -> Function:
        for fn in self.functions:
            if fn.name == name:
                return fn
        raise KeyError(name)


class ProgramBuilder:
    """Owns the namespace of one generation run."""

    def __init__(self):
        self.operands: Dict[str, Operand] = {}
        self.indices: Dict[str, Index] = {}
        self.functions: List[Function] = []
        self.externals: List[ExternalFunction] = []
        self.defines: List[Tuple[str, int]] = []
        self.templates: List[Tuple[str, str]] = []
        self.finished = False

    def _check_open(self):
        if self.finished:
            raise ConfigurationError("Program has already been finished")

    def _check_name(self, name: str):
        taken = (name in self.operands or name in self.indices
                 or any(fn.name == name for fn in self.functions)
                 or any(ext.name == name for ext in self.externals))
        if taken:
            raise NameConflictError(f"Name '{name}' is already declared")

    def declare(self, name: str, rows: int, cols: int, storage: StorageClass,
                value: Optional[np.ndarray] = None, is_integer: bool = False,
                doc: Optional[str] = None) -> Operand:
        self._check_open()
        self._check_name(name)
        if rows < 1 or cols < 1:
            raise ConfigurationError(f"Operand '{name}' must have a positive shape, got {rows}x{cols}")
        payload = None
        if value is not None:
            if storage is not StorageClass.CONSTANT:
                raise ConfigurationError(f"Only constant operands can carry a value, '{name}' is {storage.value}")
            payload = as_matrix(value, rows, cols)
            if payload.shape != (rows, cols):
                raise ConfigurationError(
                    f"Value of '{name}' has shape {payload.shape[0]}x{payload.shape[1]}, expected {rows}x{cols}"
                )
        elif storage is StorageClass.CONSTANT:
            raise ConfigurationError(f"Constant operand '{name}' needs a value")
        operand = Operand(name, [rows, cols], storage, payload, is_integer, doc)
        self.operands[name] = operand
        return operand

    def constant(self, name: str, value, doc: Optional[str] = None) -> Operand:
        matrix = as_matrix(value)
        return self.declare(name, matrix.shape[0], matrix.shape[1], StorageClass.CONSTANT, matrix, doc=doc)

    def declare_index(self, name: str) -> Index:
        self._check_open()
        self._check_name(name)
        index = Index(name)
        self.indices[name] = index
        return index

    def add_function(self, function: Function) -> Function:
        self._check_open()
        self._check_name(function.name)
        self.functions.append(function)
        return function

    def declare_external(self, name: str, params: Sequence[Tuple[str, str]], return_type: str = 'void',
                         doc: Optional[str] = None) -> ExternalFunction:
        self._check_open()
        self._check_name(name)
        external = ExternalFunction(name, params, return_type, doc)
        self.externals.append(external)
        return external

    def add_define(self, name: str, value: int):
        self.defines.append((name, int(value)))

    def request_template(self, template: str, output_name: str):
        self.templates.append((template, output_name))

    def _check_references(self, function: Function):
        """Operands must come from this builder; locals must belong to the function using them."""
        owned = {id(p) for p in function.params if isinstance(p, Operand)}
        owned.update(id(op) for op in function.locals)
        used = [p for p in function.params if isinstance(p, Operand)] + list(function.locals)
        for node in function.body.walk():
            used.extend(_node_operands(node))
        for operand in used:
            if self.operands.get(operand.name) is not operand:
                raise ConfigurationError(f"Operand '{operand.name}' used in {function.name} was not declared")
            if operand.storage is StorageClass.LOCAL and id(operand) not in owned:
                raise ConfigurationError(
                    f"Local operand '{operand.name}' is neither a parameter nor a local of {function.name}"
                )

    def finish(self) -> Program:
        self._check_open()
        for function in self.functions:
            self._check_references(function)
        self.finished = True
        logger.debug(f"Program finished: {len(self.operands)} operands, {len(self.functions)} functions")
        return Program(
            operands=tuple(self.operands.values()),
            functions=tuple(self.functions),
            externals=tuple(self.externals),
            defines=tuple(self.defines),
            templates=tuple(self.templates),
        )


def _node_operands(node: ASTNode) -> Iterator[Operand]:
    if isinstance(node, Assignment):
        expressions = [node.target, node.value]
    elif isinstance(node, (FunctionCall, ExternalCall)):
        expressions = [arg for arg in node.args if isinstance(arg, Expression)]
        if node.result is not None:
            expressions.append(node.result)
    elif isinstance(node, ForLoop):
        expressions = list(node.private)
    else:
        expressions = []
    for expr in expressions:
        yield from referenced_operands(expr)
