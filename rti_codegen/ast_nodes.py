"""Statement and control nodes of the program tree"""

from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence, Tuple, Union
from abc import ABC, abstractmethod

from .core import StorageClass, Index, IndexExpr, as_index
from .expressions import Expression, Operand, Literal, _is_number
from .errors import ArityError, ConfigurationError, MutationError, ShapeError


class ASTNode(ABC):
    @abstractmethod
    def accept(self, visitor):
        pass


@dataclass(eq=False)
class Assignment(ASTNode):
    target: Expression
    value: Expression
    op: str = '='

    def __post_init__(self):
        if self.op not in ('=', '+=', '-='):
            raise ConfigurationError(f"Unknown assignment operator: {self.op}")
        if self.target.shape != self.value.shape:
            raise ShapeError(f"assignment '{self.op}'", self.target.shape, self.value.shape)
        base = self.target.base_operand()
        if base is None:
            raise ConfigurationError(f"Cannot assign to a non-addressable expression {self.target!r}")
        if base.storage in (StorageClass.INPUT, StorageClass.CONSTANT):
            raise MutationError(f"Cannot assign to {base.storage.value} operand '{base.name}'")

    def accept(self, visitor):
        return visitor.visit_assignment(self)


@dataclass(eq=False)
class Comment(ASTNode):
    text: str

    def accept(self, visitor):
        return visitor.visit_comment(self)


@dataclass(eq=False)
class RawCode(ASTNode):
    text: str

    def accept(self, visitor):
        return visitor.visit_raw_code(self)


@dataclass(eq=False)
class Block(ASTNode):
    nodes: List[ASTNode] = field(default_factory=list)

    def append(self, node: ASTNode) -> 'Block':
        if not isinstance(node, ASTNode):
            raise ConfigurationError(f"Cannot add {node!r} to a block")
        self.nodes.append(node)
        return self

    def add_linebreak(self) -> 'Block':
        return self.append(RawCode(""))

    def flatten(self) -> Tuple[ASTNode, ...]:
        return tuple(self.nodes)

    def walk(self) -> Iterator[ASTNode]:
        for node in self.nodes:
            yield node
            if isinstance(node, ForLoop):
                yield from node.body.walk()
            elif isinstance(node, Block):
                yield from node.walk()

    def accept(self, visitor):
        return visitor.visit_block(self)


@dataclass(eq=False)
class ForLoop(ASTNode):
    index: Index
    start: int
    end: int
    body: Block = field(default_factory=Block)
    parallel: bool = False
    private: List[Operand] = field(default_factory=list)

    def __post_init__(self):
        if not isinstance(self.index, Index):
            raise ConfigurationError(f"Loop index must be an Index, got {self.index!r}")
        if self.start > self.end:
            raise ConfigurationError(
                f"Loop over '{self.index.name}' has lower bound {self.start} above upper bound {self.end}"
            )

    def add(self, node: ASTNode) -> 'ForLoop':
        self.body.append(node)
        return self

    def add_linebreak(self) -> 'ForLoop':
        self.body.add_linebreak()
        return self

    @property
    def trip_count(self) -> int:
        return self.end - self.start

    def accept(self, visitor):
        return visitor.visit_loop(self)


Parameter = Union[Operand, Index]


class Function:
    """Reusable unit of the program; rendered as one C function."""

    def __init__(self, name: str, *params: Parameter, doc: Optional[str] = None):
        for param in params:
            if isinstance(param, Operand) and param.storage is not StorageClass.LOCAL:
                raise ConfigurationError(f"Parameter '{param.name}' of {name} must be a local operand")
            if not isinstance(param, (Operand, Index)):
                raise ConfigurationError(f"Invalid parameter {param!r} of {name}")
        self.name = name
        self.params: Tuple[Parameter, ...] = tuple(params)
        self.doc = doc
        self.body = Block()
        self.locals: List[Operand] = []
        self.return_value: Optional[Operand] = None
        self.return_doc: Optional[str] = None

    def __repr__(self):
        return f"Function({self.name}, params={len(self.params)})"

    def add(self, node: ASTNode) -> 'Function':
        self.body.append(node)
        return self

    def add_linebreak(self) -> 'Function':
        self.body.add_linebreak()
        return self

    def add_local(self, operand: Operand) -> Operand:
        if operand.storage not in (StorageClass.LOCAL, StorageClass.CONSTANT):
            raise ConfigurationError(f"Only local or constant operands can be declared inside {self.name}")
        if operand not in self.locals:
            self.locals.append(operand)
        return operand

    def set_return(self, operand: Operand, doc: Optional[str] = None) -> 'Function':
        if self.return_value is not None:
            raise ConfigurationError(f"{self.name} already returns '{self.return_value.name}'")
        if operand.storage is not StorageClass.LOCAL or operand.shape != (1, 1):
            raise ConfigurationError(f"Return value of {self.name} must be a local scalar")
        self.return_value = operand
        self.return_doc = doc or operand.doc
        self.add_local(operand)
        return self

    @property
    def return_type(self) -> str:
        if self.return_value is None:
            return 'void'
        return 'int' if self.return_value.is_integer else 'real_t'

    def outputs(self) -> List[Operand]:
        """Parameters written by the body, directly or through nested calls."""
        written = set()
        for node in self.body.walk():
            if isinstance(node, Assignment):
                written.add(id(node.target.base_operand()))
            elif isinstance(node, FunctionCall):
                callee_outputs = {id(p) for p in node.function.outputs()}
                for param, arg in zip(node.function.params, node.args):
                    if id(param) in callee_outputs and isinstance(arg, Expression):
                        written.add(id(arg.base_operand()))
            elif isinstance(node, ExternalCall):
                for ctype, arg in zip(node.function.ctypes, node.args):
                    if isinstance(arg, Expression) and '*' in ctype and not ctype.startswith('const'):
                        written.add(id(arg.base_operand()))
        return [p for p in self.params if isinstance(p, Operand) and id(p) in written]

    def call(self, *args, result: Optional[Operand] = None) -> 'FunctionCall':
        return FunctionCall(self, list(args), result)


@dataclass(eq=False)
class FunctionCall(ASTNode):
    function: Function
    args: List[Union[Expression, IndexExpr, int]]
    result: Optional[Operand] = None

    def __post_init__(self):
        name = self.function.name
        if len(self.args) != len(self.function.params):
            raise ArityError(f"{name} expects {len(self.function.params)} arguments, got {len(self.args)}")
        bound = []
        outputs = {id(p) for p in self.function.outputs()}
        for position, (param, arg) in enumerate(zip(self.function.params, self.args)):
            if isinstance(param, Index):
                if isinstance(arg, Expression) or not isinstance(arg, (IndexExpr, int)):
                    raise ArityError(f"Argument {position} of {name} must be an integer index")
                bound.append(as_index(arg))
                continue
            if not isinstance(arg, Expression):
                raise ArityError(f"Argument {position} of {name} must be an expression")
            if arg.shape != param.shape:
                raise ArityError(
                    f"Argument {position} of {name}: expected {param.rows}x{param.cols}, got {arg.rows}x{arg.cols}"
                )
            if not arg.is_addressable:
                raise ConfigurationError(f"Argument {position} of {name} does not refer to contiguous storage")
            base = arg.base_operand()
            if id(param) in outputs and base.storage in (StorageClass.INPUT, StorageClass.CONSTANT):
                raise MutationError(f"{name} writes argument {position}, which is {base.storage.value} '{base.name}'")
            bound.append(arg)
        self.args = bound
        _check_result(name, self.function.return_value is not None, self.result)

    def accept(self, visitor):
        return visitor.visit_function_call(self)


class ExternalFunction:
    """Symbol implemented outside of the generated program."""

    def __init__(self, name: str, params: Sequence[Tuple[str, str]], return_type: str = 'void',
                 doc: Optional[str] = None):
        self.name = name
        self.params: Tuple[Tuple[str, str], ...] = tuple(params)
        self.return_type = return_type
        self.doc = doc

    def __repr__(self):
        return f"ExternalFunction({self.name}, params={len(self.params)})"

    @property
    def ctypes(self) -> List[str]:
        return [ctype for ctype, _ in self.params]

    @property
    def arity(self) -> int:
        return len(self.params)

    def call(self, *args, result: Optional[Operand] = None) -> 'ExternalCall':
        return ExternalCall(self, list(args), result)


@dataclass(eq=False)
class ExternalCall(ASTNode):
    function: ExternalFunction
    args: List[Expression]
    result: Optional[Operand] = None

    def __post_init__(self):
        name = self.function.name
        if len(self.args) != self.function.arity:
            raise ArityError(f"{name} expects {self.function.arity} arguments, got {len(self.args)}")
        args = []
        for position, (ctype, arg) in enumerate(zip(self.function.ctypes, self.args)):
            if _is_number(arg):
                arg = Literal(arg)
            if not isinstance(arg, Expression):
                raise ArityError(f"Argument {position} of {name} must be an expression")
            if '*' in ctype and not arg.is_addressable:
                raise ConfigurationError(f"Argument {position} of {name} must refer to contiguous storage")
            if '*' in ctype and not ctype.startswith('const'):
                base = arg.base_operand()
                if base.storage in (StorageClass.INPUT, StorageClass.CONSTANT):
                    raise MutationError(f"{name} writes argument {position}, which is {base.storage.value} '{base.name}'")
            if '*' not in ctype and not isinstance(arg, Literal):
                raise ArityError(f"Argument {position} of {name} must be a literal {ctype}")
            args.append(arg)
        self.args = args
        _check_result(name, self.function.return_type != 'void', self.result)

    def accept(self, visitor):
        return visitor.visit_external_call(self)


def _check_result(name: str, returns_value: bool, result: Optional[Operand]):
    if result is None:
        return
    if not returns_value:
        raise ArityError(f"{name} does not return a value")
    if result.shape != (1, 1):
        raise ShapeError(f"result of {name}", result.shape, (1, 1))
    if result.storage in (StorageClass.INPUT, StorageClass.CONSTANT):
        raise MutationError(f"Cannot assign the result of {name} to '{result.name}'")


class ASTVisitor(ABC):
    @abstractmethod
    def visit_assignment(self, node: Assignment): pass

    @abstractmethod
    def visit_comment(self, node: Comment): pass

    @abstractmethod
    def visit_raw_code(self, node: RawCode): pass

    @abstractmethod
    def visit_block(self, node: Block): pass

    @abstractmethod
    def visit_loop(self, node: ForLoop): pass

    @abstractmethod
    def visit_function_call(self, node: FunctionCall): pass

    @abstractmethod
    def visit_external_call(self, node: ExternalCall): pass
