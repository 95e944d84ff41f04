"""
Symbolic operands and expressions

Expressions only record structure; they are never executed here. An
expression whose leaves are all given is given itself and can be folded to a
numerical value at generation time with value().
"""

from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple, Union
from abc import ABC, abstractmethod
import numpy as np

from .core import DataType, StorageClass, IndexExpr, as_index
from .errors import ConfigurationError, ShapeError


Number = (int, float, np.integer, np.floating)


def _is_number(value) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def _extent(start, stop, limit: int, what: str) -> Tuple[IndexExpr, int]:
    start, stop = as_index(start), as_index(stop)
    length = stop - start
    if not length.is_constant:
        raise ConfigurationError(f"{what} range [{start}, {stop}) does not have a fixed length")
    if length.offset < 0:
        raise ConfigurationError(f"{what} range [{start}, {stop}) is reversed")
    if start.is_constant and (start.offset < 0 or start.offset + length.offset > limit):
        raise ConfigurationError(f"{what} range [{start}, {stop}) exceeds the available {limit}")
    return start, length.offset


class Expression(ABC):

    @property
    @abstractmethod
    def shape(self) -> Tuple[int, int]:
        pass

    @property
    @abstractmethod
    def is_given(self) -> bool:
        pass

    @abstractmethod
    def value(self) -> np.ndarray:
        pass

    @property
    def rows(self) -> int:
        return self.shape[0]

    @property
    def cols(self) -> int:
        return self.shape[1]

    @property
    def dtype(self) -> DataType:
        if self.shape == (1, 1):
            return DataType.SCALAR
        if 1 in self.shape:
            return DataType.VECTOR
        return DataType.MATRIX

    def base_operand(self) -> Optional['Operand']:
        return None

    def contiguous_offset(self) -> Optional[IndexExpr]:
        """Flat offset into the base operand if the data is one contiguous run."""
        return None

    @property
    def is_addressable(self) -> bool:
        return self.contiguous_offset() is not None

    def _not_given(self):
        raise ConfigurationError(f"{self!r} is not given")

    # Composition

    def __mul__(self, other):
        if _is_number(other):
            return Scale(float(other), self)
        if isinstance(other, Expression):
            return MatMul(self, other)
        return NotImplemented

    def __rmul__(self, other):
        if _is_number(other):
            return Scale(float(other), self)
        return NotImplemented

    def __add__(self, other):
        if isinstance(other, Expression):
            return ElementWise('add', self, other)
        return NotImplemented

    def __sub__(self, other):
        if isinstance(other, Expression):
            return ElementWise('sub', self, other)
        return NotImplemented

    def __neg__(self):
        return Scale(-1.0, self)

    def hadamard(self, other: 'Expression') -> 'ElementWise':
        return ElementWise('mul', self, other)

    @property
    def T(self) -> 'Transpose':
        return Transpose(self)

    # Slicing helpers

    def get_rows(self, start, stop) -> 'Slice':
        row_start, n_rows = _extent(start, stop, self.rows, "Row")
        return Slice(self, row_start, IndexExpr.constant(0), n_rows, self.cols)

    def get_cols(self, start, stop) -> 'Slice':
        col_start, n_cols = _extent(start, stop, self.cols, "Column")
        return Slice(self, IndexExpr.constant(0), col_start, self.rows, n_cols)

    def get_row(self, row) -> 'Slice':
        return self.get_rows(row, as_index(row) + 1)

    def get_col(self, col) -> 'Slice':
        return self.get_cols(col, as_index(col) + 1)

    def get_block(self, row_start, row_stop, col_start, col_stop) -> 'Slice':
        row_start, n_rows = _extent(row_start, row_stop, self.rows, "Row")
        col_start, n_cols = _extent(col_start, col_stop, self.cols, "Column")
        return Slice(self, row_start, col_start, n_rows, n_cols)

    # Statements

    def assign(self, value: 'Expression'):
        from .ast_nodes import Assignment
        return Assignment(self, value, '=')

    def add_assign(self, value: 'Expression'):
        from .ast_nodes import Assignment
        return Assignment(self, value, '+=')

    def sub_assign(self, value: 'Expression'):
        from .ast_nodes import Assignment
        return Assignment(self, value, '-=')


@dataclass(eq=False)
class Operand(Expression):
    name: str
    dims: List[int]
    storage: StorageClass
    payload: Optional[np.ndarray] = None
    is_integer: bool = False
    doc: Optional[str] = None

    def __repr__(self):
        return f"Operand({self.name}, {self.dtype.value}, dims={self.dims}, storage={self.storage.value})"

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.dims[0], self.dims[1])

    @property
    def is_given(self) -> bool:
        return self.payload is not None

    @property
    def size(self) -> int:
        return self.dims[0] * self.dims[1]

    def value(self) -> np.ndarray:
        if self.payload is None:
            self._not_given()
        return self.payload.copy()

    def base_operand(self) -> 'Operand':
        return self

    def contiguous_offset(self) -> IndexExpr:
        return IndexExpr.constant(0)

    def view(self, offset, rows: int, cols: int) -> 'View':
        offset = as_index(offset)
        if rows < 1 or cols < 1:
            raise ConfigurationError(f"Empty view of {self.name}")
        if offset.is_constant and (offset.offset < 0 or offset.offset + rows * cols > self.size):
            raise ConfigurationError(
                f"View of {rows}x{cols} at offset {offset} exceeds {self.name} ({self.size} elements)"
            )
        return View(self, offset, rows, cols)

    def as_column(self) -> 'View':
        return View(self, IndexExpr.constant(0), self.size, 1)


@dataclass(eq=False)
class Transpose(Expression):
    operand: Expression

    @property
    def shape(self):
        return (self.operand.cols, self.operand.rows)

    @property
    def is_given(self):
        return self.operand.is_given

    def value(self):
        return self.operand.value().T


@dataclass(eq=False)
class MatMul(Expression):
    left: Expression
    right: Expression

    def __post_init__(self):
        if self.left.cols != self.right.rows:
            raise ShapeError("matrix product", self.left.shape, self.right.shape)

    @property
    def shape(self):
        return (self.left.rows, self.right.cols)

    @property
    def is_given(self):
        return self.left.is_given and self.right.is_given

    def value(self):
        return self.left.value() @ self.right.value()


@dataclass(eq=False)
class ElementWise(Expression):
    op: str  # 'add', 'sub', 'mul'
    left: Expression
    right: Expression

    def __post_init__(self):
        if self.op not in ('add', 'sub', 'mul'):
            raise ConfigurationError(f"Unknown elementwise operation: {self.op}")
        if self.left.shape != self.right.shape:
            raise ShapeError(f"elementwise {self.op}", self.left.shape, self.right.shape)

    @property
    def shape(self):
        return self.left.shape

    @property
    def is_given(self):
        return self.left.is_given and self.right.is_given

    def value(self):
        left, right = self.left.value(), self.right.value()
        if self.op == 'add':
            return left + right
        elif self.op == 'sub':
            return left - right
        return left * right


@dataclass(eq=False)
class Scale(Expression):
    factor: float
    operand: Expression

    @property
    def shape(self):
        return self.operand.shape

    @property
    def is_given(self):
        return self.operand.is_given

    def value(self):
        return self.factor * self.operand.value()


@dataclass(eq=False)
class Slice(Expression):
    operand: Expression
    row_start: IndexExpr
    col_start: IndexExpr
    n_rows: int
    n_cols: int

    @property
    def shape(self):
        return (self.n_rows, self.n_cols)

    @property
    def is_given(self):
        return self.operand.is_given and self.row_start.is_constant and self.col_start.is_constant

    def value(self):
        if not self.is_given:
            self._not_given()
        r, c = self.row_start.offset, self.col_start.offset
        return self.operand.value()[r:r + self.n_rows, c:c + self.n_cols]

    def base_operand(self):
        return self.operand.base_operand()

    def contiguous_offset(self):
        offset = self.operand.contiguous_offset()
        if offset is None:
            return None
        full_rows = self.col_start.is_constant and self.col_start.offset == 0 and self.n_cols == self.operand.cols
        if self.n_rows != 1 and not full_rows:
            return None
        return offset + self.row_start * self.operand.cols + self.col_start


@dataclass(eq=False)
class View(Expression):
    """Contiguous run of an operand's storage read as a rows x cols matrix."""
    operand: Operand
    offset: IndexExpr
    n_rows: int
    n_cols: int

    @property
    def shape(self):
        return (self.n_rows, self.n_cols)

    @property
    def is_given(self):
        return self.operand.is_given and self.offset.is_constant

    def value(self):
        if not self.is_given:
            self._not_given()
        flat = self.operand.value().reshape(-1)
        start = self.offset.offset
        return flat[start:start + self.n_rows * self.n_cols].reshape(self.n_rows, self.n_cols)

    def base_operand(self):
        return self.operand

    def contiguous_offset(self):
        return self.offset


@dataclass(eq=False)
class Concat(Expression):
    parts: List[Expression]
    axis: int = 1

    def __post_init__(self):
        if not self.parts:
            raise ConfigurationError("Cannot concatenate an empty list")
        other = 1 - self.axis
        for part in self.parts[1:]:
            if part.shape[other] != self.parts[0].shape[other]:
                kind = "horizontal" if self.axis == 1 else "vertical"
                raise ShapeError(f"{kind} concatenation", self.parts[0].shape, part.shape)

    @property
    def shape(self):
        total = sum(part.shape[self.axis] for part in self.parts)
        if self.axis == 1:
            return (self.parts[0].rows, total)
        return (total, self.parts[0].cols)

    @property
    def is_given(self):
        return all(part.is_given for part in self.parts)

    def value(self):
        return np.concatenate([part.value() for part in self.parts], axis=self.axis)

    def locate(self, position: int) -> Tuple[Expression, int]:
        """Part holding the given row (vertical) or column (horizontal) and the local position."""
        for part in self.parts:
            extent = part.shape[self.axis]
            if position < extent:
                return part, position
            position -= extent
        raise ConfigurationError(f"Position out of range in concatenation of shape {self.shape}")


@dataclass(eq=False)
class Literal(Expression):
    value_: Union[int, float]

    def __str__(self):
        return str(self.value_)

    @property
    def shape(self):
        return (1, 1)

    @property
    def is_given(self):
        return True

    def value(self):
        return np.array([[float(self.value_)]])


@dataclass(eq=False)
class MatrixLiteral(Expression):
    data: np.ndarray = field(repr=False)

    @property
    def shape(self):
        return self.data.shape

    @property
    def is_given(self):
        return True

    def value(self):
        return self.data.copy()


def zeros(rows: int, cols: int) -> MatrixLiteral:
    return MatrixLiteral(np.zeros((rows, cols)))


def eye(n: int) -> MatrixLiteral:
    return MatrixLiteral(np.eye(n))


def literal(matrix) -> MatrixLiteral:
    return MatrixLiteral(np.atleast_2d(np.asarray(matrix, dtype=np.float64)))


def hstack(*parts: Expression) -> Concat:
    return Concat(list(parts), axis=1)


def vstack(*parts: Expression) -> Concat:
    return Concat(list(parts), axis=0)


def referenced_operands(expr: Expression) -> Iterator[Operand]:
    """Operands read or written through an expression, in tree order."""
    if isinstance(expr, Operand):
        yield expr
    elif isinstance(expr, (Transpose, Scale, Slice, View)):
        yield from referenced_operands(expr.operand)
    elif isinstance(expr, (MatMul, ElementWise)):
        yield from referenced_operands(expr.left)
        yield from referenced_operands(expr.right)
    elif isinstance(expr, Concat):
        for part in expr.parts:
            yield from referenced_operands(part)
