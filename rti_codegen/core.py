from dataclasses import dataclass
from typing import Dict, Union
from enum import Enum
import numpy as np

from .errors import ConfigurationError


# Bound value used in place of an infinite box constraint.
INFTY = 1.0e12


class DataType(Enum):
    SCALAR = "scalar"
    VECTOR = "vector"
    MATRIX = "matrix"


class StorageClass(Enum):
    INPUT = "variables"
    WORKSPACE = "workspace"
    LOCAL = "local"
    CONSTANT = "constant"


@dataclass
class IndexExpr:
    base: str
    offset: int = 0
    scale: int = 1

    def __str__(self):
        if self.is_constant:
            return str(self.offset)
        if self.offset == 0 and self.scale == 1:
            return self.base
        elif self.scale == 1:
            if self.offset > 0:
                return f"{self.base}+{self.offset}"
            else:
                return f"{self.base}{self.offset}"
        else:
            if self.offset == 0:
                return f"{self.scale}*{self.base}"
            elif self.offset > 0:
                return f"{self.scale}*{self.base}+{self.offset}"
            else:
                return f"{self.scale}*{self.base}{self.offset}"

    def __repr__(self):
        return str(self)

    @property
    def is_constant(self) -> bool:
        return self.base == "" or self.scale == 0

    def __add__(self, other: Union[int, 'IndexExpr']) -> 'IndexExpr':
        other = as_index(other)
        if other.is_constant:
            if self.is_constant:
                return IndexExpr.constant(self.offset + other.offset)
            return IndexExpr(self.base, self.offset + other.offset, self.scale)
        if self.is_constant:
            return IndexExpr(other.base, other.offset + self.offset, other.scale)
        if self.base == other.base:
            return IndexExpr(self.base, self.offset + other.offset, self.scale + other.scale)
        raise ConfigurationError(f"Cannot combine indices '{self}' and '{other}'")

    __radd__ = __add__

    def __sub__(self, other: Union[int, 'IndexExpr']) -> 'IndexExpr':
        return self + as_index(other) * -1

    def __mul__(self, factor: int) -> 'IndexExpr':
        if not isinstance(factor, (int, np.integer)):
            raise ConfigurationError(f"Index '{self}' can only be scaled by an integer")
        if self.is_constant:
            return IndexExpr.constant(self.offset * int(factor))
        return IndexExpr(self.base, self.offset * int(factor), self.scale * int(factor))

    __rmul__ = __mul__

    def substitute(self, value: int) -> int:
        return self.scale * value + self.offset

    def bind(self, bindings: Dict[str, int]) -> 'IndexExpr':
        if not self.is_constant and self.base in bindings:
            return IndexExpr.constant(self.substitute(bindings[self.base]))
        return self

    @staticmethod
    def constant(value: int) -> 'IndexExpr':
        return IndexExpr("", offset=int(value), scale=0)


class Index(IndexExpr):
    """Named integer symbol bound by a for-loop or an int function parameter."""

    def __init__(self, name: str):
        super().__init__(base=name, offset=0, scale=1)

    @property
    def name(self) -> str:
        return self.base


def as_index(value: Union[int, IndexExpr]) -> IndexExpr:
    if isinstance(value, IndexExpr):
        return value
    if isinstance(value, (int, np.integer)):
        return IndexExpr.constant(int(value))
    raise ConfigurationError(f"Expected an integer or an index, got {value!r}")


def format_value(value: float, precision: str = 'double') -> str:
    text = repr(float(value))
    if not np.isfinite(value):
        raise ConfigurationError(f"Cannot emit non-finite value {text}")
    if precision == 'float':
        return text + "f"
    return text


def as_matrix(value, rows: int = None, cols: int = None) -> np.ndarray:
    matrix = np.atleast_2d(np.asarray(value, dtype=np.float64))
    if matrix.ndim != 2:
        raise ConfigurationError(f"Expected a matrix, got an array with {matrix.ndim} dimensions")
    if rows is not None and cols is not None and matrix.shape != (rows, cols):
        if matrix.shape == (cols, rows) and 1 in matrix.shape:
            matrix = matrix.reshape(rows, cols)
    return matrix
