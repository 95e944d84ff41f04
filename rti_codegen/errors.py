"""Errors raised while building or emitting a program.

All of them are raised during the generation pass; none is deferred to the
emitted program.
"""

from typing import Sequence


class GenerationError(ValueError):
    pass


class ConfigurationError(GenerationError):
    """Unsupported problem structure or malformed IR."""


class ShapeError(ConfigurationError):

    def __init__(self, operation: str, left: Sequence[int], right: Sequence[int]):
        self.operation = operation
        self.left = tuple(left)
        self.right = tuple(right)
        super().__init__(
            f"{operation}: incompatible shapes "
            f"{self.left[0]}x{self.left[1]} and {self.right[0]}x{self.right[1]}"
        )


class ArityError(ConfigurationError):
    """Call site does not match the callee's parameter list."""


class NameConflictError(ConfigurationError):
    pass


class MutationError(ConfigurationError):
    """Assignment to an interface input or a constant."""
