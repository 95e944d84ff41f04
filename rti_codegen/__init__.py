from .errors import (
    GenerationError, ConfigurationError, ShapeError, ArityError, NameConflictError, MutationError
)
from .core import INFTY, Index, IndexExpr, StorageClass
from .expressions import Expression, Operand, eye, hstack, literal, vstack, zeros
from .ast_nodes import Block, Comment, ExternalFunction, ForLoop, Function, RawCode
from .generator import Program, ProgramBuilder
from .emitters import CCodeEmitter, EmittedProgram
from .backends import QPBackend, HpmpcBackend, create_backend
from .rti_generator import GeneratorConfig, ProblemShape, RTIGenerator, load_problem

__all__ = [
    'GenerationError',
    'ConfigurationError',
    'ShapeError',
    'ArityError',
    'NameConflictError',
    'MutationError',
    'INFTY',
    'Index',
    'IndexExpr',
    'StorageClass',
    'Expression',
    'Operand',
    'eye',
    'hstack',
    'literal',
    'vstack',
    'zeros',
    'Block',
    'Comment',
    'ExternalFunction',
    'ForLoop',
    'Function',
    'RawCode',
    'Program',
    'ProgramBuilder',
    'CCodeEmitter',
    'EmittedProgram',
    'QPBackend',
    'HpmpcBackend',
    'create_backend',
    'GeneratorConfig',
    'ProblemShape',
    'RTIGenerator',
    'load_problem',
]
