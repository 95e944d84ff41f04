"""C code emitter for finished programs"""

from dataclasses import dataclass
from typing import Dict, List, Tuple, Union
import logging
import numpy as np

from .ast_nodes import *
from .core import Index, IndexExpr, StorageClass, as_index, format_value
from .expressions import Concat, ElementWise, Expression, Literal, MatMul, Operand, Scale, Slice, Transpose, View
from .generator import Program
from .errors import ArityError, ConfigurationError

logger = logging.getLogger(__name__)

Element = Union[float, str]


@dataclass(frozen=True)
class EmittedProgram:
    declarations: str
    definitions: str
    header: str
    source: str
    header_name: str
    source_name: str
    templates: Tuple[Tuple[str, str], ...] = ()


def _paren(text: str) -> str:
    if ' ' in text or text.startswith('-'):
        return f"({text})"
    return text


def _arguments(args: List[str]) -> str:
    return f" {', '.join(args)} " if args else ""


class CCodeEmitter(ASTVisitor):
    def __init__(self, prefix: str = 'rti', precision: str = 'double', unroll: bool = False):
        if precision not in ('double', 'float'):
            raise ConfigurationError(f"Unsupported precision: {precision}")
        self.prefix = prefix
        self.precision = precision
        self.unroll = unroll
        self.indent_level = 0
        self.code_lines: List[str] = []
        self._bindings: Dict[str, int] = {}
        self._scope: set = set()
        self._params: set = set()
        self._values: Dict[int, np.ndarray] = {}

    # Naming

    @property
    def variables_struct(self) -> str:
        return f"{self.prefix.upper()}Variables"

    @property
    def workspace_struct(self) -> str:
        return f"{self.prefix.upper()}Workspace"

    @property
    def variables_instance(self) -> str:
        return f"{self.prefix}Variables"

    @property
    def workspace_instance(self) -> str:
        return f"{self.prefix}Workspace"

    @property
    def header_name(self) -> str:
        return f"{self.prefix}_common.h"

    @property
    def source_name(self) -> str:
        return f"{self.prefix}_solver.c"

    def symbol(self, function: Function) -> str:
        return f"{self.prefix}_{function.name}"

    # Top level

    def emit(self, program: Program) -> EmittedProgram:
        self._values = {}
        declarations = self._emit_declarations(program)
        definitions = self._emit_definitions(program)
        header = self._emit_header(program, declarations)
        source = self._emit_source(definitions)
        return EmittedProgram(
            declarations=declarations,
            definitions=definitions,
            header=header,
            source=source,
            header_name=self.header_name,
            source_name=self.source_name,
            templates=program.templates,
        )

    def _emit_declarations(self, program: Program) -> str:
        lines = []
        for storage, struct, what in ((StorageClass.INPUT, self.variables_struct, "interface inputs"),
                                      (StorageClass.WORKSPACE, self.workspace_struct, "persistent workspace")):
            lines.append(f"/** Structure of the {what}. */")
            lines.append(f"typedef struct {struct}_")
            lines.append("{")
            members = program.operands_of(storage)
            if not members:
                lines.append("int dummy;")
            for operand in members:
                if operand.doc:
                    lines.append(f"/** {operand.doc} */")
                lines.append(self._declaration(operand))
            lines.append(f"}} {struct};")
            lines.append("")
        lines.append(f"extern {self.variables_struct} {self.variables_instance};")
        lines.append(f"extern {self.workspace_struct} {self.workspace_instance};")
        return '\n'.join(lines)

    def _emit_definitions(self, program: Program) -> str:
        self.code_lines = []
        self.indent_level = 0
        if program.externals:
            self._add_line("/* External functions */")
            for external in program.externals:
                params = ', '.join(f"{ctype} {name}" for ctype, name in external.params) or 'void'
                self._add_line(f"{external.return_type} {external.name}( {params} );")
            self._add_line('')
        constants = program.file_constants()
        for operand in constants:
            self._add_line(self._declaration(operand))
        if constants:
            self._add_line('')
        for function in program.functions:
            self._emit_function(function)
            self._add_line('')
        return '\n'.join(self.code_lines).rstrip('\n') + '\n'

    def _emit_header(self, program: Program, declarations: str) -> str:
        guard = f"{self.prefix.upper()}_COMMON_H"
        real_type = 'double' if self.precision == 'double' else 'float'
        lines = [
            f"#ifndef {guard}",
            f"#define {guard}",
            "",
            "#include <math.h>",
            "",
            "#ifdef __cplusplus",
            "extern \"C\"",
            "{",
            "#endif",
            "",
            "/** Floating point type of the generated solver. */",
            f"typedef {real_type} real_t;",
            "",
        ]
        for name, value in program.defines:
            lines.append(f"#define {self.prefix.upper()}_{name} {value}")
        if program.defines:
            lines.append("")
        lines.append(declarations)
        lines.append("")
        for function in program.functions:
            lines.extend(self._prototype(function))
            lines.append("")
        lines.extend([
            "#ifdef __cplusplus",
            "} /* extern \"C\" */",
            "#endif",
            "",
            f"#endif /* {guard} */",
            "",
        ])
        return '\n'.join(lines)

    def _emit_source(self, definitions: str) -> str:
        banner = [
            "/******************************************************************************/",
            "/*                                                                            */",
            "/* Generated RTI solver, do not edit                                          */",
            "/*                                                                            */",
            "/******************************************************************************/",
        ]
        lines = [f"#include \"{self.header_name}\"", ""]
        lines.extend(banner)
        lines.extend([
            "",
            f"{self.variables_struct} {self.variables_instance};",
            f"{self.workspace_struct} {self.workspace_instance};",
            "",
            definitions,
        ])
        return '\n'.join(lines)

    # Declarations and signatures

    def _ctype(self, operand: Operand) -> str:
        return 'int' if operand.is_integer else 'real_t'

    def _declaration(self, operand: Operand) -> str:
        ctype = self._ctype(operand)
        if operand.storage is StorageClass.CONSTANT:
            values = [format_value(v, self.precision) for v in operand.value().reshape(-1)]
            if operand.shape == (1, 1):
                return f"static const {ctype} {operand.name} = {values[0]};"
            return f"static const {ctype} {operand.name}[{operand.size}] = {{ {', '.join(values)} }};"
        if operand.shape == (1, 1):
            return f"{ctype} {operand.name};"
        return f"{ctype} {operand.name}[{operand.size}];"

    def _signature(self, function: Function) -> str:
        outputs = {id(op) for op in function.outputs()}
        params = []
        for param in function.params:
            if isinstance(param, Index):
                params.append(f"int {param.name}")
            elif id(param) in outputs:
                params.append(f"{self._ctype(param)}* const {param.name}")
            else:
                params.append(f"const {self._ctype(param)}* const {param.name}")
        return f"{function.return_type} {self.symbol(function)}( {', '.join(params) or 'void'} )"

    def _prototype(self, function: Function) -> List[str]:
        lines = []
        if function.doc:
            lines.append(f"/** {function.doc}")
            if function.return_doc:
                lines.append(" *")
                lines.append(f" *  \\return {function.return_doc}")
            lines.append(" */")
        lines.append(self._signature(function) + ";")
        return lines

    # Code emission

    def _indent(self) -> str:
        return '    ' * self.indent_level

    def _add_line(self, line: str):
        if line:
            self.code_lines.append(self._indent() + line)
        else:
            self.code_lines.append('')

    def _emit_function(self, function: Function):
        self._params = {id(p) for p in function.params if isinstance(p, Operand)}
        self._scope = {p.name for p in function.params if isinstance(p, Index)}
        self._bindings = {}
        self._add_line(self._signature(function))
        self._add_line("{")
        self.indent_level += 1
        for operand in function.locals:
            self._add_line(self._declaration(operand))
        if function.locals:
            self._add_line('')
        function.body.accept(self)
        if function.return_value is not None:
            self._add_line(f"return {function.return_value.name};")
        self.indent_level -= 1
        self._add_line("}")
        self._params = set()
        self._scope = set()

    def visit_block(self, node: Block):
        for child in node.flatten():
            child.accept(self)

    def visit_comment(self, node: Comment):
        self._add_line(f"// {node.text}")

    def visit_raw_code(self, node: RawCode):
        for line in node.text.split('\n'):
            self._add_line(line)

    def visit_assignment(self, node: Assignment):
        rows, cols = node.target.shape
        for i in range(rows):
            for j in range(cols):
                target = self._element(node.target, i, j)
                value = self._element(node.value, i, j)
                if isinstance(value, float) and value == 0.0 and node.op != '=':
                    continue
                self._add_line(f"{target} {node.op} {self._render(value)};")

    def visit_loop(self, node: ForLoop):
        if node.trip_count == 0:
            return
        name = node.index.name
        if name in self._scope:
            raise ConfigurationError(f"Loop index '{name}' is already bound")
        self._scope.add(name)
        if self.unroll:
            for value in range(node.start, node.end):
                self._add_line(f"// Iteration {value}")
                self._bindings[name] = value
                node.body.accept(self)
            del self._bindings[name]
        else:
            if node.parallel:
                private = ', '.join(op.name for op in node.private)
                self._add_line(f"#pragma omp parallel for private({private})" if private else "#pragma omp parallel for")
            self._add_line(f"for (int {name} = {node.start}; {name} < {node.end}; {name}++) {{")
            self.indent_level += 1
            node.body.accept(self)
            self.indent_level -= 1
            self._add_line("}")
        self._scope.discard(name)

    def visit_function_call(self, node: FunctionCall):
        args = []
        for param, arg in zip(node.function.params, node.args):
            if isinstance(param, Index):
                args.append(str(self._bind(arg)))
            else:
                args.append(self._pointer(arg))
        call = f"{self.symbol(node.function)}({_arguments(args)});"
        if node.result is not None:
            call = f"{self._element(node.result, 0, 0)} = {call}"
        self._add_line(call)

    def visit_external_call(self, node: ExternalCall):
        if len(node.args) != node.function.arity:
            raise ArityError(f"{node.function.name} expects {node.function.arity} arguments, got {len(node.args)}")
        args = [str(arg) if isinstance(arg, Literal) else self._pointer(arg) for arg in node.args]
        call = f"{node.function.name}({_arguments(args)});"
        if node.result is not None:
            call = f"{self._element(node.result, 0, 0)} = {call}"
        self._add_line(call)

    # Operand access

    def _bind(self, index: IndexExpr) -> IndexExpr:
        index = as_index(index).bind(self._bindings)
        if not index.is_constant and index.base not in self._scope:
            raise ConfigurationError(f"Index '{index.base}' is used outside of its scope")
        return index

    def _ref(self, operand: Operand) -> str:
        if operand.storage is StorageClass.INPUT:
            return f"{self.variables_instance}.{operand.name}"
        if operand.storage is StorageClass.WORKSPACE:
            return f"{self.workspace_instance}.{operand.name}"
        return operand.name

    def _is_plain(self, operand: Operand) -> bool:
        return operand.shape == (1, 1) and id(operand) not in self._params

    def _access(self, operand: Operand, flat: IndexExpr) -> str:
        flat = self._bind(flat)
        if self._is_plain(operand):
            return self._ref(operand)
        return f"{self._ref(operand)}[{flat}]"

    def _pointer(self, expr: Expression) -> str:
        operand = expr.base_operand()
        offset = expr.contiguous_offset()
        if operand is None or offset is None:
            raise ConfigurationError(f"{expr!r} cannot be passed by address")
        offset = self._bind(offset)
        if self._is_plain(operand):
            return f"&{self._ref(operand)}"
        if offset.is_constant and offset.offset == 0:
            return self._ref(operand)
        return f"&{self._ref(operand)}[{offset}]"

    # Element rendering; floats are compile-time values, strings runtime C expressions

    def _given_value(self, node: Expression) -> np.ndarray:
        key = id(node)
        if key not in self._values:
            self._values[key] = node.value()
        return self._values[key]

    def _element(self, node: Expression, i, j) -> Element:
        i, j = as_index(i).bind(self._bindings), as_index(j).bind(self._bindings)
        if node.is_given and i.is_constant and j.is_constant:
            return float(self._given_value(node)[i.offset, j.offset])
        if isinstance(node, Operand):
            return self._access(node, i * node.cols + j)
        if isinstance(node, Transpose):
            return self._element(node.operand, j, i)
        if isinstance(node, Slice):
            return self._element(node.operand, i + node.row_start, j + node.col_start)
        if isinstance(node, View):
            return self._access(node.operand, node.offset + i * node.cols + j)
        if isinstance(node, Scale):
            return self._product(node.factor, self._element(node.operand, i, j))
        if isinstance(node, MatMul):
            terms = []
            for k in range(node.left.cols):
                left = self._element(node.left, i, k)
                if isinstance(left, float) and left == 0.0:
                    continue
                terms.append(self._product(left, self._element(node.right, k, j)))
            return self._sum(terms)
        if isinstance(node, ElementWise):
            left, right = self._element(node.left, i, j), self._element(node.right, i, j)
            if node.op == 'add':
                return self._sum([left, right])
            if node.op == 'sub':
                return self._difference(left, right)
            return self._product(left, right)
        if isinstance(node, Concat):
            position = j if node.axis == 1 else i
            if not position.is_constant:
                raise ConfigurationError("Concatenations can only be indexed with constant positions")
            part, local = node.locate(position.offset)
            if node.axis == 1:
                return self._element(part, i, local)
            return self._element(part, local, j)
        raise ConfigurationError(f"Cannot render {node!r}")

    def _render(self, element: Element) -> str:
        if isinstance(element, float):
            return format_value(element, self.precision)
        return element

    def _product(self, left: Element, right: Element) -> Element:
        if isinstance(left, float) and isinstance(right, float):
            return left * right
        if isinstance(right, float):
            left, right = right, left
        if isinstance(left, float):
            if left == 0.0:
                return 0.0
            if left == 1.0:
                return right
            if left == -1.0:
                return f"-{_paren(right)}"
            return f"{self._render(left)}*{_paren(right)}"
        return f"{_paren(left)}*{_paren(right)}"

    def _sum(self, terms: List[Element]) -> Element:
        constant = sum(t for t in terms if isinstance(t, float))
        runtime = [t for t in terms if isinstance(t, str)]
        if not runtime:
            return float(constant)
        if constant != 0.0:
            runtime.append(self._render(constant))
        return ' + '.join(runtime)

    def _difference(self, left: Element, right: Element) -> Element:
        if isinstance(right, float):
            return self._sum([left, -right])
        if isinstance(left, float) and left == 0.0:
            return f"-{_paren(right)}"
        return f"{self._render(left)} - {_paren(right)}"
