"""
Compile check for generated RTI solvers
"""

import ctypes
import logging
import os
import shutil
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .ast_nodes import ExternalFunction
from .emitters import EmittedProgram

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of code validation"""
    passed: bool
    compile_time: float
    missing_symbols: List[str] = field(default_factory=list)
    kkt_value: Optional[float] = None
    error_details: Optional[str] = None


def compiler_available(compiler: str = 'gcc') -> bool:
    return shutil.which(compiler) is not None


class CodeValidator:
    """Builds the generated sources into a shared library and loads it"""

    def __init__(self, compiler: str = 'gcc', flags: Sequence[str] = ('-std=c99', '-Wall', '-O1'),
                 timeout: float = 60.0):
        self.compiler = compiler
        self.flags = list(flags)
        self.timeout = timeout

    def validate(self, emitted: EmittedProgram, externals: Sequence[ExternalFunction] = (),
                 prefix: str = 'rti', functions: Sequence[str] = (),
                 precision: str = 'double') -> ValidationResult:
        """
        Compile the generated files, link stubs for the external symbols and
        run the initialization entry point

        Args:
            emitted: Output of the C emitter
            externals: External symbols to stub out; ones defined by a
                materialized template are skipped
            prefix: Prefix of the generated symbols
            functions: Unprefixed names of functions that must be exported
            precision: Floating point type of the generated solver

        Returns:
            ValidationResult with compiler diagnostics on failure
        """
        from .rti_generator import materialize_template

        with tempfile.TemporaryDirectory(prefix='rti_validate_') as work_dir:
            sources = []
            for name, content in ((emitted.header_name, emitted.header), (emitted.source_name, emitted.source)):
                with open(os.path.join(work_dir, name), 'w') as f:
                    f.write(content)
            sources.append(os.path.join(work_dir, emitted.source_name))

            defined = ''
            for template, output_name in emitted.templates:
                path = materialize_template(template, os.path.join(work_dir, output_name), prefix)
                with open(path, 'r') as f:
                    defined += f.read()
                sources.append(path)

            stubs = [ext for ext in externals if f"{ext.name}(" not in defined]
            if stubs:
                stub_path = os.path.join(work_dir, 'externals_stub.c')
                with open(stub_path, 'w') as f:
                    f.write(self._stub_source(emitted.header_name, stubs))
                sources.append(stub_path)

            lib_path = os.path.join(work_dir, 'librti_solver.so')
            cmd = [self.compiler, '-shared', '-fPIC', *self.flags, '-o', lib_path, *sources, '-lm']
            logger.debug(f"Compiling: {' '.join(cmd)}")
            start_time = time.perf_counter()
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
            compile_time = time.perf_counter() - start_time

            if result.returncode != 0:
                return ValidationResult(passed=False, compile_time=compile_time,
                                        error_details=result.stderr.strip() or "Compilation failed")
            if result.stderr.strip():
                logger.debug(f"Compiler diagnostics:\n{result.stderr.strip()}")

            lib = ctypes.CDLL(lib_path)
            missing = [name for name in functions if not hasattr(lib, f"{prefix}_{name}")]
            if missing:
                return ValidationResult(passed=False, compile_time=compile_time, missing_symbols=missing,
                                        error_details=f"Missing symbols: {', '.join(missing)}")

            kkt_value = None
            if 'initialize' in functions:
                getattr(lib, f"{prefix}_initialize")()
            if 'getKKT' in functions:
                get_kkt = getattr(lib, f"{prefix}_getKKT")
                get_kkt.restype = ctypes.c_double if precision == 'double' else ctypes.c_float
                get_kkt.argtypes = []
                kkt_value = float(get_kkt())

        return ValidationResult(passed=True, compile_time=compile_time, kkt_value=kkt_value)

    @staticmethod
    def _stub_source(header_name: str, externals: Sequence[ExternalFunction]) -> str:
        lines = [f"#include \"{header_name}\"", ""]
        for external in externals:
            params = ', '.join(f"{ctype} {name}" for ctype, name in external.params) or 'void'
            lines.append(f"{external.return_type} {external.name}( {params} )")
            lines.append("{")
            for _, name in external.params:
                lines.append(f"    (void){name};")
            if external.return_type != 'void':
                lines.append("    return 0;")
            lines.append("}")
            lines.append("")
        return '\n'.join(lines)
