#!/usr/bin/env python3
"""
Unit test for the C code emitter
"""

import unittest
import numpy as np
import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from rti_codegen.core import StorageClass
from rti_codegen.generator import ProgramBuilder
from rti_codegen.expressions import hstack, literal, zeros
from rti_codegen.ast_nodes import Comment, ForLoop, Function
from rti_codegen.emitters import CCodeEmitter
from rti_codegen.errors import ConfigurationError


class TestCCodeEmitter(unittest.TestCase):

    def setUp(self):
        """Set up a builder with a constant, an input and a workspace vector"""
        self.builder = ProgramBuilder()
        self.C = self.builder.constant("C", [[1.0, 0.0], [0.0, 2.0]])
        self.x = self.builder.declare("x", 2, 1, StorageClass.INPUT, doc="Input vector.")
        self.y = self.builder.declare("y", 2, 1, StorageClass.WORKSPACE)

    def _emit(self, unroll=False, precision='double', prefix='rti'):
        return CCodeEmitter(prefix, precision, unroll).emit(self.builder.finish())

    def _function(self, name, *nodes, **kwargs):
        fn = Function(name, **kwargs)
        for node in nodes:
            fn.add(node)
        self.builder.add_function(fn)
        return fn

    def test_given_folding(self):
        """Given factors become literals; zeros and unit factors are simplified"""
        self._function("apply", self.y.assign(self.C * self.x))
        definitions = self._emit().definitions

        self.assertIn("rtiWorkspace.y[0] = rtiVariables.x[0];", definitions)
        self.assertIn("rtiWorkspace.y[1] = 2.0*rtiVariables.x[1];", definitions)
        self.assertNotIn("0.0*", definitions)

    def test_fully_given_expression(self):
        self._function("fold", self.y.assign(self.C * self.C.get_col(1)))
        definitions = self._emit().definitions

        self.assertIn("rtiWorkspace.y[0] = 0.0;", definitions)
        self.assertIn("rtiWorkspace.y[1] = 4.0;", definitions)

    def test_float_precision(self):
        self._function("fold", self.y.assign(self.C * self.C.get_col(1)))
        emitted = self._emit(precision='float')

        self.assertIn("rtiWorkspace.y[1] = 4.0f;", emitted.definitions)
        self.assertIn("typedef float real_t;", emitted.header)
        self.assertIn("static const real_t C[4] = { 1.0f, 0.0f, 0.0f, 2.0f };", emitted.definitions)

    def test_compound_assignment_skips_zeros(self):
        self._function("acc", self.y.add_assign(self.C.get_col(0)))
        definitions = self._emit().definitions

        self.assertIn("rtiWorkspace.y[0] += 1.0;", definitions)
        self.assertNotIn("rtiWorkspace.y[1] +=", definitions)

    def test_scale_and_difference(self):
        self._function("ops", self.y.assign(0.5 * self.x), self.y.sub_assign(-self.x))
        definitions = self._emit().definitions

        self.assertIn("rtiWorkspace.y[0] = 0.5*rtiVariables.x[0];", definitions)
        self.assertIn("rtiWorkspace.y[1] -= -rtiVariables.x[1];", definitions)

    def test_declarations(self):
        """Inputs and workspace live in their structs, constants at file scope"""
        self._function("noop", Comment("nothing to do"))
        emitted = self._emit()

        self.assertIn("typedef struct RTIVariables_", emitted.declarations)
        self.assertIn("/** Input vector. */", emitted.declarations)
        self.assertIn("real_t x[2];", emitted.declarations)
        self.assertIn("} RTIWorkspace;", emitted.declarations)
        self.assertIn("extern RTIVariables rtiVariables;", emitted.declarations)
        self.assertIn("static const real_t C[4] = { 1.0, 0.0, 0.0, 2.0 };", emitted.definitions)
        self.assertIn("// nothing to do", emitted.definitions)

        self.assertIn("#ifndef RTI_COMMON_H", emitted.header)
        self.assertIn("typedef double real_t;", emitted.header)
        self.assertIn("void rti_noop( void );", emitted.header)
        self.assertIn("#include \"rti_common.h\"", emitted.source)
        self.assertIn("RTIWorkspace rtiWorkspace;", emitted.source)
        self.assertEqual(emitted.header_name, "rti_common.h")
        self.assertEqual(emitted.source_name, "rti_solver.c")

    def test_prefix(self):
        self._function("noop")
        self.builder.add_define("N", 3)
        emitted = self._emit(prefix='acme')

        self.assertIn("typedef struct ACMEVariables_", emitted.header)
        self.assertIn("#define ACME_N 3", emitted.header)
        self.assertIn("void acme_noop( void );", emitted.header)
        self.assertEqual(emitted.source_name, "acme_solver.c")

    def test_native_and_unrolled_loops(self):
        """A loop is either rendered natively or expanded per iteration"""
        k = self.builder.declare_index("k")
        z = self.builder.declare("z", 3, 2, StorageClass.WORKSPACE)
        loop = ForLoop(k, 0, 2).add(z.get_row(k).assign(z.get_row(k + 1)))
        self._function("shift", loop)
        program = self.builder.finish()

        native = CCodeEmitter().emit(program).definitions
        self.assertIn("for (int k = 0; k < 2; k++) {", native)
        self.assertIn("    rtiWorkspace.z[2*k] = rtiWorkspace.z[2*k+2];", native)
        self.assertIn("rtiWorkspace.z[2*k+1] = rtiWorkspace.z[2*k+3];", native)

        unrolled = CCodeEmitter(unroll=True).emit(program).definitions
        self.assertNotIn("for (", unrolled)
        self.assertIn("// Iteration 0", unrolled)
        self.assertIn("// Iteration 1", unrolled)
        self.assertIn("rtiWorkspace.z[0] = rtiWorkspace.z[2];", unrolled)
        self.assertIn("rtiWorkspace.z[3] = rtiWorkspace.z[5];", unrolled)

    def test_empty_loop(self):
        k = self.builder.declare_index("k")
        self._function("empty", ForLoop(k, 1, 1).add(self.y.assign(zeros(2, 1))))
        definitions = self._emit().definitions

        self.assertNotIn("for (", definitions)
        self.assertNotIn("rtiWorkspace.y", definitions)

    def test_parallel_loop(self):
        k = self.builder.declare_index("k")
        tmp = self.builder.declare("tmp", 1, 2, StorageClass.LOCAL)
        loop = ForLoop(k, 0, 2, parallel=True, private=[tmp]).add(tmp.assign(zeros(1, 2)))
        fn = self._function("par", loop)
        fn.add_local(tmp)
        definitions = self._emit().definitions

        self.assertIn("#pragma omp parallel for private(tmp)", definitions)
        self.assertIn("real_t tmp[2];", definitions)

    def test_index_outside_scope(self):
        """Indices can only be used inside their loop"""
        k = self.builder.declare_index("k")
        self._function("bad", self.y.get_row(k).assign(zeros(1, 1)))
        with self.assertRaises(ConfigurationError):
            self._emit()

    def test_function_signatures_and_calls(self):
        """Written parameters are mutable pointers, read ones are const"""
        src = self.builder.declare("src", 2, 1, StorageClass.LOCAL)
        dst = self.builder.declare("dst", 2, 1, StorageClass.LOCAL)
        idx = self.builder.declare_index("idx")
        copy = Function("copy", src, dst, idx)
        copy.add(dst.assign(src))
        self.builder.add_function(copy)

        w = self.builder.declare("w", 4, 1, StorageClass.WORKSPACE)
        self._function("run", copy.call(w.get_rows(0, 2), w.get_rows(2, 4), 1))
        definitions = self._emit().definitions

        self.assertIn("void rti_copy( const real_t* const src, real_t* const dst, int idx )", definitions)
        self.assertIn("    dst[0] = src[0];", definitions)
        self.assertIn("rti_copy( rtiWorkspace.w, &rtiWorkspace.w[2], 1 );", definitions)

    def test_return_value(self):
        r = self.builder.declare("r", 1, 1, StorageClass.LOCAL, doc="The value.")
        fn = self._function("value", r.assign(zeros(1, 1)), doc="Compute a value.")
        fn.set_return(r)
        emitted = self._emit()

        self.assertIn("real_t rti_value( void )", emitted.definitions)
        self.assertIn("    real_t r;", emitted.definitions)
        self.assertIn("    r = 0.0;", emitted.definitions)
        self.assertIn("    return r;", emitted.definitions)
        self.assertIn("/** Compute a value.", emitted.header)
        self.assertIn(" *  \\return The value.", emitted.header)

    def test_external_calls(self):
        """Externals are forward declared and called by their literal name"""
        sim = self.builder.declare_external("sim", [('const real_t*', 'in'), ('real_t*', 'out')], 'int')
        status = self.builder.declare("status", 1, 1, StorageClass.LOCAL, is_integer=True)
        fn = self._function("step", sim.call(self.x, self.y, result=status))
        fn.set_return(status)
        definitions = self._emit().definitions

        self.assertIn("/* External functions */", definitions)
        self.assertIn("int sim( const real_t* in, real_t* out );", definitions)
        self.assertIn("    int status;", definitions)
        self.assertIn("status = sim( rtiVariables.x, rtiWorkspace.y );", definitions)
        self.assertLess(definitions.index("int sim("), definitions.index("status = sim("))

    def test_scalar_operands(self):
        """1x1 operands are plain scalars and passed by address"""
        s = self.builder.declare("s", 1, 1, StorageClass.WORKSPACE)
        ext = self.builder.declare_external("touch", [('real_t*', 'p')])
        self._function("scalar", s.assign(self.x.get_row(1)), ext.call(s))
        emitted = self._emit()

        self.assertIn("real_t s;", emitted.declarations)
        self.assertIn("rtiWorkspace.s = rtiVariables.x[1];", emitted.definitions)
        self.assertIn("touch( &rtiWorkspace.s );", emitted.definitions)

    def test_concatenation(self):
        row = self.builder.declare("row", 1, 3, StorageClass.WORKSPACE)
        self._function("pack", row.assign(hstack(self.x.T, literal([[np.pi]]))))
        definitions = self._emit().definitions

        self.assertIn("rtiWorkspace.row[0] = rtiVariables.x[0];", definitions)
        self.assertIn("rtiWorkspace.row[1] = rtiVariables.x[1];", definitions)
        self.assertIn(f"rtiWorkspace.row[2] = {repr(np.pi)};", definitions)


if __name__ == '__main__':
    unittest.main()
