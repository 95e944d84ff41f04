#!/usr/bin/env python3
"""
Unit test for the operand model and the program builder
"""

import unittest
import numpy as np
import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from rti_codegen.core import DataType, Index, IndexExpr, StorageClass, as_index, format_value
from rti_codegen.generator import ProgramBuilder
from rti_codegen.expressions import Operand
from rti_codegen.ast_nodes import Function
from rti_codegen.errors import ConfigurationError, NameConflictError


class TestProgramBuilder(unittest.TestCase):

    def setUp(self):
        self.builder = ProgramBuilder()

    def test_declare_shape_and_dtype(self):
        """Declared operands expose their shape and kind"""
        x = self.builder.declare("x", 3, 2, StorageClass.WORKSPACE)
        v = self.builder.declare("v", 3, 1, StorageClass.INPUT)
        s = self.builder.declare("s", 1, 1, StorageClass.LOCAL)

        self.assertEqual(x.shape, (3, 2))
        self.assertEqual((x.rows, x.cols), (3, 2))
        self.assertEqual(x.size, 6)
        self.assertEqual(x.dtype, DataType.MATRIX)
        self.assertEqual(v.dtype, DataType.VECTOR)
        self.assertEqual(s.dtype, DataType.SCALAR)
        self.assertFalse(x.is_given)

    def test_name_conflicts(self):
        """A name can only be taken once across operands, indices, functions and externals"""
        self.builder.declare("x", 2, 1, StorageClass.WORKSPACE)

        with self.assertRaises(NameConflictError):
            self.builder.declare("x", 2, 1, StorageClass.LOCAL)
        with self.assertRaises(NameConflictError):
            self.builder.declare_index("x")
        with self.assertRaises(NameConflictError):
            self.builder.add_function(Function("x"))
        with self.assertRaises(NameConflictError):
            self.builder.declare_external("x", [])

        self.builder.declare_index("k")
        with self.assertRaises(NameConflictError):
            self.builder.declare("k", 1, 1, StorageClass.LOCAL)

    def test_only_constants_carry_values(self):
        """Given-status is tied to the constant storage class"""
        with self.assertRaises(ConfigurationError):
            self.builder.declare("c", 2, 2, StorageClass.CONSTANT)
        with self.assertRaises(ConfigurationError):
            self.builder.declare("w", 1, 1, StorageClass.WORKSPACE, value=[[1.0]])

        c = self.builder.constant("c", np.eye(2))
        self.assertTrue(c.is_given)
        self.assertEqual(c.storage, StorageClass.CONSTANT)
        np.testing.assert_array_equal(c.value(), np.eye(2))

        # value() hands out a copy
        c.value()[0, 0] = 5.0
        self.assertEqual(c.value()[0, 0], 1.0)

    def test_vector_payload_is_reshaped(self):
        """A flat payload fills a column vector"""
        c = self.builder.declare("c", 3, 1, StorageClass.CONSTANT, value=np.array([1.0, 2.0, 3.0]))
        self.assertEqual(c.shape, (3, 1))
        np.testing.assert_array_equal(c.value(), [[1.0], [2.0], [3.0]])

    def test_payload_shape_mismatch(self):
        with self.assertRaises(ConfigurationError):
            self.builder.declare("c", 2, 2, StorageClass.CONSTANT, value=np.ones((3, 3)))

    def test_non_positive_dimensions(self):
        for rows, cols in [(0, 1), (1, 0), (-1, 2)]:
            with self.subTest(rows=rows, cols=cols):
                with self.assertRaises(ConfigurationError):
                    self.builder.declare(f"z{abs(rows)}{cols}", rows, cols, StorageClass.LOCAL)

    def test_finish_freezes_builder(self):
        """Nothing can be declared once the program is finished"""
        x = self.builder.declare("x", 2, 1, StorageClass.WORKSPACE)
        y = self.builder.declare("y", 2, 1, StorageClass.INPUT)
        self.builder.add_define("N", 4)
        program = self.builder.finish()

        self.assertEqual(program.operands, (x, y))
        self.assertEqual(program.defines, (("N", 4),))
        self.assertEqual(program.operands_of(StorageClass.INPUT), [y])

        with self.assertRaises(ConfigurationError):
            self.builder.declare("z", 1, 1, StorageClass.LOCAL)
        with self.assertRaises(ConfigurationError):
            self.builder.declare_index("k")
        with self.assertRaises(ConfigurationError):
            self.builder.finish()

    def test_file_constants_exclude_function_locals(self):
        """Constants owned by a function are declared inside it"""
        shared = self.builder.constant("shared", [[1.0, 2.0]])
        owned = self.builder.constant("owned", [[3.0]])
        fn = Function("f")
        fn.add_local(owned)
        self.builder.add_function(fn)
        program = self.builder.finish()

        self.assertEqual(program.file_constants(), [shared])
        self.assertIs(program.function("f"), fn)
        with self.assertRaises(KeyError):
            program.function("missing")

    def test_operands_must_be_declared(self):
        """Functions can only use operands declared through this builder"""
        w = self.builder.declare("w", 2, 1, StorageClass.WORKSPACE)
        ghost = Operand("ghost", [2, 1], StorageClass.WORKSPACE)
        fn = Function("f")
        fn.add(w.assign(ghost))
        self.builder.add_function(fn)

        with self.assertRaises(ConfigurationError) as ctx:
            self.builder.finish()
        self.assertIn("ghost", str(ctx.exception))

    def test_redeclared_name_is_not_the_declared_operand(self):
        self.builder.declare("w", 2, 1, StorageClass.WORKSPACE)
        impostor = Operand("w", [2, 1], StorageClass.WORKSPACE)
        fn = Function("f")
        fn.add(impostor.assign(impostor))
        self.builder.add_function(fn)

        with self.assertRaises(ConfigurationError):
            self.builder.finish()

    def test_locals_belong_to_their_function(self):
        """A local is usable only where it is a parameter or a declared local"""
        w = self.builder.declare("w", 2, 1, StorageClass.WORKSPACE)
        tmp = self.builder.declare("tmp", 2, 1, StorageClass.LOCAL)
        fn = Function("f")
        fn.add(w.assign(tmp))
        self.builder.add_function(fn)

        with self.assertRaises(ConfigurationError) as ctx:
            self.builder.finish()
        self.assertIn("tmp", str(ctx.exception))

        fn.add_local(tmp)
        program = self.builder.finish()
        self.assertIs(program.function("f"), fn)

    def test_locals_are_not_shared_between_functions(self):
        w = self.builder.declare("w", 2, 1, StorageClass.WORKSPACE)
        tmp = self.builder.declare("tmp", 2, 1, StorageClass.LOCAL)
        owner = Function("owner")
        owner.add_local(tmp)
        owner.add(tmp.assign(w))
        other = Function("other")
        other.add(w.assign(tmp))
        self.builder.add_function(owner)
        self.builder.add_function(other)

        with self.assertRaises(ConfigurationError) as ctx:
            self.builder.finish()
        self.assertIn("other", str(ctx.exception))


class TestIndexExpr(unittest.TestCase):

    def test_affine_arithmetic(self):
        """Index arithmetic stays affine in one base"""
        k = Index("k")
        self.assertEqual(str(k), "k")
        self.assertEqual(str(k * 2 + 1), "2*k+1")
        self.assertEqual(str((k + 1) * 3), "3*k+3")
        self.assertEqual(str(k - 1), "k-1")
        self.assertEqual(str(2 * k), "2*k")

        length = (k + 1) - k
        self.assertTrue(length.is_constant)
        self.assertEqual(length.offset, 1)

    def test_bind(self):
        k = Index("k")
        bound = (k * 2 + 1).bind({'k': 3})
        self.assertTrue(bound.is_constant)
        self.assertEqual(bound.offset, 7)
        self.assertFalse((k * 2).bind({'j': 3}).is_constant)

    def test_invalid_arithmetic(self):
        with self.assertRaises(ConfigurationError):
            Index("k") + Index("j")
        with self.assertRaises(ConfigurationError):
            Index("k") * 1.5
        with self.assertRaises(ConfigurationError):
            as_index("k")

    def test_constants(self):
        four = as_index(4)
        self.assertTrue(four.is_constant)
        self.assertEqual(str(four), "4")
        self.assertEqual(as_index(four), IndexExpr.constant(4))


class TestFormatValue(unittest.TestCase):

    def test_precision_suffix(self):
        self.assertEqual(format_value(0.5), "0.5")
        self.assertEqual(format_value(2.0, 'float'), "2.0f")
        self.assertEqual(format_value(-1.0), "-1.0")

    def test_non_finite_rejected(self):
        with self.assertRaises(ConfigurationError):
            format_value(float('inf'))
        with self.assertRaises(ConfigurationError):
            format_value(float('nan'))


if __name__ == '__main__':
    unittest.main()
